"""Carrier patching.

Finds the placeholder a carrier was compiled with and overwrites it in place
with an encoded payload. The carrier is never resized: the payload is written
at the placeholder's offset and the rest of the placeholder is zero filled.
"""

import logging
import os
import pathlib
import stat
import tempfile
import time

from py2bin.errors import Py2binError
from py2bin.placeholder import payload_capacity, placeholder_content


class PatchError(Py2binError):
    """Base class for carrier patching failures."""


class PlaceholderNotFoundError(PatchError):
    """Raised when a carrier does not contain its bucket's placeholder."""


class PlaceholderAmbiguousError(PatchError):
    """Raised when a carrier contains its bucket's placeholder more than once."""


class PayloadTooLargeError(PatchError):
    """Raised when a payload does not fit the carrier's bucket."""


def find_placeholder(carrier: bytes, placeholder: bytes) -> int:
    """Locate the single occurrence of a placeholder inside a carrier.

    ``bytes.find`` uses CPython's skip search, so this stays fast on carriers
    that are hundreds of MiB.

    :param carrier: Carrier binary contents.
    :param placeholder: Exact placeholder bytes.
    :returns: Byte offset of the placeholder.
    :raises PlaceholderNotFoundError: If there is no occurrence.
    :raises PlaceholderAmbiguousError: If there is more than one occurrence.
    """

    idx: int = carrier.find(placeholder)
    if idx < 0:
        raise PlaceholderNotFoundError(
            f"Placeholder ({len(placeholder)} bytes) not found in carrier ({len(carrier)} bytes)."
        )

    second: int = carrier.find(placeholder, idx + 1)
    if second >= 0:
        raise PlaceholderAmbiguousError(
            f"Placeholder found more than once in carrier (offsets {idx} and {second})."
        )
    return idx


def patch_carrier(carrier: bytes, size_mb: int, payload: bytes) -> bytes:
    """Overwrite a carrier's placeholder with a payload.

    :param carrier: Carrier binary contents (left untouched).
    :param size_mb: Bucket the carrier was built for.
    :param payload: Encoded payload.
    :returns: Patched binary, same length as ``carrier``.
    :raises PayloadTooLargeError: If the payload leaves no room for a terminator.
    :raises PlaceholderNotFoundError: If the placeholder is missing.
    :raises PlaceholderAmbiguousError: If the placeholder is not unique.
    """

    capacity: int = payload_capacity(size_mb)
    if len(payload) > capacity:
        raise PayloadTooLargeError(
            f"Payload is {len(payload)} bytes but a {size_mb}MB carrier holds at most {capacity}; "
            "use a larger size."
        )

    placeholder: bytes = placeholder_content(size_mb)
    offset: int = find_placeholder(carrier, placeholder)
    end: int = offset + len(placeholder)

    out: bytearray = bytearray(carrier)
    out[offset:end] = bytes(len(placeholder))
    out[offset : offset + len(payload)] = payload
    if len(out) != len(carrier):
        raise AssertionError("Internal error: patching changed the carrier length.")
    return bytes(out)


def patch_file(
    *,
    carrier_path: pathlib.Path,
    output_path: pathlib.Path,
    size_mb: int,
    payload: bytes,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Patch a carrier file into an executable output file.

    The output is written to a temporary sibling and renamed into place, so a
    failed patch never leaves a partial file behind.

    :param carrier_path: Carrier binary on disk.
    :param output_path: Destination executable.
    :param size_mb: Bucket the carrier was built for.
    :param payload: Encoded payload.
    :param logger: Optional logger for progress output.
    :returns: ``output_path``.
    :raises PatchError: If the carrier cannot be patched.
    """

    if logger is None:
        logger = logging.getLogger("py2bin")

    t0: float = time.perf_counter()
    carrier: bytes = carrier_path.read_bytes()
    patched: bytes = patch_carrier(carrier, size_mb, payload)
    t1: float = time.perf_counter()
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"py2bin: patched {carrier_path.name} in memory in {t1 - t0:.2f}s")

    mode: int = stat.S_IMODE(carrier_path.stat().st_mode)
    mode |= stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.name}.", dir=output_path.parent)
    tmp_path: pathlib.Path = pathlib.Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(patched)
        os.chmod(tmp_path, mode)
        tmp_path.replace(output_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info(f"py2bin: wrote {output_path} ({len(patched) / (1024 * 1024):.1f} MiB)")
    return output_path
