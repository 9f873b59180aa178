"""Payload codec.

An app payload is framed as::

    base64(name) + b"\\n" + base64(gzip(source, level=9))

The framed blob is written over a carrier's placeholder and the remainder of
the placeholder is zero filled. Base64 output never contains a NUL byte, so
the first NUL marks the end of the blob when it is read back at startup.
"""

from dataclasses import dataclass
import base64
import binascii
import gzip
import pathlib
import re
import zlib


SEPARATOR: bytes = b"\n"
TERMINATOR: bytes = b"\x00"
DEFAULT_APP_NAME: str = "app_main"

_APP_NAME_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9._-]+$")
_ENTRY_FILE_NAMES: frozenset[str] = frozenset({"__main__.py", "main.py"})


class CorruptPayloadError(ValueError):
    """Raised when an embedded payload cannot be decoded."""


@dataclass(frozen=True, slots=True)
class Payload:
    """A decoded app payload.

    :ivar name: App name (filesystem-safe).
    :ivar source: Raw app source bytes.
    """

    name: str
    source: bytes


def validate_app_name(name: str) -> str:
    """Check that an app name is safe to use as a file name.

    :param name: Candidate app name.
    :returns: The name, unchanged.
    :raises ValueError: If the name contains unsafe characters.
    """

    if _APP_NAME_RE.match(name) is None or name in {".", ".."}:
        raise ValueError(
            f"Invalid app name {name!r}; use only letters, digits, '.', '_' and '-'."
        )
    return name


def default_app_name(app_path: pathlib.Path) -> str:
    """Derive an app name from the path of its main file.

    ``tool.py`` becomes ``tool``; ``tool/__main__.py`` or ``tool/main.py``
    becomes ``tool``. Anything that does not yield a safe name falls back to
    ``app_main``.

    :param app_path: Path to the app's main source file.
    :returns: App name.
    """

    candidate: str
    if app_path.name in _ENTRY_FILE_NAMES:
        candidate = app_path.resolve().parent.name
    else:
        candidate = app_path.name.split(".")[0]

    if len(candidate) == 0 or _APP_NAME_RE.match(candidate) is None:
        return DEFAULT_APP_NAME
    return candidate


def compress_source(source: bytes) -> bytes:
    """Compress app source with gzip at maximum ratio.

    The gzip header timestamp is pinned to zero so the same input always
    produces the same bytes.

    :param source: Raw source bytes.
    :returns: gzip bytes.
    """

    return gzip.compress(source, compresslevel=9, mtime=0)


def encode_payload(name: str, source: bytes) -> bytes:
    """Frame an app name and source into an embeddable blob.

    :param name: App name.
    :param source: Raw source bytes (any content).
    :returns: Encoded payload bytes.
    :raises ValueError: If the name is not filesystem safe.
    """

    validate_app_name(name)
    name_b64: bytes = base64.b64encode(name.encode("utf-8"))
    source_b64: bytes = base64.b64encode(compress_source(source))
    blob: bytes = name_b64 + SEPARATOR + source_b64
    if TERMINATOR in blob:
        raise AssertionError("Internal error: encoded payload contains a terminator byte.")
    return blob


def decode_payload(blob: bytes) -> Payload:
    """Decode a blob produced by :func:`encode_payload`.

    :param blob: Encoded payload, already stripped of trailing padding.
    :returns: The decoded payload.
    :raises CorruptPayloadError: If the blob is malformed.
    """

    name_b64, sep, source_b64 = blob.partition(SEPARATOR)
    if len(sep) == 0:
        raise CorruptPayloadError("Payload has no name/source separator.")

    try:
        name: str = base64.b64decode(name_b64, validate=True).decode("utf-8")
        compressed: bytes = base64.b64decode(source_b64, validate=True)
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CorruptPayloadError(f"Payload is not valid base64: {e}") from e

    try:
        source: bytes = gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as e:
        raise CorruptPayloadError(f"Payload source failed to decompress: {e}") from e

    return Payload(name=name, source=source)


def truncate_at_terminator(raw: bytes) -> bytes:
    """Drop the zero fill that follows a patched-in payload.

    :param raw: Bytes read from the placeholder region.
    :returns: Bytes up to (not including) the first NUL.
    """

    idx: int = raw.find(TERMINATOR)
    if idx < 0:
        return raw
    return raw[0:idx]
