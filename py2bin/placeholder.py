"""Placeholder content and capacity buckets.

A carrier is compiled with a module whose entire source is a raw string
literal of ``size_mb`` MiB of repeated marker text. That text lands verbatim
in the runtime's embedded source table, which is what lets a later patch
step find it again.
"""

import math
import re


MIB: int = 1024 * 1024

# Exactly 16 bytes; MIB is a multiple of it.
MARKER_UNIT: bytes = b"~P~y~2~B~i~N~p~\n"

LITERAL_OPEN: bytes = b'r"""'
LITERAL_CLOSE: bytes = b'"""'

_SIZE_RE: re.Pattern[str] = re.compile(r"^\s*(?P<num>\d+)\s*(?:mb)?\s*$", re.IGNORECASE)


def placeholder_content(size_mb: int) -> bytes:
    """Build the placeholder for a capacity bucket.

    :param size_mb: Bucket size in MiB.
    :returns: ``r\"\"\"<marker * N>\"\"\"`` bytes; identical on every call.
    :raises ValueError: If ``size_mb`` is not a positive integer.
    """

    if isinstance(size_mb, bool) is True or isinstance(size_mb, int) is False or size_mb <= 0:
        raise ValueError(f"Invalid placeholder size {size_mb!r}; expected a positive integer (MiB).")

    repeat: int = size_mb * MIB // len(MARKER_UNIT)
    return LITERAL_OPEN + MARKER_UNIT * repeat + LITERAL_CLOSE


def payload_capacity(size_mb: int) -> int:
    """Return the largest payload length a bucket accepts.

    One byte of the placeholder is always left as a NUL terminator.

    :param size_mb: Bucket size in MiB.
    :returns: Maximum encoded payload length in bytes.
    """

    return size_mb * MIB + len(LITERAL_OPEN) + len(LITERAL_CLOSE) - 1


def select_bucket(encoded_len: int, override: int | None = None) -> int:
    """Pick the capacity bucket for an encoded payload.

    Buckets step in even MiB so only a handful of carriers need pre-building.

    :param encoded_len: Encoded payload length in bytes.
    :param override: Explicit bucket size in MiB, used verbatim.
    :returns: Bucket size in MiB.
    :raises ValueError: If the override is not a positive even integer.
    """

    if override is not None:
        if isinstance(override, bool) is True or isinstance(override, int) is False:
            raise ValueError(f"Invalid bucket size {override!r}; expected an integer.")
        if override <= 0 or override % 2 != 0:
            raise ValueError(f"Invalid bucket size {override}MB; expected a positive even number.")
        return override

    if encoded_len < 0:
        raise ValueError(f"Invalid encoded length {encoded_len}.")

    # +1 keeps room for the terminator byte.
    size_mb: int = math.ceil((encoded_len + 1) / MIB)
    if size_mb % 2 != 0:
        size_mb += 1
    return size_mb


def parse_size(text: str) -> int:
    """Parse a user-supplied bucket size such as ``4``, ``4MB`` or ``4mb``.

    :param text: Size string.
    :returns: Size in MiB.
    :raises ValueError: If the string is not a size.
    """

    m = _SIZE_RE.match(text)
    if m is None:
        raise ValueError(f"Invalid size {text!r}; expected e.g. '4MB'.")
    return int(m.group("num"))
