import pytest
from hypothesis import given, strategies as st

from py2bin.placeholder import (
    MARKER_UNIT,
    MIB,
    parse_size,
    payload_capacity,
    placeholder_content,
    select_bucket,
)


def test_marker_unit_divides_a_mebibyte():
    assert len(MARKER_UNIT) == 16
    assert MIB % len(MARKER_UNIT) == 0


def test_placeholder_is_deterministic():
    assert placeholder_content(2) == placeholder_content(2)


def test_placeholder_layout():
    p = placeholder_content(2)
    assert len(p) == 2 * MIB + 7
    assert p.startswith(b'r"""' + MARKER_UNIT)
    assert p.endswith(MARKER_UNIT + b'"""')
    assert p[4:-3] == MARKER_UNIT * (2 * MIB // 16)


def test_placeholder_compiles_as_inert_string_literal():
    code = compile(placeholder_content(2), "_py2bin_app_main.py", "exec")
    ns: dict = {}
    exec(code, ns)
    # A leading string literal only becomes the module docstring.
    assert set(ns) <= {"__builtins__", "__doc__"}


def test_buckets_have_distinct_placeholders():
    assert placeholder_content(2) not in placeholder_content(4)[:-3]
    assert len(placeholder_content(4)) - len(placeholder_content(2)) == 2 * MIB


@pytest.mark.parametrize("size", [0, -2, 1.5, "2", True])
def test_placeholder_rejects_bad_sizes(size):
    with pytest.raises(ValueError):
        placeholder_content(size)


def test_capacity_leaves_one_terminator_byte():
    assert payload_capacity(2) == len(placeholder_content(2)) - 1


@pytest.mark.parametrize(
    "encoded_len, expected",
    [
        (0, 2),
        (1, 2),
        (MIB - 1, 2),
        (MIB, 2),
        (2 * MIB - 1, 2),
        (2 * MIB, 4),
        (3 * MIB, 4),
        (4 * MIB - 1, 4),
        (4 * MIB + 5, 6),
    ],
)
def test_select_bucket(encoded_len, expected):
    assert select_bucket(encoded_len) == expected


@given(st.integers(min_value=0, max_value=64 * MIB), st.integers(min_value=0, max_value=64 * MIB))
def test_select_bucket_is_monotonic(a, b):
    lo, hi = sorted((a, b))
    assert select_bucket(lo) <= select_bucket(hi)


@given(st.integers(min_value=1, max_value=256 * MIB))
def test_select_bucket_is_even_and_fits(n):
    size = select_bucket(n)
    assert size > 0
    assert size % 2 == 0
    assert n <= payload_capacity(size)


def test_select_bucket_override_used_verbatim():
    assert select_bucket(10, override=8) == 8
    # An override may be too small; the patcher reports that.
    assert select_bucket(10 * MIB, override=2) == 2


@pytest.mark.parametrize("override", [0, -2, 3, 2.0, True])
def test_select_bucket_rejects_bad_override(override):
    with pytest.raises(ValueError):
        select_bucket(10, override=override)


@pytest.mark.parametrize("text, expected", [("4", 4), ("4MB", 4), ("4mb", 4), (" 16 MB ", 16)])
def test_parse_size(text, expected):
    assert parse_size(text) == expected


@pytest.mark.parametrize("text", ["", "MB", "4GB", "four", "-4MB"])
def test_parse_size_rejects(text):
    with pytest.raises(ValueError):
        parse_size(text)
