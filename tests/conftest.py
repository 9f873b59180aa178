"""Shared fixtures for the py2bin test suite."""
import sys
from collections.abc import Callable

import pytest

from py2bin.placeholder import placeholder_content

# Stand-ins for the code and data a compiler lays out around the source table.
CARRIER_PREFIX = b"\x7fELF\x02\x01\x01\x00" + bytes(range(256)) * 8
CARRIER_SUFFIX = b"\x00__py2bin_runtime_tail__\x00" + bytes(range(255, -1, -1)) * 8


@pytest.fixture
def make_carrier() -> Callable[..., bytes]:
    """Build a synthetic carrier holding the placeholder for a bucket."""

    def _make(size_mb: int = 2, copies: int = 1) -> bytes:
        middle = b"\x90\x90".join([placeholder_content(size_mb)] * copies)
        return CARRIER_PREFIX + middle + CARRIER_SUFFIX

    return _make


@pytest.fixture
def restore_main(monkeypatch):
    """Let a test replace sys.modules['__main__'] and get it back afterwards."""
    monkeypatch.setitem(sys.modules, "__main__", sys.modules["__main__"])
    yield
