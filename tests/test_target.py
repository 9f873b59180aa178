import pytest

from py2bin import target
from py2bin.errors import Py2binError
from py2bin.target import (
    CarrierKey,
    TargetResolutionError,
    darwin_build_arch,
    normalize_arch,
    normalize_platform,
    resolve_carrier_key,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("win32", "windows"),
        ("Windows", "windows"),
        ("win", "windows"),
        ("darwin", "darwin"),
        ("macos", "darwin"),
        ("mac", "darwin"),
        ("linux", "linux"),
        ("static", "alpine"),
        ("alpine", "alpine"),
    ],
)
def test_normalize_platform(value, expected):
    assert normalize_platform(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        ("x86", "x86"),
        ("ia32", "x86"),
        ("x32", "x86"),
        ("x64", "x64"),
        ("amd64", "x64"),
        ("x86_64", "x64"),
        ("arm6", "arm6l"),
        ("arm", "arm7l"),
        ("arm7", "arm7l"),
        ("armv7l", "arm7l"),
        ("arm64", "arm64"),
        ("aarch64", "arm64"),
        ("linux/arm64", "arm64"),
        ("linux/amd64", "x64"),
    ],
)
def test_normalize_arch(value, expected):
    assert normalize_arch(value) == expected


def test_unknown_tokens_raise():
    with pytest.raises(TargetResolutionError):
        normalize_platform("plan9")
    with pytest.raises(TargetResolutionError):
        normalize_arch("sparc")


def test_resolution_error_is_a_value_error_and_tool_error():
    assert issubclass(TargetResolutionError, ValueError)
    assert issubclass(TargetResolutionError, Py2binError)


def test_carrier_key_name():
    key = CarrierKey(platform="linux", arch="x64", runtime_version="3.12.7", size_mb=4)
    assert key.name == "linux-x64-3.12.7-v1-4MB"


def test_resolve_carrier_key_normalizes_fields():
    key = resolve_carrier_key(platform_name="macos", arch="aarch64", runtime_version="v3.11.9", size_mb=2)
    assert key == CarrierKey(platform="darwin", arch="arm64", runtime_version="3.11.9", size_mb=2)


def test_resolve_carrier_key_defaults_to_host(monkeypatch):
    monkeypatch.setattr(target.sys, "platform", "win32")
    monkeypatch.setattr(target.platform, "machine", lambda: "AMD64")
    key = resolve_carrier_key(platform_name=None, arch=None, runtime_version=None, size_mb=6)
    assert key.name == f"windows-x64-{target.DEFAULT_RUNTIME_VERSION}-v1-6MB"


@pytest.mark.parametrize("version", ["3.12", "latest", "3.12.7rc1"])
def test_resolve_carrier_key_rejects_bad_versions(version):
    with pytest.raises(TargetResolutionError):
        resolve_carrier_key(platform_name="linux", arch="x64", runtime_version=version, size_mb=2)


def test_darwin_build_arch():
    assert darwin_build_arch("x64") == "x86_64"
    assert darwin_build_arch("arm64") == "arm64"
    with pytest.raises(TargetResolutionError):
        darwin_build_arch("arm7l")
