import os
import sys

import pytest

from py2bin import builder
from py2bin.boot.bootstrap import APP_MODULE_NAME, recover_payload
from py2bin.builder import (
    BuildError,
    apply_patches,
    build_carrier,
    build_from_carrier,
    default_output_path,
    prepare_runtime_source,
)
from py2bin.patcher import PayloadTooLargeError, patch_carrier
from py2bin.placeholder import MIB, placeholder_content
from py2bin.registry import CarrierRegistry, LocalCarrierStore
from py2bin.target import CarrierKey

from conftest import CARRIER_PREFIX

KEY = CarrierKey(platform="linux", arch="x64", runtime_version="3.12.7", size_mb=2)


@pytest.fixture
def seeded_registry(tmp_path, make_carrier):
    local = LocalCarrierStore(tmp_path / "cache")
    local.root.mkdir()
    local.path_for(KEY).write_bytes(make_carrier(2))
    return CarrierRegistry(local=local)


def build(app, out, registry, **kwargs):
    return build_from_carrier(
        app_path=app,
        registry=registry,
        output_path=out,
        platform_name="linux",
        arch="x64",
        runtime_version="3.12.7",
        **kwargs,
    )


def test_build_from_carrier(tmp_path, seeded_registry):
    app = tmp_path / "server.py"
    app.write_bytes(b"print('serving')\n")
    out = tmp_path / "dist" / "server"

    assert build(app, out, seeded_registry) == out

    carrier = seeded_registry.local.path_for(KEY).read_bytes()
    binary = out.read_bytes()
    assert len(binary) == len(carrier)
    start = len(CARRIER_PREFIX)
    payload = recover_payload(binary[start : start + len(placeholder_content(2))])
    assert payload.name == "server"
    assert payload.source == b"print('serving')\n"
    assert os.access(out, os.X_OK)
    assert seeded_registry.local.exists(KEY) is True


def test_build_uses_explicit_name(tmp_path, seeded_registry):
    app = tmp_path / "main.py"
    app.write_bytes(b"pass\n")
    out = tmp_path / "tool"

    build(app, out, seeded_registry, app_name="tool")

    start = len(CARRIER_PREFIX)
    region = out.read_bytes()[start : start + len(placeholder_content(2))]
    assert recover_payload(region).name == "tool"


def test_no_cache_evicts_carrier(tmp_path, seeded_registry):
    app = tmp_path / "app.py"
    app.write_bytes(b"pass\n")

    build(app, tmp_path / "out", seeded_registry, keep_cache=False)

    assert (tmp_path / "out").is_file()
    assert seeded_registry.local.exists(KEY) is False


def test_missing_app(tmp_path, seeded_registry):
    with pytest.raises(BuildError, match="does not exist"):
        build(tmp_path / "nope.py", tmp_path / "out", seeded_registry)


def test_bad_app_name(tmp_path, seeded_registry):
    app = tmp_path / "app.py"
    app.write_bytes(b"pass\n")
    with pytest.raises(BuildError):
        build(app, tmp_path / "out", seeded_registry, app_name="../evil")


def test_payload_larger_than_requested_bucket(tmp_path, seeded_registry):
    app = tmp_path / "big.py"
    app.write_bytes(os.urandom(2 * MIB))
    out = tmp_path / "big"

    with pytest.raises(PayloadTooLargeError):
        build(app, out, seeded_registry, size_mb=2)
    assert out.exists() is False


def test_default_output_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert default_output_path(KEY) == tmp_path / "app-linux-x64-3.12.7"
    win = CarrierKey(platform="windows", arch="x64", runtime_version="3.12.7", size_mb=2)
    assert default_output_path(win).name == "app-windows-x64-3.12.7.exe"


def test_prepare_runtime_source(tmp_path):
    lib = tmp_path / "Lib"
    lib.mkdir()
    (lib / "_py2bin").mkdir()
    (lib / "_py2bin" / "stale.py").write_text("old")

    prepare_runtime_source(src_dir=tmp_path, size_mb=4)

    boot = lib / "_py2bin"
    assert sorted(p.name for p in boot.iterdir()) == ["__init__.py", "bootstrap.py", "codec.py"]
    assert (lib / f"{APP_MODULE_NAME}.py").read_bytes() == placeholder_content(4)


def test_prepare_runtime_source_requires_lib(tmp_path):
    with pytest.raises(BuildError, match="Lib"):
        prepare_runtime_source(src_dir=tmp_path, size_mb=2)


def test_installed_boot_package_recovers_patched_app(tmp_path, monkeypatch):
    """The copied boot package works standalone against a patched placeholder module."""

    (tmp_path / "Lib").mkdir()
    prepare_runtime_source(src_dir=tmp_path, size_mb=2)
    app_main = tmp_path / "Lib" / f"{APP_MODULE_NAME}.py"

    from py2bin.boot.codec import encode_payload

    app_main.write_bytes(patch_carrier(app_main.read_bytes(), 2, encode_payload("demo", b"print(1)\n")))

    monkeypatch.syspath_prepend(str(tmp_path / "Lib"))
    for name in ("_py2bin", "_py2bin.bootstrap", "_py2bin.codec"):
        monkeypatch.delitem(sys.modules, name, raising=False)
    try:
        import _py2bin.bootstrap as installed

        payload = installed.recover_payload(app_main.read_bytes())
    finally:
        for name in ("_py2bin", "_py2bin.bootstrap", "_py2bin.codec"):
            sys.modules.pop(name, None)

    assert payload.name == "demo"
    assert payload.source == b"print(1)\n"


def test_apply_patches_requires_directory(tmp_path):
    with pytest.raises(BuildError, match="Patch directory"):
        apply_patches(src_dir=tmp_path, patch_dir=tmp_path / "missing")


def test_cross_arch_carrier_build_is_refused(tmp_path, monkeypatch):
    monkeypatch.setattr(builder, "host_platform", lambda: "linux")
    monkeypatch.setattr(builder, "host_arch", lambda: "x64")

    def no_download(**kwargs):
        raise AssertionError("should fail before downloading")

    monkeypatch.setattr(builder, "download_runtime_source", no_download)
    registry = CarrierRegistry(local=LocalCarrierStore(tmp_path))

    with pytest.raises(BuildError, match="cross-build"):
        build_carrier(size_mb=2, registry=registry, work_dir=tmp_path, patch_dir=tmp_path, arch="arm64")


@pytest.mark.parametrize("size", [3, 0])
def test_carrier_build_rejects_bad_bucket(tmp_path, size):
    registry = CarrierRegistry(local=LocalCarrierStore(tmp_path))
    with pytest.raises(BuildError):
        build_carrier(size_mb=size, registry=registry, work_dir=tmp_path, patch_dir=tmp_path)


def test_carrier_build_pipeline(tmp_path, monkeypatch):
    src = tmp_path / "Python-3.12.7"
    (src / "Lib").mkdir(parents=True)
    calls = []

    monkeypatch.setattr(builder, "host_platform", lambda: "linux")
    monkeypatch.setattr(builder, "host_arch", lambda: "x64")
    monkeypatch.setattr(builder, "download_runtime_source", lambda **kw: src)
    monkeypatch.setattr(builder, "apply_patches", lambda **kw: calls.append("patch"))

    def fake_compile(*, src_dir, key, logger):
        calls.append("compile")
        assert (src_dir / "Lib" / f"{APP_MODULE_NAME}.py").is_file()
        binary = src_dir / "python"
        binary.write_bytes(b"ELF" + placeholder_content(key.size_mb))
        return binary

    monkeypatch.setattr(builder, "_compile_runtime", fake_compile)
    registry = CarrierRegistry(local=LocalCarrierStore(tmp_path / "cache"))

    cached = build_carrier(
        size_mb=2,
        registry=registry,
        work_dir=tmp_path,
        patch_dir=tmp_path / "patches",
        runtime_version="3.12.7",
        arch="x64",
    )

    assert calls == ["patch", "compile"]
    assert cached == tmp_path / "cache" / "linux-x64-3.12.7-v1-2MB"
    assert cached.read_bytes().startswith(b"ELF")
