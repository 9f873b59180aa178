"""Executable builder.

Two pipelines live here:

- :func:`build_from_carrier` is the everyday path. It encodes an app, picks a
  capacity bucket, fetches the matching pre-built carrier and patches the app
  into it. No compiler is involved.
- :func:`build_carrier` produces a new carrier: it fetches the interpreter
  sources, applies the py2bin patch set, installs the boot package and an
  unfilled placeholder, compiles, and stores the binary in the registry. It
  only shells out to the usual build tools.
"""

import logging
import os
import pathlib
import shutil
import subprocess
import sys
import tarfile
import time

import requests

from py2bin.boot.bootstrap import APP_MODULE_NAME
from py2bin.boot.codec import default_app_name, encode_payload
from py2bin.errors import Py2binError
from py2bin.patcher import patch_file
from py2bin.placeholder import placeholder_content, select_bucket
from py2bin.registry import CarrierRegistry
from py2bin.target import CarrierKey, darwin_build_arch, host_arch, host_platform, resolve_carrier_key


BOOT_PACKAGE_NAME: str = "_py2bin"
SOURCE_URL_TEMPLATE: str = "https://www.python.org/ftp/python/{version}/Python-{version}.tgz"

_BOOT_SRC_DIR: pathlib.Path = pathlib.Path(__file__).resolve().parent / "boot"


class BuildError(Py2binError):
    """Raised when building a carrier or an app executable fails."""


def default_output_path(key: CarrierKey) -> pathlib.Path:
    """Return the default output file for an app build.

    :param key: Carrier key of the build.
    :returns: ``./app-<platform>-<arch>-<version>`` (``.exe`` on windows).
    """

    name: str = f"app-{key.platform}-{key.arch}-{key.runtime_version}"
    if key.platform == "windows":
        name += ".exe"
    return pathlib.Path.cwd() / name


def build_from_carrier(
    *,
    app_path: pathlib.Path,
    registry: CarrierRegistry,
    output_path: pathlib.Path | None = None,
    platform_name: str | None = None,
    arch: str | None = None,
    runtime_version: str | None = None,
    size_mb: int | None = None,
    app_name: str | None = None,
    keep_cache: bool = True,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Build a native executable for an app from a pre-built carrier.

    :param app_path: The app's main source file.
    :param registry: Carrier registry to fetch from.
    :param output_path: Output executable; see :func:`default_output_path`.
    :param platform_name: Target platform spelling (``None`` = host).
    :param arch: Target architecture spelling (``None`` = host).
    :param runtime_version: Interpreter version (``None`` = default).
    :param size_mb: Explicit capacity bucket; derived from the payload if omitted.
    :param app_name: App name; derived from ``app_path`` if omitted.
    :param keep_cache: Keep the carrier in the local cache afterwards.
    :param logger: Optional logger for progress output.
    :returns: Path of the written executable.
    :raises BuildError: If the app cannot be read or named.
    :raises py2bin.errors.Py2binError: If the carrier is unavailable or cannot be patched.
    """

    if logger is None:
        logger = logging.getLogger("py2bin")

    if app_path.is_file() is False:
        raise BuildError(f"App file does not exist: {app_path}")

    t_total0: float = time.perf_counter()
    name: str = app_name if app_name is not None else default_app_name(app_path)
    try:
        payload: bytes = encode_payload(name, app_path.read_bytes())
    except ValueError as e:
        raise BuildError(str(e)) from e

    try:
        bucket: int = select_bucket(len(payload), size_mb)
    except ValueError as e:
        raise BuildError(str(e)) from e

    key: CarrierKey = resolve_carrier_key(
        platform_name=platform_name,
        arch=arch,
        runtime_version=runtime_version,
        size_mb=bucket,
    )
    logger.info(f"py2bin: app={app_path} name={name}")
    logger.info(f"py2bin: payload {len(payload) / 1024:.1f} KiB -> bucket {bucket}MB")
    logger.info(f"py2bin: carrier={key.name}")

    carrier_path: pathlib.Path = registry.fetch(key)
    out: pathlib.Path = output_path if output_path is not None else default_output_path(key)
    try:
        patch_file(
            carrier_path=carrier_path,
            output_path=out,
            size_mb=bucket,
            payload=payload,
            logger=logger,
        )
    finally:
        if keep_cache is False:
            registry.evict(key)

    t_total1: float = time.perf_counter()
    logger.info(f"py2bin: done in {t_total1 - t_total0:.2f}s")
    return out


def prepare_runtime_source(
    *,
    src_dir: pathlib.Path,
    size_mb: int,
    logger: logging.Logger | None = None,
) -> None:
    """Install the boot package and an unfilled placeholder into a source tree.

    :param src_dir: Root of an (already patched) interpreter source tree.
    :param size_mb: Capacity bucket of the carrier being built.
    :param logger: Optional logger for progress output.
    :raises BuildError: If the tree has no ``Lib`` directory.
    """

    if logger is None:
        logger = logging.getLogger("py2bin")

    lib_dir: pathlib.Path = src_dir / "Lib"
    if lib_dir.is_dir() is False:
        raise BuildError(f"Not an interpreter source tree (missing Lib/): {src_dir}")

    boot_dest: pathlib.Path = lib_dir / BOOT_PACKAGE_NAME
    if boot_dest.exists() is True:
        shutil.rmtree(boot_dest)
    shutil.copytree(_BOOT_SRC_DIR, boot_dest, ignore=shutil.ignore_patterns("__pycache__", "*.pyc"))

    app_main: pathlib.Path = lib_dir / f"{APP_MODULE_NAME}.py"
    app_main.write_bytes(placeholder_content(size_mb))
    logger.info(f"py2bin: installed {BOOT_PACKAGE_NAME}/ and a {size_mb}MB placeholder into {lib_dir}")


def _run(
    cmd: list[str],
    *,
    cwd: pathlib.Path,
    logger: logging.Logger,
    env: dict[str, str] | None = None,
) -> None:
    """Run a build tool.

    :param cmd: Command line.
    :param cwd: Working directory.
    :param logger: Logger for progress output.
    :param env: Optional environment for the child.
    :raises BuildError: If the command fails.
    """

    logger.info(f"py2bin: running {' '.join(cmd)} (cwd={cwd})")
    try:
        proc = subprocess.run(cmd, cwd=cwd, env=env, check=False)
    except FileNotFoundError as e:
        raise BuildError(f"Build tool not found: {cmd[0]}") from e
    if proc.returncode != 0:
        raise BuildError(f"Command failed (exit={proc.returncode}): {' '.join(cmd)}")


def download_runtime_source(
    *,
    runtime_version: str,
    work_dir: pathlib.Path,
    session: requests.Session | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Download and unpack the interpreter source tarball.

    An already unpacked tree is reused.

    :param runtime_version: ``MAJOR.MINOR.PATCH``.
    :param work_dir: Directory to download and unpack into.
    :param session: Optional HTTP session.
    :param logger: Optional logger for progress output.
    :returns: The unpacked source directory.
    :raises BuildError: If the download or extraction fails.
    """

    if logger is None:
        logger = logging.getLogger("py2bin")

    src_dir: pathlib.Path = work_dir / f"Python-{runtime_version}"
    if (src_dir / "configure").is_file() is True:
        logger.info(f"py2bin: runtime source {src_dir.name} already unpacked, using it")
        return src_dir

    work_dir.mkdir(parents=True, exist_ok=True)
    tarball: pathlib.Path = work_dir / f"Python-{runtime_version}.tgz"
    url: str = SOURCE_URL_TEMPLATE.format(version=runtime_version)
    http: requests.Session = session if session is not None else requests.Session()

    if tarball.is_file() is False:
        logger.info(f"py2bin: downloading {url}")
        tmp: pathlib.Path = tarball.with_name(tarball.name + ".tmp")
        try:
            with http.get(url, stream=True, timeout=60) as resp:
                resp.raise_for_status()
                with open(tmp, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=1024 * 1024):
                        f.write(chunk)
        except requests.exceptions.RequestException as e:
            tmp.unlink(missing_ok=True)
            raise BuildError(f"Could not download runtime source {url}: {e}") from e
        tmp.replace(tarball)

    logger.info(f"py2bin: expanding {tarball.name}")
    try:
        with tarfile.open(tarball, "r:gz") as tf:
            tf.extractall(work_dir, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise BuildError(f"Could not unpack {tarball}: {e}") from e
    return src_dir


def apply_patches(
    *,
    src_dir: pathlib.Path,
    patch_dir: pathlib.Path,
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Apply every ``*.patch`` file in ``patch_dir`` (sorted by name).

    Already applied hunks are skipped (``patch -N``), so re-running on the
    same tree is harmless.

    :param src_dir: Source tree root.
    :param patch_dir: Directory of unified diffs (``-p1``).
    :param logger: Optional logger for progress output.
    :returns: Patch files applied.
    :raises BuildError: If ``patch`` is missing or a patch does not apply.
    """

    if logger is None:
        logger = logging.getLogger("py2bin")

    if patch_dir.is_dir() is False:
        raise BuildError(f"Patch directory does not exist: {patch_dir}")
    if shutil.which("patch") is None:
        raise BuildError("'patch' is not installed.")

    patches: list[pathlib.Path] = sorted(patch_dir.glob("*.patch"))
    for p in patches:
        proc = subprocess.run(
            ["patch", "-p1", "-N", "--dry-run", "-i", str(p)],
            cwd=src_dir,
            check=False,
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0 and "Reversed (or previously applied)" in proc.stdout:
            logger.info(f"py2bin: patch {p.name} already applied")
            continue
        _run(["patch", "-p1", "-N", "-i", str(p)], cwd=src_dir, logger=logger)
    return patches


def _compile_runtime(
    *,
    src_dir: pathlib.Path,
    key: CarrierKey,
    logger: logging.Logger,
) -> pathlib.Path:
    """Configure and compile the interpreter for the host.

    :param src_dir: Prepared source tree.
    :param key: Carrier key (selects platform specifics).
    :param logger: Logger for progress output.
    :returns: Path of the built interpreter binary.
    :raises BuildError: If compilation fails or produces no binary.
    """

    result: pathlib.Path
    if key.platform == "windows":
        arch_flag: str = {"x86": "Win32", "x64": "x64", "arm64": "ARM64"}.get(key.arch, key.arch)
        _run(["cmd", "/c", "PCbuild\\build.bat", "-p", arch_flag], cwd=src_dir, logger=logger)
        out_dir: str = {"x86": "win32", "x64": "amd64", "arm64": "arm64"}.get(key.arch, key.arch)
        result = src_dir / "PCbuild" / out_dir / "python.exe"
    else:
        env: dict[str, str] = dict(os.environ)
        if key.platform == "darwin":
            build_arch: str = darwin_build_arch(key.arch)
            env["CFLAGS"] = f"{env.get('CFLAGS', '')} -arch {build_arch}".strip()
            env["LDFLAGS"] = f"{env.get('LDFLAGS', '')} -arch {build_arch}".strip()
        make: str = "gmake" if sys.platform.startswith(("freebsd", "openbsd", "netbsd")) is True else "make"
        _run(["./configure", "--disable-shared"], cwd=src_dir, logger=logger, env=env)
        _run([make, f"-j{os.cpu_count() or 1}"], cwd=src_dir, logger=logger, env=env)
        # macOS builds name the binary python.exe to dodge case-insensitive clashes.
        result = src_dir / ("python.exe" if key.platform == "darwin" else "python")

    if result.is_file() is False:
        raise BuildError(f"Build finished but no interpreter binary at {result}")
    return result


def build_carrier(
    *,
    size_mb: int,
    registry: CarrierRegistry,
    work_dir: pathlib.Path,
    patch_dir: pathlib.Path,
    runtime_version: str | None = None,
    arch: str | None = None,
    upload: bool = False,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Compile a carrier with an unfilled ``size_mb`` placeholder for the host.

    :param size_mb: Capacity bucket (positive, even).
    :param registry: Registry to store the carrier in.
    :param work_dir: Scratch directory for sources and build output.
    :param patch_dir: Directory holding the interpreter patch set.
    :param runtime_version: Interpreter version (``None`` = default).
    :param arch: Target architecture (``None`` = host); only darwin cross-builds.
    :param upload: Publish to the remote store as well.
    :param logger: Optional logger for progress output.
    :returns: Path of the cached carrier.
    :raises BuildError: If any build step fails.
    """

    if logger is None:
        logger = logging.getLogger("py2bin")

    try:
        bucket: int = select_bucket(0, size_mb)
    except ValueError as e:
        raise BuildError(str(e)) from e

    key: CarrierKey = resolve_carrier_key(
        platform_name=host_platform(),
        arch=arch,
        runtime_version=runtime_version,
        size_mb=bucket,
    )
    if key.platform != "darwin" and key.arch != host_arch():
        raise BuildError(f"Cannot cross-build {key.arch} carriers on a {host_arch()} {key.platform} host.")
    logger.info(f"py2bin: building carrier {key.name}")

    t0: float = time.perf_counter()
    src_dir: pathlib.Path = download_runtime_source(
        runtime_version=key.runtime_version,
        work_dir=work_dir,
        logger=logger,
    )
    apply_patches(src_dir=src_dir, patch_dir=patch_dir, logger=logger)
    prepare_runtime_source(src_dir=src_dir, size_mb=bucket, logger=logger)
    binary: pathlib.Path = _compile_runtime(src_dir=src_dir, key=key, logger=logger)
    t1: float = time.perf_counter()
    logger.info(f"py2bin: compiled {binary} in {t1 - t0:.0f}s")

    return registry.store(key, binary, upload=upload)
