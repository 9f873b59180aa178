"""Command line interface for py2bin."""

import argparse
import logging
import os
import pathlib
import sys

from py2bin import __version__
from py2bin.builder import build_carrier, build_from_carrier
from py2bin.errors import Py2binError
from py2bin.placeholder import parse_size
from py2bin.registry import (
    DEFAULT_CARRIER_URL,
    CarrierRegistry,
    LocalCarrierStore,
    ReleaseCarrierStore,
    resolve_cache_root,
)


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the py2bin logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("py2bin")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _size_arg(value: str) -> int:
    """argparse ``type=`` adapter for ``--size``."""

    try:
        return parse_size(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _make_registry(ns: argparse.Namespace, logger: logging.Logger) -> CarrierRegistry:
    """Build the carrier registry from CLI options and environment.

    :param ns: Parsed arguments.
    :param logger: Logger passed to the stores.
    :returns: Registry.
    """

    cache_root: pathlib.Path = resolve_cache_root(ns.cache_dir)
    local: LocalCarrierStore = LocalCarrierStore(cache_root)

    carrier_url: str | None = ns.carrier_url
    if carrier_url is None:
        carrier_url = os.environ.get("PY2BIN_CARRIER_URL") or DEFAULT_CARRIER_URL

    remote: ReleaseCarrierStore | None = None
    if ns.offline is False:
        remote = ReleaseCarrierStore(
            base_url=carrier_url,
            staging_dir=cache_root,
            token=os.environ.get("GITHUB_TOKEN"),
            logger=logger,
        )
    return CarrierRegistry(local=local, remote=remote, logger=logger)


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--python",
        dest="runtime_version",
        type=str,
        default=None,
        help="Interpreter version of the carrier as 'MAJOR.MINOR.PATCH'.",
    )
    p.add_argument(
        "--cache-dir",
        type=pathlib.Path,
        default=None,
        help="Carrier cache directory (default: $PY2BIN_CACHE_DIR or ./.py2bin_cache).",
    )
    p.add_argument(
        "--carrier-url",
        type=str,
        default=None,
        help="Base URL carriers are downloaded from (default: $PY2BIN_CARRIER_URL or the project releases).",
    )
    p.add_argument(
        "--offline",
        action="store_true",
        help="Only use carriers already in the cache.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def main(argv: list[str] | None = None) -> int:
    """Run the py2bin CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="py2bin",
        description="Turn a Python app into a single native executable.",
    )
    parser.add_argument("--version", action="version", version=f"py2bin {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build an executable for an app from a pre-built carrier.",
    )
    p_build.add_argument(
        "app",
        type=pathlib.Path,
        help="Path to the app's main Python file.",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output executable (default: ./app-<platform>-<arch>-<version>).",
    )
    p_build.add_argument(
        "--platform",
        type=str,
        default=None,
        help="Target platform: windows, darwin, linux or alpine (default: host).",
    )
    p_build.add_argument(
        "--arch",
        type=str,
        default=None,
        help="Target architecture: x86, x64, arm6l, arm7l or arm64 (default: host).",
    )
    p_build.add_argument(
        "--name",
        type=str,
        default=None,
        help="App name (default: derived from the app file name).",
    )
    p_build.add_argument(
        "--size",
        type=_size_arg,
        default=None,
        help="Carrier capacity, e.g. 4MB (default: smallest that fits).",
    )
    p_build.add_argument(
        "--no-cache",
        action="store_true",
        help="Remove the carrier from the cache after building.",
    )
    _add_common_args(p_build)

    p_carrier = subparsers.add_parser(
        "carrier",
        help="Compile a new carrier for the host and store it in the cache.",
    )
    p_carrier.add_argument(
        "--size",
        type=_size_arg,
        required=True,
        help="Carrier capacity, e.g. 4MB (positive, even).",
    )
    p_carrier.add_argument(
        "--arch",
        type=str,
        default=None,
        help="Target architecture (default: host; only darwin can cross-build).",
    )
    p_carrier.add_argument(
        "--patch-dir",
        type=pathlib.Path,
        required=True,
        help="Directory with the interpreter patch set (*.patch, -p1).",
    )
    p_carrier.add_argument(
        "--work-dir",
        type=pathlib.Path,
        default=pathlib.Path("build"),
        help="Scratch directory for sources and build output.",
    )
    p_carrier.add_argument(
        "--upload",
        action="store_true",
        help="Upload the carrier as a release asset (needs GITHUB_TOKEN).",
    )
    _add_common_args(p_carrier)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        if ns.command == "build":
            build_from_carrier(
                app_path=ns.app,
                registry=_make_registry(ns, logger),
                output_path=ns.output,
                platform_name=ns.platform,
                arch=ns.arch,
                runtime_version=ns.runtime_version,
                size_mb=ns.size,
                app_name=ns.name,
                keep_cache=not ns.no_cache,
                logger=logger,
            )
            return 0

        if ns.command == "carrier":
            build_carrier(
                size_mb=ns.size,
                registry=_make_registry(ns, logger),
                work_dir=ns.work_dir,
                patch_dir=ns.patch_dir,
                runtime_version=ns.runtime_version,
                arch=ns.arch,
                upload=ns.upload,
                logger=logger,
            )
            return 0
    except Py2binError as e:
        logger.error(f"py2bin: error: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
