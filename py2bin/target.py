"""Target resolution helpers.

This module maps the many spellings users (and ``sys.platform`` /
``platform.machine()``) use for operating systems and CPU architectures onto
the small set of tokens carriers are published under, and builds the
:class:`~CarrierKey` that names a carrier in caches and release assets.
"""

from dataclasses import dataclass
import platform
import re
import sys

from py2bin.errors import Py2binError


PLATFORMS: tuple[str, ...] = ("windows", "darwin", "linux", "alpine")
ARCHES: tuple[str, ...] = ("x86", "x64", "arm6l", "arm7l", "arm64")

DEFAULT_RUNTIME_VERSION: str = "3.12.7"

# Bumped when the carrier layout changes in a way old carriers cannot serve.
CARRIER_FORMAT: str = "v1"

_PLATFORM_ALIASES: dict[str, str] = {
    "win32": "windows",
    "windows": "windows",
    "win": "windows",
    "darwin": "darwin",
    "macos": "darwin",
    "mac": "darwin",
    "linux": "linux",
    "static": "alpine",
    "alpine": "alpine",
}

_ARCH_ALIASES: dict[str, str] = {
    "x86": "x86",
    "ia32": "x86",
    "x32": "x86",
    "i386": "x86",
    "i686": "x86",
    "x64": "x64",
    "amd64": "x64",
    "x86_64": "x64",
    "arm6": "arm6l",
    "arm6l": "arm6l",
    "armv6l": "arm6l",
    "arm": "arm7l",
    "arm7": "arm7l",
    "arm7l": "arm7l",
    "armv7l": "arm7l",
    "arm64": "arm64",
    "aarch64": "arm64",
}

# Keys are values of _ARCH_ALIASES.
_DARWIN_BUILD_ARCH: dict[str, str] = {
    "arm64": "arm64",
    "x64": "x86_64",
}

_VERSION_RE: re.Pattern[str] = re.compile(r"^\d+\.\d+\.\d+$")


class TargetResolutionError(Py2binError, ValueError):
    """Raised when a platform/arch/version cannot be resolved."""


@dataclass(frozen=True, slots=True)
class CarrierKey:
    """Identifies one pre-built carrier.

    :ivar platform: Platform token (see :data:`PLATFORMS`).
    :ivar arch: Architecture token (see :data:`ARCHES`).
    :ivar runtime_version: Interpreter version the carrier was built from.
    :ivar size_mb: Capacity bucket in MiB.
    """

    platform: str
    arch: str
    runtime_version: str
    size_mb: int

    @property
    def name(self) -> str:
        """Cache file name and release asset name for this carrier."""

        return f"{self.platform}-{self.arch}-{self.runtime_version}-{CARRIER_FORMAT}-{self.size_mb}MB"


def normalize_platform(value: str) -> str:
    """Map a platform spelling onto a platform token.

    :param value: e.g. ``win32``, ``macos``, ``static``.
    :returns: One of :data:`PLATFORMS`.
    :raises TargetResolutionError: If the platform is unknown.
    """

    token: str | None = _PLATFORM_ALIASES.get(value.strip().lower())
    if token is None:
        raise TargetResolutionError(
            f"Unrecognized platform {value!r}; expected one of {', '.join(PLATFORMS)}."
        )
    return token


def normalize_arch(value: str) -> str:
    """Map an architecture spelling onto an arch token.

    Docker-style ``linux/arm64`` values are accepted.

    :param value: e.g. ``amd64``, ``aarch64``, ``linux/arm/v7``.
    :returns: One of :data:`ARCHES`.
    :raises TargetResolutionError: If the arch is unknown.
    """

    v: str = value.strip().lower()
    if v.startswith("linux/") is True:
        v = v.split("/")[1]

    token: str | None = _ARCH_ALIASES.get(v)
    if token is None:
        raise TargetResolutionError(
            f"Unrecognized architecture {value!r}; expected one of {', '.join(ARCHES)}."
        )
    return token


def host_platform() -> str:
    """Return the platform token of the running host.

    Linux hosts report ``linux`` even on musl; ask for ``alpine`` explicitly.

    :returns: Platform token.
    """

    return normalize_platform(sys.platform)


def host_arch() -> str:
    """Return the architecture token of the running host.

    :returns: Architecture token.
    """

    return normalize_arch(platform.machine())


def darwin_build_arch(arch: str) -> str:
    """Map an arch token onto the ``-arch`` value Apple toolchains expect.

    :param arch: Architecture token.
    :returns: ``arm64`` or ``x86_64``.
    :raises TargetResolutionError: If macOS carriers are not built for the arch.
    """

    build_arch: str | None = _DARWIN_BUILD_ARCH.get(arch)
    if build_arch is None:
        raise TargetResolutionError(f"No darwin build architecture for {arch!r}.")
    return build_arch


def resolve_carrier_key(
    *,
    platform_name: str | None,
    arch: str | None,
    runtime_version: str | None,
    size_mb: int,
) -> CarrierKey:
    """Resolve user-supplied target arguments into a :class:`~CarrierKey`.

    :param platform_name: Platform spelling, or ``None`` for the host.
    :param arch: Architecture spelling, or ``None`` for the host.
    :param runtime_version: ``MAJOR.MINOR.PATCH``, or ``None`` for the default.
    :param size_mb: Capacity bucket in MiB.
    :returns: Resolved key.
    :raises TargetResolutionError: If any field cannot be resolved.
    """

    plat: str = host_platform() if platform_name is None else normalize_platform(platform_name)
    arch_token: str = host_arch() if arch is None else normalize_arch(arch)

    version: str = DEFAULT_RUNTIME_VERSION if runtime_version is None else runtime_version.strip()
    if version.startswith("v") is True:
        version = version[1:]
    if _VERSION_RE.match(version) is None:
        raise TargetResolutionError(
            f"Invalid runtime version {runtime_version!r}; expected 'MAJOR.MINOR.PATCH'."
        )

    return CarrierKey(platform=plat, arch=arch_token, runtime_version=version, size_mb=size_mb)
