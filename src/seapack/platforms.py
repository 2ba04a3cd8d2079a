"""Closed OS/architecture enumerations and host detection."""

from __future__ import annotations

import platform
from typing import Literal, get_args

from seapack.errors import ResolutionError

Os = Literal["darwin", "linux", "win"]
Arch = Literal["x64", "x86", "arm64"]

KNOWN_OS: tuple[Os, ...] = get_args(Os)
KNOWN_ARCH: tuple[Arch, ...] = get_args(Arch)

_OS_ALIASES: dict[str, Os] = {
    "darwin": "darwin",
    "macos": "darwin",
    "mac": "darwin",
    "osx": "darwin",
    "linux": "linux",
    "win": "win",
    "windows": "win",
    "win32": "win",
}

_ARCH_ALIASES: dict[str, Arch] = {
    "x64": "x64",
    "x86_64": "x64",
    "amd64": "x64",
    "x86": "x86",
    "i386": "x86",
    "i686": "x86",
    "ia32": "x86",
    "arm64": "arm64",
    "aarch64": "arm64",
}


def normalize_os(value: str) -> Os:
    normalized = _OS_ALIASES.get(value.strip().lower())
    if normalized is None:
        raise ResolutionError(
            f"Unknown operating system `{value}`.",
            hint=f"Use one of: {', '.join(KNOWN_OS)}.",
            context={"operation": "resolve", "os": value},
        )
    return normalized


def normalize_arch(value: str) -> Arch:
    normalized = _ARCH_ALIASES.get(value.strip().lower())
    if normalized is None:
        raise ResolutionError(
            f"Unknown CPU architecture `{value}`.",
            hint=f"Use one of: {', '.join(KNOWN_ARCH)}.",
            context={"operation": "resolve", "arch": value},
        )
    return normalized


def host_os() -> Os:
    return normalize_os(platform.system())


def host_arch() -> Arch:
    return normalize_arch(platform.machine())


def executable_suffix(os_name: Os) -> str:
    return ".exe" if os_name == "win" else ""


def archive_extension(os_name: Os) -> str:
    return "zip" if os_name == "win" else "tar.gz"

