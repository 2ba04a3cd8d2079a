"""Per-target copies of the project with platform-specific dependencies."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from seapack.compiler.config import PackageConfig, read_package_config
from seapack.errors import DependencyInstallError
from seapack.models import TargetSpec
from seapack.platforms import Arch, Os

PROJECT_DIR = "project"
DEPENDENCY_FIELDS = ("dependencies", "optionalDependencies")
ALWAYS_EXCLUDED = (".git", "*.partial")

NPM_PLATFORMS: dict[Os, str] = {"darwin": "darwin", "linux": "linux", "win": "win32"}
NPM_ARCHES: dict[Arch, str] = {"x64": "x64", "x86": "ia32", "arm64": "arm64"}


class DependencyInstaller(Protocol):
    def install(self, project_dir: Path, target: TargetSpec) -> None:
        """Install the project's dependencies for ``target`` inside ``project_dir``."""


@dataclass(slots=True)
class NpmInstaller:
    command: tuple[str, ...] = ("npm", "install")
    extra_args: tuple[str, ...] = ()

    def install(self, project_dir: Path, target: TargetSpec) -> None:
        cmd = [
            *self.command,
            f"--target_platform={NPM_PLATFORMS[target.os]}",
            f"--target_arch={NPM_ARCHES[target.arch]}",
            *self.extra_args,
        ]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(project_dir),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise DependencyInstallError(
                "Package manager could not be started.",
                hint="Install Node.js and npm so that `npm install` is available.",
                context={"operation": "prepare", "command": " ".join(cmd), "reason": str(exc)},
            ) from exc
        if result.returncode != 0:
            raise DependencyInstallError(
                f"Installing dependencies for {target.label} failed.",
                hint="Check the npm output; native modules may not publish builds for this target.",
                context={
                    "operation": "prepare",
                    "target": target.label,
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                    "command": " ".join(cmd),
                },
            )


def declares_dependencies(package: PackageConfig) -> bool:
    return any(package.extra.get(name) for name in DEPENDENCY_FIELDS)


def prepare_project(
    project_dir: Path,
    work_dir: Path,
    target: TargetSpec,
    installer: DependencyInstaller,
    *,
    exclude: Iterable[str] = (),
) -> Path:
    """Copy ``project_dir`` into ``work_dir`` and install dependencies for ``target``.

    Installed ``node_modules`` hold host binaries, so they are left behind
    whenever the package declares dependencies and npm reinstalls them.
    Projects without declared dependencies are copied as they are.
    """
    package = read_package_config(project_dir)
    install = declares_dependencies(package)
    patterns = [*ALWAYS_EXCLUDED, *exclude]
    if install:
        patterns.append("node_modules")
    destination = work_dir / PROJECT_DIR
    shutil.copytree(project_dir, destination, ignore=shutil.ignore_patterns(*patterns), symlinks=True)
    if install:
        installer.install(destination, target)
    return destination
