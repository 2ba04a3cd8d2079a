"""Runtime version resolution for requested build targets."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from seapack.errors import ResolutionError
from seapack.fetch.manifest import RuntimeManifest
from seapack.lockfile import read_project_lock
from seapack.models import RuntimeTriple, TargetSpec
from seapack.platforms import host_arch, host_os, normalize_arch, normalize_os
from seapack.policy import Policy
from seapack.versions import Version, is_exact_version, max_satisfying, parse_version

if TYPE_CHECKING:
    from seapack.cache import ArtifactCache

TargetLike = TargetSpec | tuple[str, str] | str


def host_target() -> TargetSpec:
    return TargetSpec(os=host_os(), arch=host_arch())


def parse_target(value: TargetLike) -> TargetSpec:
    """Normalize ``("macos", "aarch64")`` or ``"linux-x64"`` into a TargetSpec."""
    if isinstance(value, TargetSpec):
        return value
    if isinstance(value, str):
        os_name, sep, arch = value.strip().rpartition("-")
        if not sep or not os_name:
            raise ResolutionError(
                f"Invalid target `{value}`.",
                hint="Write targets as `<os>-<arch>`, e.g. `linux-x64`.",
                context={"operation": "resolve", "target": value},
            )
        return TargetSpec(os=normalize_os(os_name), arch=normalize_arch(arch))
    os_name, arch = value
    return TargetSpec(os=normalize_os(os_name), arch=normalize_arch(arch))


def parse_targets(values: Iterable[TargetLike] | None) -> list[TargetSpec]:
    if values is None:
        return [host_target()]
    targets: list[TargetSpec] = []
    for value in values:
        target = parse_target(value)
        if target not in targets:
            targets.append(target)
    if not targets:
        return [host_target()]
    return targets


class VersionResolver:
    """Turns a version input and a set of targets into concrete runtime triples."""

    def __init__(
        self,
        manifest: RuntimeManifest,
        *,
        cache: ArtifactCache | None = None,
        policy: Policy | None = None,
    ) -> None:
        self.manifest = manifest
        self.cache = cache
        self.policy = policy or manifest.policy

    def resolve(
        self,
        targets: Iterable[TargetLike] | None = None,
        *,
        version: str | None = None,
        project_dir: str | Path | None = None,
    ) -> list[RuntimeTriple]:
        specs = parse_targets(targets)
        constraint = self.constraint_for(version=version, project_dir=project_dir)
        resolved = self.resolve_version(constraint)
        return [self._checked_triple(resolved, spec, constraint) for spec in specs]

    def resolve_one(
        self,
        target: TargetLike | None = None,
        *,
        version: str | None = None,
        project_dir: str | Path | None = None,
    ) -> RuntimeTriple:
        targets = None if target is None else [target]
        return self.resolve(targets, version=version, project_dir=project_dir)[0]

    def constraint_for(
        self,
        *,
        version: str | None = None,
        project_dir: str | Path | None = None,
    ) -> str:
        """Pick the version input: an explicit value wins over the project lockfile."""
        if version is not None and version.strip():
            return version.strip()
        if project_dir is not None:
            lock = read_project_lock(project_dir)
            if lock is not None:
                return lock.version
        raise ResolutionError(
            "No runtime version was given and no project lockfile was found.",
            hint="Pass an explicit version or add a `seapack.lock` / `.node-version` file.",
            context={
                "operation": "resolve",
                "project_dir": str(project_dir) if project_dir is not None else "",
            },
        )

    def resolve_version(self, constraint: str) -> Version:
        if is_exact_version(constraint):
            return parse_version(constraint)
        candidates = self._candidate_versions()
        selected = max_satisfying(candidates, constraint)
        if selected is None:
            raise ResolutionError(
                f"No runtime version satisfies `{constraint}`.",
                hint=(
                    "Populate the cache for a matching version first."
                    if self.policy.offline
                    else "Check the constraint against the published version index."
                ),
                context={
                    "operation": "resolve",
                    "constraint": constraint,
                    "candidates": str(len(candidates)),
                },
            )
        return selected

    def _candidate_versions(self) -> list[Version]:
        if self.policy.offline:
            if self.cache is None:
                return []
            return sorted({entry.triple.version for entry in self.cache.entries()})
        return self.manifest.versions()

    def _checked_triple(self, version: Version, spec: TargetSpec, constraint: str) -> RuntimeTriple:
        triple = RuntimeTriple(version=version, os=spec.os, arch=spec.arch)
        if self.policy.offline and self.cache is not None and self.cache.lookup(triple) is not None:
            return triple
        if not self.manifest.offers(triple):
            raise ResolutionError(
                f"Runtime {version} is not published for {spec.label}.",
                hint="Pick another version or target; the upstream checksum list has no archive for it.",
                context={
                    "operation": "resolve",
                    "constraint": constraint,
                    "version": str(version),
                    "target": spec.label,
                    "archive": triple.archive_name,
                },
            )
        return triple

