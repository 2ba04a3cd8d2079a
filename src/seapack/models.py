"""Core typed dataclasses shared across the packaging pipeline."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from seapack.platforms import Arch, Os, archive_extension, executable_suffix
from seapack.versions import Version

SigningStatus = Literal["not_required", "signed", "unavailable"]
OutcomeStatus = Literal["success", "signing_unavailable", "failed"]
Stage = Literal["resolve", "acquire", "prepare", "bundle", "compile", "inject", "sign", "complete"]


@dataclass(frozen=True, slots=True)
class TargetSpec:
    """A requested (os, arch) pair, before a version has been resolved."""

    os: Os
    arch: Arch

    @property
    def label(self) -> str:
        return f"{self.os}-{self.arch}"


@dataclass(frozen=True, slots=True)
class RuntimeTriple:
    version: Version
    os: Os
    arch: Arch

    @property
    def key(self) -> str:
        return f"v{self.version}-{self.os}-{self.arch}"

    @property
    def target(self) -> TargetSpec:
        return TargetSpec(os=self.os, arch=self.arch)

    @property
    def dist_name(self) -> str:
        """Upstream directory name, e.g. ``node-v22.3.0-linux-x64``."""
        return f"node-{self.key}"

    @property
    def archive_name(self) -> str:
        return f"{self.dist_name}.{archive_extension(self.os)}"

    @property
    def executable_relpath(self) -> str:
        if self.os == "win":
            return f"{self.dist_name}/node{executable_suffix(self.os)}"
        return f"{self.dist_name}/bin/node"

    def same_platform(self, other: RuntimeTriple | TargetSpec) -> bool:
        return self.os == other.os and self.arch == other.arch

    def to_dict(self) -> dict[str, str]:
        return {"version": str(self.version), "os": self.os, "arch": self.arch}


@dataclass(frozen=True, slots=True)
class CacheEntry:
    triple: RuntimeTriple
    root: Path
    tree: Path
    executable: Path
    archive_name: str
    archive_sha256: str
    executable_sha256: str
    executable_size: int


@dataclass(frozen=True, slots=True)
class BlobDescriptor:
    """Per-build description of what the startup blob is compiled from."""

    project_dir: Path
    config_path: Path
    entry: Path
    output_name: str
    options: Mapping[str, Any] = field(default_factory=dict)
    package_type: str = "commonjs"
    normalized: bool = False

    @property
    def uses_host_specific_cache(self) -> bool:
        return bool(self.options.get("useSnapshot")) or bool(self.options.get("useCodeCache"))


@dataclass(frozen=True, slots=True)
class StartupBlob:
    data: bytes
    compiled_with: RuntimeTriple
    target: RuntimeTriple

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass(frozen=True, slots=True)
class PatchedExecutable:
    data: bytes
    triple: RuntimeTriple
    format: str
    blob_offset: int
    blob_length: int
    path: Path | None = None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass(frozen=True, slots=True)
class SigningResult:
    status: SigningStatus
    tool: str | None = None
    remediation: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"status": self.status, "tool": self.tool, "remediation": self.remediation}


@dataclass(slots=True)
class TargetOutcome:
    target: TargetSpec
    status: OutcomeStatus
    stage: Stage
    triple: RuntimeTriple | None = None
    output_path: Path | None = None
    signing: SigningResult | None = None
    error: dict[str, object] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> dict[str, object]:
        return {
            "target": self.target.label,
            "status": self.status,
            "stage": self.stage,
            "triple": self.triple.to_dict() if self.triple is not None else None,
            "output_path": str(self.output_path) if self.output_path is not None else None,
            "signing": self.signing.to_dict() if self.signing is not None else None,
            "error": self.error,
        }


@dataclass(slots=True)
class BuildReport:
    outcomes: dict[TargetSpec, TargetOutcome] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(outcome.succeeded for outcome in self.outcomes.values())

    def outcome_for(self, target: TargetSpec) -> TargetOutcome | None:
        return self.outcomes.get(target)

    def failures(self) -> list[TargetOutcome]:
        return [outcome for outcome in self.outcomes.values() if not outcome.succeeded]

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "targets": [outcome.to_dict() for outcome in self.outcomes.values()],
        }

    def write(self, path: str | Path) -> Path:
        report_path = Path(path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(
            json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return report_path
