"""Startup blob generation through the runtime's own SEA facility."""

from __future__ import annotations

import json
import subprocess
import tempfile
from pathlib import Path

from seapack.compiler.syntax import normalization_reason
from seapack.errors import (
    EVICT_HINT,
    BlobGenerationError,
    CrossCompileBlobUnsupported,
    UnsupportedModuleSyntax,
)
from seapack.models import BlobDescriptor, CacheEntry, StartupBlob, TargetSpec
from seapack.observability import StructuredLogger
from seapack.platforms import host_arch, host_os

SEA_CONFIG_FLAG = "--experimental-sea-config"
STAGED_CONFIG = "sea-config.json"
BLOB_FILE = "sea-prep.blob"


class BlobCompiler:
    """Runs ``node --experimental-sea-config`` with a host-compatible runtime.

    The blob format depends on the runtime version and, when a snapshot or
    code cache is embedded, on the platform that produced it. ``compile``
    refuses combinations that would yield a blob the target cannot load.
    """

    def __init__(
        self,
        *,
        host: TargetSpec | None = None,
        work_root: Path | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.host = host or TargetSpec(os=host_os(), arch=host_arch())
        self.work_root = work_root
        self.logger = logger

    def check_preconditions(
        self,
        descriptor: BlobDescriptor,
        *,
        target: CacheEntry,
        compiler: CacheEntry,
    ) -> None:
        context = {
            "operation": "compile",
            "target": target.triple.key,
            "compiler": compiler.triple.key,
            "host": self.host.label,
        }
        if compiler.triple.version != target.triple.version:
            raise CrossCompileBlobUnsupported(
                "Compiler runtime version differs from the target runtime version.",
                hint="Use a compiler runtime of the same version as the target.",
                context=context,
            )
        if not compiler.triple.same_platform(self.host):
            raise CrossCompileBlobUnsupported(
                "Compiler runtime cannot run on this host.",
                hint=f"Acquire the {compiler.triple.version} runtime for {self.host.label} to compile blobs.",
                context=context,
            )
        if descriptor.uses_host_specific_cache and not target.triple.same_platform(self.host):
            raise CrossCompileBlobUnsupported(
                "Snapshots and code caches are tied to the platform that produced them.",
                hint="Disable `useSnapshot`/`useCodeCache` or build on a host matching the target.",
                context=context,
            )
        if not descriptor.normalized:
            reason = normalization_reason(descriptor.entry, package_type=descriptor.package_type)
            if reason is not None:
                raise UnsupportedModuleSyntax(
                    f"Entry script needs bundling: {reason}.",
                    hint="Rebuild with bundling enabled to convert the entry to CommonJS.",
                    context={"operation": "compile", "entry": str(descriptor.entry)},
                )

    def compile(
        self,
        descriptor: BlobDescriptor,
        *,
        target: CacheEntry,
        compiler: CacheEntry | None = None,
    ) -> StartupBlob:
        compiler_entry = compiler or target
        self.check_preconditions(descriptor, target=target, compiler=compiler_entry)
        with tempfile.TemporaryDirectory(prefix="seapack-blob-", dir=self.work_root) as scratch:
            work = Path(scratch)
            staged_config = work / STAGED_CONFIG
            blob_path = work / BLOB_FILE
            payload = {
                **descriptor.options,
                "main": str(descriptor.entry),
                "output": str(blob_path),
            }
            staged_config.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
            cmd = [str(compiler_entry.executable), SEA_CONFIG_FLAG, str(staged_config)]
            self._log(target, "Generating startup blob.", extra={"command": " ".join(cmd)})
            try:
                result = subprocess.run(
                    cmd,
                    cwd=str(descriptor.project_dir),
                    capture_output=True,
                    text=True,
                    check=False,
                )
            except OSError as exc:
                raise BlobGenerationError(
                    "Compiler runtime could not be started.",
                    hint=EVICT_HINT,
                    context={"operation": "compile", "command": " ".join(cmd), "reason": str(exc)},
                ) from exc
            if result.returncode != 0:
                raise BlobGenerationError(
                    "Startup blob generation failed.",
                    hint="Check the runtime output for errors in the entry script or configuration.",
                    context={
                        "operation": "compile",
                        "returncode": str(result.returncode),
                        "stderr": result.stderr[:2000] if result.stderr else "",
                        "command": " ".join(cmd),
                    },
                )
            if not blob_path.is_file():
                raise BlobGenerationError(
                    "Runtime exited successfully but wrote no startup blob.",
                    context={"operation": "compile", "output": str(blob_path), "command": " ".join(cmd)},
                )
            data = blob_path.read_bytes()
        return StartupBlob(data=data, compiled_with=compiler_entry.triple, target=target.triple)

    def _log(self, target: CacheEntry, message: str, *, extra: dict[str, str]) -> None:
        if self.logger is not None:
            self.logger.log(
                operation="compile",
                target=target.triple.target.label,
                stage="compile",
                message=message,
                extra=extra,
            )
