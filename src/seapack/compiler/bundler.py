"""External bundler used to normalize module syntax to CommonJS."""

from __future__ import annotations

import dataclasses
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from seapack.errors import BundlerError
from seapack.models import BlobDescriptor

BUNDLED_ENTRY = "bundled.cjs"


class Bundler(Protocol):
    def bundle(self, entry: Path, output: Path, *, cwd: Path) -> Path:
        """Write a CommonJS bundle of ``entry`` to ``output`` and return it."""


@dataclass(slots=True)
class EsbuildBundler:
    command: tuple[str, ...] = ("npx", "--yes", "esbuild")
    extra_args: tuple[str, ...] = ()

    def bundle(self, entry: Path, output: Path, *, cwd: Path) -> Path:
        cmd = [
            *self.command,
            str(entry),
            "--bundle",
            "--platform=node",
            "--format=cjs",
            f"--outfile={output}",
            *self.extra_args,
        ]
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise BundlerError(
                "Bundler could not be started.",
                hint="Install Node.js and npm so that `npx esbuild` is available.",
                context={"operation": "bundle", "command": " ".join(cmd), "reason": str(exc)},
            ) from exc
        if result.returncode != 0:
            raise BundlerError(
                "Bundler failed.",
                hint="Check the bundler output for details.",
                context={
                    "operation": "bundle",
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                    "command": " ".join(cmd),
                },
            )
        if not output.is_file():
            raise BundlerError(
                "Bundler exited successfully but produced no output file.",
                context={"operation": "bundle", "output": str(output), "command": " ".join(cmd)},
            )
        return output


def bundle_descriptor(
    descriptor: BlobDescriptor,
    bundler: Bundler,
    *,
    work_dir: Path,
) -> BlobDescriptor:
    """Bundle the descriptor's entry and point a copy of the descriptor at the result."""
    output = bundler.bundle(descriptor.entry, work_dir / BUNDLED_ENTRY, cwd=descriptor.project_dir)
    return dataclasses.replace(descriptor, entry=output, normalized=True)
