"""Fuse-aware blob injection into runtime executables."""

from __future__ import annotations

import dataclasses
import os
import tempfile
from pathlib import Path

from seapack.errors import AlreadyInjected, InjectionError
from seapack.inject.base import ExecutableFormat
from seapack.inject.elf import ElfFormat
from seapack.inject.fuse import set_fuse
from seapack.inject.macho import MachOFormat
from seapack.inject.pe import PeFormat
from seapack.models import CacheEntry, PatchedExecutable, RuntimeTriple, StartupBlob
from seapack.observability import StructuredLogger
from seapack.platforms import Os

FORMATS: dict[Os, ExecutableFormat] = {
    "win": PeFormat(),
    "linux": ElfFormat(),
    "darwin": MachOFormat(),
}


def format_for(os_name: Os) -> ExecutableFormat:
    try:
        return FORMATS[os_name]
    except KeyError as exc:
        raise InjectionError(
            f"No executable format is registered for `{os_name}`.",
            context={"operation": "inject", "os": str(os_name)},
        ) from exc


class BinaryInjector:
    """Embeds startup blobs; re-injection replaces the previous blob.

    Injecting into an already patched image strips the previous region first,
    so ``inject(inject(bare, a), b)`` is byte-identical to ``inject(bare, b)``.
    """

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self.logger = logger

    def inject(
        self,
        image: bytes,
        blob: StartupBlob,
        *,
        target: RuntimeTriple | None = None,
    ) -> PatchedExecutable:
        triple = target or blob.target
        fmt = format_for(triple.os)
        region = fmt.find_region(image)
        base = fmt.strip(image, region)
        fuse = fmt.locate_fuse(base)
        if fuse.flipped and region is None:
            raise AlreadyInjected(
                "Executable fuse is set but no embedded blob region was found.",
                hint="Inject into the bare runtime executable from the cache.",
                context={"operation": "inject", "target": triple.key, "format": fmt.name},
            )
        working = bytearray(base)
        set_fuse(working, fuse, flipped=True)
        result = fmt.embed(bytes(working), blob.data)
        if self.logger is not None:
            self.logger.log(
                operation="inject",
                target=triple.target.label,
                stage="inject",
                message="Embedded startup blob." if region is None else "Replaced startup blob.",
                extra={"format": fmt.name, "offset": result.offset, "length": result.length},
            )
        return PatchedExecutable(
            data=result.data,
            triple=triple,
            format=fmt.name,
            blob_offset=result.offset,
            blob_length=result.length,
        )

    def inject_file(
        self,
        source: CacheEntry | str | Path,
        blob: StartupBlob,
        output: str | Path,
    ) -> PatchedExecutable:
        """Inject into ``source`` and atomically write the result to ``output``."""
        source_path = source.executable if isinstance(source, CacheEntry) else Path(source)
        triple = source.triple if isinstance(source, CacheEntry) else blob.target
        patched = self.inject(source_path.read_bytes(), blob, target=triple)
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent
        )
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(patched.data)
            temp_path.chmod(0o644 if triple.os == "win" else 0o755)
            os.replace(temp_path, output_path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        return dataclasses.replace(patched, path=output_path)
