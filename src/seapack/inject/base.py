"""Executable format capability interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from seapack.inject.fuse import FuseLocation

# Resource the runtime looks up at startup when the fuse is set.
RESOURCE_NAME = "NODE_SEA_BLOB"
MACHO_SEGMENT_NAME = "NODE_SEA"


@dataclass(frozen=True, slots=True)
class EmbeddedRegion:
    """Where a previously embedded blob lives in an image."""

    offset: int
    length: int


@dataclass(frozen=True, slots=True)
class EmbedResult:
    data: bytes
    offset: int
    length: int


class ExecutableFormat(Protocol):
    name: str

    def locate_fuse(self, image: bytes) -> FuseLocation:
        """Return the fuse position in an image with no embedded region."""

    def find_region(self, image: bytes) -> EmbeddedRegion | None:
        """Return the embedded blob region, if the image has one."""

    def strip(self, image: bytes, region: EmbeddedRegion | None) -> bytes:
        """Return the image with ``region`` and any signature removed."""

    def embed(self, image: bytes, blob: bytes) -> EmbedResult:
        """Embed ``blob`` into a stripped image whose fuse is already flipped."""
