"""Startup blob injection APIs."""

from .base import MACHO_SEGMENT_NAME, RESOURCE_NAME, EmbeddedRegion, EmbedResult, ExecutableFormat
from .elf import ElfFormat
from .fuse import FUSE_SENTINEL, FUSE_SET, FUSE_UNSET, FuseLocation, locate_fuse
from .injector import FORMATS, BinaryInjector, format_for
from .macho import MachOFormat
from .pe import PeFormat, pe_checksum

__all__ = [
    "FORMATS",
    "FUSE_SENTINEL",
    "FUSE_SET",
    "FUSE_UNSET",
    "MACHO_SEGMENT_NAME",
    "RESOURCE_NAME",
    "BinaryInjector",
    "ElfFormat",
    "EmbedResult",
    "EmbeddedRegion",
    "ExecutableFormat",
    "FuseLocation",
    "MachOFormat",
    "PeFormat",
    "format_for",
    "locate_fuse",
    "pe_checksum",
]
