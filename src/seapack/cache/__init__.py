"""Runtime artifact cache APIs."""

from .archive import extract_archive
from .keys import parse_slot_key, slot_key
from .lock import SlotLock
from .store import ArtifactCache

__all__ = [
    "ArtifactCache",
    "SlotLock",
    "extract_archive",
    "parse_slot_key",
    "slot_key",
]
