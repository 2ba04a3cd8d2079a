"""Cache slot key derivation."""

from __future__ import annotations

from seapack.errors import ResolutionError
from seapack.models import RuntimeTriple
from seapack.platforms import normalize_arch, normalize_os
from seapack.versions import parse_version


def slot_key(triple: RuntimeTriple) -> str:
    return triple.key


def parse_slot_key(key: str) -> RuntimeTriple | None:
    """Invert :func:`slot_key`; returns ``None`` for names that are not slot keys."""
    parts = key.rsplit("-", 2)
    if len(parts) != 3 or not parts[0].startswith("v"):
        return None
    try:
        triple = RuntimeTriple(
            version=parse_version(parts[0]),
            os=normalize_os(parts[1]),
            arch=normalize_arch(parts[2]),
        )
    except ResolutionError:
        return None
    return triple if slot_key(triple) == key else None
