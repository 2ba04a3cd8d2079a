"""Detection of entry scripts the runtime cannot load as CommonJS."""

from __future__ import annotations

import re
from pathlib import Path

NORMALIZE_SUFFIXES = frozenset({".mjs", ".mts", ".ts", ".cts", ".tsx", ".jsx"})

# Static `import x from`, `import "x"` and `export ...`; dynamic `import()` is fine.
ESM_STATEMENT = re.compile(
    r"^\s*(?:import(?:\s+[\w*{]|\s*[{*\"'])|export\s+(?:default|const|let|var|function|class|async|\{|\*))",
    re.MULTILINE,
)


def normalization_reason(entry: Path, *, package_type: str = "commonjs") -> str | None:
    suffix = entry.suffix.lower()
    if suffix in NORMALIZE_SUFFIXES:
        return f"entry has a `{suffix}` extension"
    if suffix == ".cjs":
        return None
    if package_type == "module" and suffix == ".js":
        return "package.json declares `\"type\": \"module\"`"
    try:
        source = entry.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    if ESM_STATEMENT.search(source):
        return "entry uses ES module import/export statements"
    return None


def needs_normalization(entry: Path, *, package_type: str = "commonjs") -> bool:
    return normalization_reason(entry, package_type=package_type) is not None
