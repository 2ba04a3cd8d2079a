"""Project lockfile model types."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

LockFormat = Literal["cbor", "json", "text"]

LOCKFILE_VERSION = 1
RUNTIME_NAME = "node"


@dataclass(frozen=True, slots=True)
class ProjectLock:
    """The runtime pin recorded by a previous install.

    ``version`` is kept as written; it may be an exact version or, for the
    plain-text formats, a constraint.
    """

    version: str
    path: Path
    format: LockFormat
    runtime: str = RUNTIME_NAME
