"""Project lockfile APIs."""

from .io import (
    BINARY_LOCKFILE,
    TEXT_LOCKFILE,
    find_project_lock,
    parse_project_lock,
    read_project_lock,
    serialize_project_lock,
    write_project_lock,
)
from .model import ProjectLock

__all__ = [
    "BINARY_LOCKFILE",
    "TEXT_LOCKFILE",
    "ProjectLock",
    "find_project_lock",
    "parse_project_lock",
    "read_project_lock",
    "serialize_project_lock",
    "write_project_lock",
]
