"""Project lockfile discovery, partial parsing and serialization."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import cbor2

from seapack.errors import LockfileError
from seapack.lockfile.model import LOCKFILE_VERSION, RUNTIME_NAME, LockFormat, ProjectLock

BINARY_LOCKFILE = "seapack.lockb"
TEXT_LOCKFILE = "seapack.lock"
VERSION_FILES = (".node-version", ".nvmrc")

SEARCH_ORDER: tuple[tuple[str, LockFormat], ...] = (
    (BINARY_LOCKFILE, "cbor"),
    (TEXT_LOCKFILE, "json"),
    *((name, "text") for name in VERSION_FILES),
)


def find_project_lock(project_dir: str | Path) -> Path | None:
    root = Path(project_dir)
    for name, _ in SEARCH_ORDER:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def read_project_lock(project_dir: str | Path) -> ProjectLock | None:
    """Return the first lockfile found in ``project_dir``, or ``None``."""
    root = Path(project_dir)
    for name, fmt in SEARCH_ORDER:
        candidate = root / name
        if candidate.is_file():
            return parse_project_lock(candidate.read_bytes(), path=candidate, fmt=fmt)
    return None


def parse_project_lock(raw: bytes, *, path: Path, fmt: LockFormat) -> ProjectLock:
    if fmt == "text":
        return ProjectLock(version=_parse_version_file(raw, path=path), path=path, format=fmt)
    payload = _decode_cbor(raw, path=path) if fmt == "cbor" else _decode_json(raw, path=path)
    return ProjectLock(
        version=_required_version(payload, path=path),
        path=path,
        format=fmt,
        runtime=_optional_runtime_name(payload),
    )


def serialize_project_lock(version: str, *, fmt: LockFormat) -> bytes:
    payload = {
        "lockfile_version": LOCKFILE_VERSION,
        "runtime": {"name": RUNTIME_NAME, "version": version},
    }
    if fmt == "cbor":
        return cbor2.dumps(payload, canonical=True)
    if fmt == "json":
        return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")
    return f"{version}\n".encode()


def write_project_lock(
    project_dir: str | Path,
    version: str,
    *,
    fmt: LockFormat = "json",
) -> Path:
    names = {fmt_name: name for name, fmt_name in SEARCH_ORDER}
    lock_path = Path(project_dir) / names[fmt]
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = lock_path.with_name(lock_path.name + ".tmp")
    temp_path.write_bytes(serialize_project_lock(version, fmt=fmt))
    temp_path.replace(lock_path)
    return lock_path


def _decode_cbor(raw: bytes, *, path: Path) -> Any:
    try:
        return cbor2.loads(raw)
    except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
        raise LockfileError(
            "Invalid binary lockfile.",
            hint="Delete the lockfile or rewrite it with a supported version pin.",
            context={"path": str(path), "reason": str(exc)},
        ) from exc


def _decode_json(raw: bytes, *, path: Path) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise LockfileError(
            "Invalid lockfile JSON.",
            hint=str(exc),
            context={"path": str(path)},
        ) from exc


def _required_version(payload: Any, *, path: Path) -> str:
    if not isinstance(payload, Mapping):
        raise LockfileError("Invalid lockfile payload type.", context={"path": str(path)})
    runtime = payload.get("runtime")
    if not isinstance(runtime, Mapping):
        raise LockfileError(
            "Lockfile is missing the `runtime` section.",
            hint="Pin a runtime with a `runtime.version` entry.",
            context={"path": str(path)},
        )
    version = runtime.get("version")
    if not isinstance(version, str) or not version.strip():
        raise LockfileError(
            "Invalid lockfile `runtime.version` value.",
            hint="Pin a runtime with a `runtime.version` entry.",
            context={"path": str(path)},
        )
    return version.strip()


def _optional_runtime_name(payload: Mapping[str, Any]) -> str:
    runtime = payload.get("runtime", {})
    name = runtime.get("name") if isinstance(runtime, Mapping) else None
    return name if isinstance(name, str) and name else RUNTIME_NAME


def _parse_version_file(raw: bytes, *, path: Path) -> str:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise LockfileError("Version file is not UTF-8 text.", context={"path": str(path)}) from exc
    for line in text.splitlines():
        value = line.split("#", 1)[0].strip()
        if value:
            return value
    raise LockfileError(
        "Version file does not name a version.",
        hint="Write the runtime version on the first line, e.g. `22.3.0`.",
        context={"path": str(path)},
    )
