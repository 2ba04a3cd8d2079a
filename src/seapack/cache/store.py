"""On-disk runtime cache with staged, atomically promoted slots."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from seapack.cache.archive import extract_archive
from seapack.cache.keys import parse_slot_key, slot_key
from seapack.cache.lock import (
    DEFAULT_STALE_AFTER,
    SlotLock,
    owner_is_stale,
    owner_record,
    read_owner_record,
)
from seapack.config import DEFAULT_LOCK_TIMEOUT, Settings
from seapack.errors import (
    EVICT_HINT,
    CacheBusyError,
    CacheError,
    ExtractionError,
    FetchError,
    PolicyError,
)
from seapack.fetch.http import download, sha256_file
from seapack.fetch.manifest import RuntimeManifest
from seapack.models import CacheEntry, RuntimeTriple
from seapack.observability import StructuredLogger
from seapack.policy import Policy

RUNTIMES_DIR = "runtimes"
ENTRY_FILE = "entry.json"
TREE_DIR = "tree"
STAGING_DIR = ".staging"
LOCKS_DIR = ".locks"
LEASES_DIR = ".leases"
TRASH_DIR = ".trash"


class ArtifactCache:
    """Runtime distributions keyed by (version, os, arch).

    A slot is only ever created by renaming a fully verified and extracted
    staging directory into place, and only ever removed by renaming it into
    the trash first. Readers therefore see either a complete slot or none.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        manifest: RuntimeManifest,
        policy: Policy | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_after: float = DEFAULT_STALE_AFTER,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.root = Path(root) / RUNTIMES_DIR
        self.manifest = manifest
        self.policy = policy or manifest.policy
        self.lock_timeout = lock_timeout
        self.stale_after = stale_after
        self.logger = logger
        self._verified: dict[str, tuple[int, int]] = {}
        self._verified_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        manifest: RuntimeManifest | None = None,
        logger: StructuredLogger | None = None,
    ) -> ArtifactCache:
        return cls(
            settings.cache_dir,
            manifest=manifest or RuntimeManifest(settings.dist_url, policy=settings.policy),
            policy=settings.policy,
            lock_timeout=settings.lock_timeout,
            logger=logger,
        )

    def slot_path(self, triple: RuntimeTriple) -> Path:
        return self.root / slot_key(triple)

    def lookup(self, triple: RuntimeTriple) -> CacheEntry | None:
        """Return the promoted entry for ``triple`` if it is present and valid."""
        return self._load_valid(triple)

    def acquire(self, triple: RuntimeTriple) -> CacheEntry:
        entry = self._load_valid(triple)
        if entry is not None:
            self._log(triple, "Runtime cache hit.", extra={"key": slot_key(triple)})
            return entry

        with self._slot_lock(triple):
            # Another process may have promoted the slot while we waited.
            entry = self._load_valid(triple)
            if entry is not None:
                self._log(triple, "Runtime cache hit after wait.", extra={"key": slot_key(triple)})
                return entry
            slot = self.slot_path(triple)
            if slot.exists():
                self._log(
                    triple,
                    "Discarding incomplete or corrupt cache slot.",
                    level="warning",
                    extra={"key": slot_key(triple)},
                )
                self._discard(slot)
            self._reclaim_staging(triple)
            if self.policy.offline:
                raise PolicyError(
                    f"Runtime {triple.key} is not cached and network access is disabled.",
                    hint="Populate the cache on a connected host or unset SEAPACK_OFFLINE.",
                    context={"operation": "acquire", "key": slot_key(triple)},
                )
            return self._populate(triple)

    def entries(self) -> list[CacheEntry]:
        if not self.root.is_dir():
            return []
        found: list[CacheEntry] = []
        for child in sorted(self.root.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            triple = parse_slot_key(child.name)
            if triple is None:
                continue
            entry = self._load_valid(triple)
            if entry is not None:
                found.append(entry)
        return found

    def evict(self, triple: RuntimeTriple) -> bool:
        """Remove the slot for ``triple``; returns whether anything was removed."""
        with self._slot_lock(triple):
            live = self._live_leases(triple)
            if live:
                raise CacheBusyError(
                    f"Runtime {triple.key} is in use by a running build.",
                    hint="Wait for the build to finish before evicting this runtime.",
                    context={"operation": "evict", "key": slot_key(triple), "leases": str(live)},
                )
            slot = self.slot_path(triple)
            if not slot.exists():
                return False
            self._discard(slot)
            self._log(triple, "Evicted cached runtime.", stage=None, extra={"key": slot_key(triple)})
            return True

    def evict_all(self) -> list[str]:
        evicted: list[str] = []
        if self.root.is_dir():
            for child in sorted(self.root.iterdir()):
                if child.name.startswith(".") or not child.is_dir():
                    continue
                triple = parse_slot_key(child.name)
                if triple is not None and self.evict(triple):
                    evicted.append(child.name)
        staging_root = self.root / STAGING_DIR
        if staging_root.is_dir():
            keys = {child.name.rsplit("-", 1)[0] for child in staging_root.iterdir()}
            for key in sorted(keys):
                triple = parse_slot_key(key)
                if triple is not None:
                    with self._slot_lock(triple):
                        self._reclaim_staging(triple)
        trash = self.root / TRASH_DIR
        if trash.is_dir():
            shutil.rmtree(trash)
        return evicted

    @contextmanager
    def lease(self, entry: CacheEntry) -> Iterator[CacheEntry]:
        """Mark ``entry`` as in use so that eviction refuses to remove it."""
        triple = entry.triple
        lease_dir = self.root / LEASES_DIR / slot_key(triple)
        lease_path = lease_dir / f"{os.getpid()}-{uuid.uuid4().hex}.json"
        with self._slot_lock(triple):
            if self._load_valid(triple) is None:
                raise CacheError(
                    f"Runtime {triple.key} was evicted before it could be leased.",
                    hint="Retry the build to fetch the runtime again.",
                    context={"operation": "lease", "key": slot_key(triple)},
                )
            lease_dir.mkdir(parents=True, exist_ok=True)
            lease_path.write_text(json.dumps(owner_record(), sort_keys=True), encoding="utf-8")
        try:
            yield entry
        finally:
            lease_path.unlink(missing_ok=True)

    def _populate(self, triple: RuntimeTriple) -> CacheEntry:
        expected = self.manifest.expected_sha256(triple)
        if expected is None:
            raise FetchError(
                f"No published checksum for {triple.archive_name}.",
                hint="The distribution does not offer this runtime; pick another version or target.",
                context={"operation": "acquire", "key": slot_key(triple)},
            )
        staging_root = self.root / STAGING_DIR
        staging_root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f"{slot_key(triple)}-", dir=staging_root))
        try:
            url = self.manifest.archive_url(triple)
            self._log(triple, "Downloading runtime archive.", extra={"url": url})
            archive = download(
                url,
                destination=staging / triple.archive_name,
                sha256=expected,
                policy=self.policy,
            )
            tree = staging / TREE_DIR
            extract_archive(archive, tree)
            archive.unlink()
            executable = tree / triple.executable_relpath
            if not executable.is_file():
                raise ExtractionError(
                    "Runtime archive does not contain the expected executable.",
                    hint=EVICT_HINT,
                    context={
                        "operation": "extract",
                        "key": slot_key(triple),
                        "executable": triple.executable_relpath,
                    },
                )
            record = {
                "key": slot_key(triple),
                "triple": triple.to_dict(),
                "archive_name": triple.archive_name,
                "archive_sha256": expected.lower(),
                "executable": triple.executable_relpath,
                "executable_sha256": sha256_file(executable),
                "executable_size": executable.stat().st_size,
            }
            (staging / ENTRY_FILE).write_text(
                json.dumps(record, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            slot = self.slot_path(triple)
            os.replace(staging, slot)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        self._log(triple, "Promoted runtime into cache.", extra={"key": slot_key(triple)})
        entry = self._entry_from_record(triple, slot, record)
        self._remember_verified(entry)
        return entry

    def _load_valid(self, triple: RuntimeTriple) -> CacheEntry | None:
        slot = self.slot_path(triple)
        record = _read_record(slot / ENTRY_FILE)
        if record is None or record.get("key") != slot_key(triple):
            return None
        if not _record_is_complete(record):
            return None
        entry = self._entry_from_record(triple, slot, record)
        try:
            stat = entry.executable.stat()
        except OSError:
            return None
        if stat.st_size != entry.executable_size:
            return None
        if self.policy.verify_cache_hits and not self._is_verified(entry, stat):
            if sha256_file(entry.executable) != entry.executable_sha256:
                return None
            self._remember_verified(entry)
        return entry

    def _entry_from_record(
        self, triple: RuntimeTriple, slot: Path, record: dict[str, Any]
    ) -> CacheEntry:
        tree = slot / TREE_DIR
        return CacheEntry(
            triple=triple,
            root=slot,
            tree=tree,
            executable=tree / str(record["executable"]),
            archive_name=str(record["archive_name"]),
            archive_sha256=str(record["archive_sha256"]),
            executable_sha256=str(record["executable_sha256"]),
            executable_size=int(record["executable_size"]),
        )

    def _is_verified(self, entry: CacheEntry, stat: os.stat_result) -> bool:
        with self._verified_lock:
            return self._verified.get(str(entry.executable)) == (stat.st_mtime_ns, stat.st_size)

    def _remember_verified(self, entry: CacheEntry) -> None:
        stat = entry.executable.stat()
        with self._verified_lock:
            self._verified[str(entry.executable)] = (stat.st_mtime_ns, stat.st_size)

    def _discard(self, slot: Path) -> None:
        trash_root = self.root / TRASH_DIR
        trash_root.mkdir(parents=True, exist_ok=True)
        doomed = trash_root / f"{slot.name}-{uuid.uuid4().hex}"
        os.replace(slot, doomed)
        with self._verified_lock:
            prefix = str(slot)
            for key in [key for key in self._verified if key.startswith(prefix)]:
                del self._verified[key]
        shutil.rmtree(doomed)

    def _reclaim_staging(self, triple: RuntimeTriple) -> None:
        """Remove staging directories left by populations that never finished.

        Callers hold the slot lock, so no live population owns them.
        """
        staging_root = self.root / STAGING_DIR
        if not staging_root.is_dir():
            return
        leftovers = sorted(staging_root.glob(f"{slot_key(triple)}-*"))
        for path in leftovers:
            shutil.rmtree(path, ignore_errors=True)
        if leftovers:
            self._log(
                triple,
                "Removed abandoned staging directories.",
                level="warning",
                extra={"paths": [path.name for path in leftovers]},
            )

    def _live_leases(self, triple: RuntimeTriple) -> int:
        lease_dir = self.root / LEASES_DIR / slot_key(triple)
        if not lease_dir.is_dir():
            return 0
        live = 0
        for lease_path in lease_dir.iterdir():
            record = read_owner_record(lease_path)
            if record is not None and not owner_is_stale(record, stale_after=self.stale_after):
                live += 1
            else:
                lease_path.unlink(missing_ok=True)
        return live

    def _slot_lock(self, triple: RuntimeTriple) -> SlotLock:
        return SlotLock(
            self.root / LOCKS_DIR / f"{slot_key(triple)}.lock",
            timeout=self.lock_timeout,
            stale_after=self.stale_after,
        )

    def _log(
        self,
        triple: RuntimeTriple,
        message: str,
        *,
        level: str = "info",
        stage: str | None = "acquire",
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self.logger is None:
            return
        self.logger.log(
            operation="cache",
            target=triple.target.label,
            stage=stage,
            message=message,
            level=level,
            extra=extra,
        )


def _read_record(path: Path) -> dict[str, Any] | None:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _record_is_complete(record: dict[str, Any]) -> bool:
    required_str = ("archive_name", "archive_sha256", "executable", "executable_sha256")
    if not all(isinstance(record.get(name), str) and record.get(name) for name in required_str):
        return False
    return isinstance(record.get("executable_size"), int)
