"""Cross-process slot locks built on exclusive file creation."""

from __future__ import annotations

import contextlib
import json
import os
import socket
import time
import uuid
from pathlib import Path
from types import TracebackType
from typing import Any

from seapack.errors import CacheLockTimeout

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_STALE_AFTER = 3600.0


def owner_record() -> dict[str, Any]:
    return {"pid": os.getpid(), "host": socket.gethostname(), "created": time.time()}


def process_alive(pid: int) -> bool:
    if os.name == "nt":
        # Signal 0 is CTRL_C_EVENT on Windows; assume the owner is alive.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def owner_is_stale(record: dict[str, Any], *, stale_after: float, now: float | None = None) -> bool:
    """Whether a lock or lease owner record can no longer be holding its resource."""
    current = time.time() if now is None else now
    created = record.get("created")
    if isinstance(created, (int, float)) and current - created > stale_after:
        return True
    pid = record.get("pid")
    if record.get("host") == socket.gethostname() and isinstance(pid, int):
        return not process_alive(pid)
    return False


def read_owner_record(path: Path) -> dict[str, Any] | None:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


class SlotLock:
    """Exclusive lock on one cache slot, shared by threads and processes.

    The lock is a file created with ``O_CREAT | O_EXCL`` holding the owner's
    pid, host and creation time. Waiters poll until the file disappears, the
    owner is found to be dead or too old, or ``timeout`` elapses.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        timeout: float,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise CacheLockTimeout(
                        "Timed out waiting for a cache slot lock.",
                        hint=f"Another build holds the lock; remove {self.path} if no build is running.",
                        context={
                            "operation": "cache_lock",
                            "path": str(self.path),
                            "timeout": str(self.timeout),
                        },
                    ) from None
                time.sleep(self.poll_interval)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(owner_record(), handle, sort_keys=True)
            self._held = True
            return

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self.path.unlink(missing_ok=True)

    def __enter__(self) -> SlotLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _break_if_stale(self) -> bool:
        """Remove a stale lock file; True when acquisition should be retried at once.

        The stale file is claimed by renaming it to a unique name first, so two
        waiters that both saw the same stale owner cannot both remove a lock.
        """
        if not self._is_stale(self.path):
            return False
        claimed = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return True
        if self._is_stale(claimed):
            claimed.unlink(missing_ok=True)
            return True
        # A new owner took the lock after it was inspected; put its file back.
        with contextlib.suppress(FileExistsError):
            os.link(claimed, self.path)
        claimed.unlink(missing_ok=True)
        return False

    def _is_stale(self, path: Path) -> bool:
        record = read_owner_record(path)
        if record is not None:
            return owner_is_stale(record, stale_after=self.stale_after)
        # Owner may still be writing its record; only old files are broken.
        try:
            return time.time() - path.stat().st_mtime > self.stale_after
        except FileNotFoundError:
            return True
