"""Integrity-enforced HTTP/file fetch implementation."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from seapack.errors import FetchError, IntegrityError
from seapack.policy import Policy, ensure_network_allowed

CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 60.0


def fetch_bytes(url: str, *, policy: Policy | None = None, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    """Fetch a small document (manifest, checksum list) into memory."""
    if policy is not None:
        ensure_network_allowed(policy=policy, operation="fetch", url=url)
    try:
        with urlopen(url, timeout=timeout) as response:  # noqa: S310 - callers verify content
            return response.read()
    except HTTPError as exc:
        raise _fetch_error(url, f"HTTP {exc.code}") from exc
    except (URLError, OSError) as exc:
        raise _fetch_error(url, str(getattr(exc, "reason", exc))) from exc


def download(
    url: str,
    *,
    destination: str | Path,
    sha256: str,
    policy: Policy | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Path:
    """Stream ``url`` to ``destination`` and verify its sha256 digest.

    The payload is written to a ``.part`` sibling first and only renamed into
    place once the digest matches, so a failed or tampered download never
    leaves a file at ``destination``.
    """
    if not sha256:
        raise IntegrityError(
            "download() requires an expected sha256 value.",
            hint="Every runtime archive must be checked against a published checksum.",
            context={"operation": "download", "url": url},
        )
    if policy is not None:
        ensure_network_allowed(policy=policy, operation="download", url=url)
    target = Path(destination)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = target.with_name(target.name + ".part")
    digest = hashlib.sha256()
    try:
        with urlopen(url, timeout=timeout) as response, temp_path.open("wb") as handle:  # noqa: S310
            while True:
                chunk = response.read(CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
                handle.write(chunk)
    except HTTPError as exc:
        temp_path.unlink(missing_ok=True)
        raise _fetch_error(url, f"HTTP {exc.code}") from exc
    except (URLError, OSError) as exc:
        temp_path.unlink(missing_ok=True)
        raise _fetch_error(url, str(getattr(exc, "reason", exc))) from exc

    actual_sha256 = digest.hexdigest()
    if actual_sha256 != sha256.lower():
        temp_path.unlink(missing_ok=True)
        raise IntegrityError(
            "Fetched content hash mismatch.",
            context={
                "operation": "download",
                "url": url,
                "expected": sha256,
                "actual": actual_sha256,
            },
        )
    os.replace(temp_path, target)
    return target


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def _fetch_error(url: str, reason: str) -> FetchError:
    return FetchError(
        "Download failed.",
        hint="Check network access and the distribution URL, then retry.",
        context={"operation": "fetch", "url": url, "reason": reason},
    )
