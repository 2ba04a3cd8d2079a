"""Remote runtime version index and published checksum lists."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field

from seapack.errors import FetchError
from seapack.fetch.http import fetch_bytes
from seapack.models import RuntimeTriple
from seapack.policy import Policy
from seapack.versions import Version, is_exact_version, parse_version

SUMFILE_NAME = "SHASUMS256.txt"
INDEX_NAME = "index.json"

SUMFILE_LINE = re.compile(r"^(?P<digest>[0-9a-fA-F]{64})\s+\*?(?P<name>\S+)$")


def parse_checksum_file(text: str, *, source: str = "") -> dict[str, str]:
    """Parse ``<sha256>  <file name>`` lines, skipping any that do not match."""
    checksums: dict[str, str] = {}
    for line in text.splitlines():
        match = SUMFILE_LINE.fullmatch(line.strip())
        if match is None:
            continue
        checksums[match["name"]] = match["digest"].lower()
    if not checksums:
        raise FetchError(
            "Checksum list contains no parseable entries.",
            hint="Verify the distribution URL serves a SHASUMS256.txt file.",
            context={"operation": "parse_checksums", "source": source},
        )
    return checksums


def parse_version_index(raw: bytes, *, source: str = "") -> list[Version]:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FetchError(
            "Version index is not valid JSON.",
            context={"operation": "parse_index", "source": source},
        ) from exc
    if not isinstance(payload, list):
        raise FetchError(
            "Version index has invalid structure.",
            context={"operation": "parse_index", "source": source},
        )
    versions: list[Version] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        raw_version = item.get("version")
        if isinstance(raw_version, str) and is_exact_version(raw_version):
            versions.append(parse_version(raw_version))
    return sorted(set(versions))


@dataclass(slots=True)
class RuntimeManifest:
    """Read-only view of an upstream distribution directory."""

    dist_url: str
    policy: Policy = field(default_factory=Policy)
    _versions: list[Version] | None = field(init=False, default=None, repr=False)
    _checksums: dict[Version, dict[str, str]] = field(init=False, default_factory=dict, repr=False)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock, repr=False)

    def versions(self) -> list[Version]:
        with self._lock:
            if self._versions is None:
                url = f"{self.dist_url}/{INDEX_NAME}"
                self._versions = parse_version_index(
                    fetch_bytes(url, policy=self.policy), source=url
                )
            return list(self._versions)

    def checksums(self, version: Version) -> dict[str, str]:
        with self._lock:
            cached = self._checksums.get(version)
            if cached is None:
                url = f"{self.dist_url}/v{version}/{SUMFILE_NAME}"
                raw = fetch_bytes(url, policy=self.policy)
                cached = parse_checksum_file(raw.decode("utf-8", errors="replace"), source=url)
                self._checksums[version] = cached
            return dict(cached)

    def archive_url(self, triple: RuntimeTriple) -> str:
        return f"{self.dist_url}/v{triple.version}/{triple.archive_name}"

    def expected_sha256(self, triple: RuntimeTriple) -> str | None:
        return self.checksums(triple.version).get(triple.archive_name)

    def offers(self, triple: RuntimeTriple) -> bool:
        return self.expected_sha256(triple) is not None
