"""Runtime distribution fetching with mandatory integrity checks."""

from .http import download, fetch_bytes, sha256_file
from .manifest import RuntimeManifest, parse_checksum_file, parse_version_index

__all__ = [
    "RuntimeManifest",
    "download",
    "fetch_bytes",
    "parse_checksum_file",
    "parse_version_index",
    "sha256_file",
]
