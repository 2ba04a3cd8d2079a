"""Runtime archive extraction with member path validation."""

from __future__ import annotations

import lzma
import shutil
import stat
import tarfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath

from seapack.errors import ExtractionError

TAR_MODES = {
    ".tar.gz": "r:gz",
    ".tgz": "r:gz",
    ".tar.xz": "r:xz",
}


def archive_kind(name: str) -> str:
    lowered = name.lower()
    if lowered.endswith(".zip"):
        return "zip"
    for suffix in TAR_MODES:
        if lowered.endswith(suffix):
            return suffix
    raise ExtractionError(
        "Unsupported archive format.",
        hint="Runtime archives must be .tar.gz, .tar.xz or .zip.",
        context={"operation": "extract", "archive": name},
    )


def extract_archive(archive_path: str | Path, destination: str | Path) -> Path:
    """Extract ``archive_path`` into ``destination`` and return ``destination``.

    Members with absolute paths, ``..`` components or links pointing outside
    the destination are rejected before anything is written.
    """
    archive = Path(archive_path)
    dest = Path(destination)
    kind = archive_kind(archive.name)
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if kind == "zip":
            _extract_zip(archive, dest)
        else:
            _extract_tar(archive, dest, mode=TAR_MODES[kind])
    except ExtractionError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, lzma.LZMAError, zlib.error, EOFError, OSError) as exc:
        raise ExtractionError(
            "Runtime archive is malformed.",
            hint="Evict the cached runtime and retry; the download may be truncated.",
            context={"operation": "extract", "archive": str(archive), "reason": str(exc)},
        ) from exc
    return dest


def _extract_tar(archive: Path, dest: Path, *, mode: str) -> None:
    with tarfile.open(archive, mode) as tf:
        members = tf.getmembers()
        for member in members:
            _check_member_name(member.name, archive=archive)
            if member.isdev():
                raise _unsafe_member(archive, member.name, "device or fifo member")
            if member.issym():
                target = PurePosixPath(member.name).parent / member.linkname
                if PurePosixPath(member.linkname).is_absolute() or not _stays_inside(target):
                    raise _unsafe_member(archive, member.name, "symlink escapes archive root")
            elif member.islnk():
                _check_member_name(member.linkname, archive=archive)
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest, members=members, filter="data")
        else:
            tf.extractall(dest, members=members)


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive, "r") as zf:
        infos = zf.infolist()
        for info in infos:
            _check_member_name(info.filename, archive=archive)
        for info in infos:
            target = dest.joinpath(*PurePosixPath(info.filename).parts)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as source, target.open("wb") as handle:
                shutil.copyfileobj(source, handle)
            mode = (info.external_attr >> 16) & 0o777
            if mode and not stat.S_ISLNK(info.external_attr >> 16):
                target.chmod(mode | stat.S_IRUSR | stat.S_IWUSR)


def _check_member_name(name: str, *, archive: Path) -> None:
    normalized = name.replace("\\", "/")
    path = PurePosixPath(normalized)
    if path.is_absolute() or (len(normalized) > 1 and normalized[1] == ":"):
        raise _unsafe_member(archive, name, "absolute member path")
    if ".." in path.parts:
        raise _unsafe_member(archive, name, "parent directory traversal")


def _stays_inside(path: PurePosixPath) -> bool:
    depth = 0
    for part in path.parts:
        if part == "..":
            depth -= 1
            if depth < 0:
                return False
        elif part not in ("", "."):
            depth += 1
    return True


def _unsafe_member(archive: Path, name: str, reason: str) -> ExtractionError:
    return ExtractionError(
        "Runtime archive contains an unsafe member.",
        hint="Refusing to extract; verify the distribution URL is trusted.",
        context={"operation": "extract", "archive": str(archive), "member": name, "reason": reason},
    )
