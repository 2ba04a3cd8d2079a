"""Builders for fake runtime executables and distribution trees."""

from __future__ import annotations

import hashlib
import io
import json
import struct
import subprocess
import tarfile
import zipfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from seapack.inject import FUSE_UNSET
from seapack.models import RuntimeTriple, StartupBlob
from seapack.platforms import normalize_arch, normalize_os
from seapack.versions import parse_version

VERSION = "22.3.0"

ELF_BASE = 0x400000
ELF_LOAD_MEMSZ = 0x1800

PE_OFFSET = 0x80
PE_OPTIONAL = PE_OFFSET + 4 + 20
PE_SECTION_TABLE = PE_OPTIONAL + 240
PE_CHECKSUM = PE_OPTIONAL + 64
PE_SIZE_OF_IMAGE = PE_OPTIONAL + 56
PE_RESOURCE_DIRECTORY = PE_OPTIONAL + 112 + 2 * 8
PE_SECURITY_DIRECTORY = PE_OPTIONAL + 112 + 4 * 8
PE_RSRC_RVA = 0x2000
PE_VERSION_DATA = b"VS_VERSION_INFO fake payload"

MACHO_TEXT_ADDR = 0x100000000
MACHO_LINKEDIT_FILEOFF = 0x4000
MACHO_SYMBOLS = b"\x5a" * 0x10
MACHO_STRINGS = b"\x5b" * 0x10
MACHO_SIGNATURE = b"\xcc" * 0x200


def elf_image(*, fuse: bytes = FUSE_UNSET) -> bytes:
    """An ELF64 executable: PT_PHDR, one PT_LOAD and a GNU ABI note."""
    image = bytearray(0x400)
    image[0:16] = b"\x7fELF\x02\x01\x01" + bytes(9)
    struct.pack_into(
        "<HHIQQQIHHHHHH", image, 16, 2, 0x3E, 1, ELF_BASE + 0x300, 64, 0, 0, 64, 56, 3, 64, 0, 0
    )
    program_header = struct.Struct("<IIQQQQQQ")
    table_size = 3 * program_header.size
    program_header.pack_into(image, 64, 6, 4, 64, ELF_BASE + 64, ELF_BASE + 64, table_size, table_size, 8)
    program_header.pack_into(image, 120, 1, 5, 0, ELF_BASE, ELF_BASE, 0x400, ELF_LOAD_MEMSZ, 0x1000)
    program_header.pack_into(image, 176, 4, 4, 0x100, ELF_BASE + 0x100, ELF_BASE + 0x100, 32, 32, 4)
    struct.pack_into("<III4s4I", image, 0x100, 4, 16, 1, b"GNU\0", 0, 3, 2, 0)
    image[0x200 : 0x200 + len(fuse)] = fuse
    image[0x300:0x320] = b".text" * 6 + b"\0\0"
    return bytes(image)


def macho_image(*, fuse: bytes = FUSE_UNSET) -> bytes:
    """A signed arm64 Mach-O: ``__TEXT``, ``__LINKEDIT``, a symbol table and a signature."""
    segment = struct.Struct("<II16sQQQQiiII")
    section = struct.Struct("<16s16sQQIIIIIIII")
    text = segment.pack(
        0x19, segment.size + section.size, b"__TEXT", MACHO_TEXT_ADDR, 0x4000, 0, 0x4000, 5, 5, 1, 0
    ) + section.pack(b"__text", b"__TEXT", MACHO_TEXT_ADDR + 0x800, 0x100, 0x800, 2, 0, 0, 0x80000400, 0, 0, 0)
    linkedit = segment.pack(
        0x19,
        segment.size,
        b"__LINKEDIT",
        MACHO_TEXT_ADDR + 0x4000,
        0x4000,
        MACHO_LINKEDIT_FILEOFF,
        0x300,
        1,
        1,
        0,
        0,
    )
    symtab = struct.pack("<IIIIII", 0x2, 24, MACHO_LINKEDIT_FILEOFF, 1, MACHO_LINKEDIT_FILEOFF + 0x10, 0x10)
    signature = struct.pack("<IIII", 0x1D, 16, MACHO_LINKEDIT_FILEOFF + 0x100, len(MACHO_SIGNATURE))
    commands = text + linkedit + symtab + signature
    header = struct.pack("<IiiIIIII", 0xFEEDFACF, 0x0100000C, 0, 2, 4, len(commands), 0x200085, 0)
    image = bytearray(MACHO_LINKEDIT_FILEOFF)
    image[: len(header) + len(commands)] = header + commands
    image[0x820 : 0x820 + len(fuse)] = fuse
    image.extend(MACHO_SYMBOLS + MACHO_STRINGS)
    image.extend(bytes(0x100 - 0x20))
    image.extend(MACHO_SIGNATURE)
    return bytes(image)


def pe_image(*, fuse: bytes = FUSE_UNSET, certificate: bytes = b"", resources: bool = True) -> bytes:
    """A PE32+ image with `.text` and, by default, a `.rsrc` holding one RT_VERSION entry."""
    sections = 2 if resources else 1
    image = bytearray(0x400)
    image[0:2] = b"MZ"
    struct.pack_into("<I", image, 0x3C, PE_OFFSET)
    image[PE_OFFSET : PE_OFFSET + 4] = b"PE\0\0"
    struct.pack_into("<HHIIIHH", image, PE_OFFSET + 4, 0x8664, sections, 0, 0, 0, 240, 0x22)
    struct.pack_into("<H", image, PE_OPTIONAL, 0x20B)
    struct.pack_into("<II", image, PE_OPTIONAL + 32, 0x1000, 0x200)
    struct.pack_into("<III", image, PE_OPTIONAL + 56, 0x1000 + 0x1000 * sections, 0x400, 0)
    struct.pack_into("<I", image, PE_OPTIONAL + 108, 16)
    struct.pack_into(
        "<8sIIIIIIHHI", image, PE_SECTION_TABLE, b".text", 0x100, 0x1000, 0x200, 0x400, 0, 0, 0, 0,
        0x60000020,
    )
    text = bytearray(0x200)
    text[0x20 : 0x20 + len(fuse)] = fuse
    image.extend(text)
    if resources:
        tree = _version_resource_tree(PE_RSRC_RVA)
        struct.pack_into(
            "<8sIIIIIIHHI", image, PE_SECTION_TABLE + 40, b".rsrc", len(tree), PE_RSRC_RVA, 0x200, 0x600,
            0, 0, 0, 0, 0x40000040,
        )
        struct.pack_into("<II", image, PE_RESOURCE_DIRECTORY, PE_RSRC_RVA, len(tree))
        image.extend(tree.ljust(0x200, b"\0"))
    if certificate:
        struct.pack_into("<II", image, PE_SECURITY_DIRECTORY, len(image), len(certificate))
        image.extend(certificate)
    return bytes(image)


def _version_resource_tree(rva: int) -> bytes:
    """root -> RT_VERSION (16) -> id 1 -> lang 0x409 -> data, laid out back to back."""
    directory = struct.Struct("<IIHHHH")
    entry = struct.Struct("<II")
    tree = bytearray()
    for offset, key in ((24, 16), (48, 1)):
        tree += directory.pack(0, 0, 0, 0, 0, 1) + entry.pack(key, 0x80000000 | offset)
    tree += directory.pack(0, 0, 0, 0, 0, 1) + entry.pack(0x409, 72)
    tree += struct.pack("<IIII", rva + 96, len(PE_VERSION_DATA), 0, 0)
    tree = tree.ljust(96, b"\0") + PE_VERSION_DATA
    return bytes(tree)


IMAGE_BUILDERS: dict[str, Callable[..., bytes]] = {
    "linux": elf_image,
    "darwin": macho_image,
    "win": pe_image,
}


def triple(os_name: str = "linux", arch: str = "x64", version: str = VERSION) -> RuntimeTriple:
    return RuntimeTriple(
        version=parse_version(version), os=normalize_os(os_name), arch=normalize_arch(arch)
    )


def startup_blob(data: bytes, os_name: str = "linux", arch: str = "x64") -> StartupBlob:
    target = triple(os_name, arch)
    return StartupBlob(data=data, compiled_with=target, target=target)


@dataclass(slots=True)
class FakeDist:
    root: Path
    archives: dict[str, Path] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return self.root.as_uri()


def write_index(root: Path, versions: Iterable[str]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    payload = [{"version": f"v{item}", "files": ["linux-x64"]} for item in versions]
    (root / "index.json").write_text(json.dumps(payload), encoding="utf-8")


def write_shasums(root: Path, version: str, digests: dict[str, str]) -> None:
    directory = root / f"v{version}"
    directory.mkdir(parents=True, exist_ok=True)
    lines = [f"{digest}  {name}" for name, digest in sorted(digests.items())]
    (directory / "SHASUMS256.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")


def build_dist(
    root: Path,
    *,
    version: str = VERSION,
    targets: Iterable[tuple[str, str]] = (("linux", "x64"), ("darwin", "arm64"), ("win", "x64")),
    corrupt: Iterable[tuple[str, str]] = (),
    extra_versions: Iterable[str] = (),
) -> FakeDist:
    """Write index.json, archives and SHASUMS256.txt for ``version``.

    Archives for ``corrupt`` targets are listed with a wrong digest.
    """
    dist = FakeDist(root=root)
    write_index(root, [version, *extra_versions])
    corrupt_set = set(corrupt)
    digests: dict[str, str] = {}
    for os_name, arch in targets:
        item = triple(os_name, arch, version)
        archive = root / f"v{version}" / item.archive_name
        write_runtime_archive(archive, item, IMAGE_BUILDERS[os_name]())
        digest = hashlib.sha256(archive.read_bytes()).hexdigest()
        digests[item.archive_name] = "0" * 64 if (os_name, arch) in corrupt_set else digest
        dist.archives[item.key] = archive
    write_shasums(root, version, digests)
    return dist


def write_runtime_archive(path: Path, item: RuntimeTriple, executable: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    readme = b"Fake runtime for tests.\n"
    if path.name.endswith(".zip"):
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr(item.executable_relpath, executable)
            zf.writestr(f"{item.dist_name}/README.md", readme)
        return
    with tarfile.open(path, "w:gz") as tf:
        _add_tar_member(tf, item.executable_relpath, executable, mode=0o755)
        _add_tar_member(tf, f"{item.dist_name}/README.md", readme, mode=0o644)


def _add_tar_member(tf: tarfile.TarFile, name: str, data: bytes, *, mode: int) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tf.addfile(info, io.BytesIO(data))




def write_project(
    root: Path,
    *,
    name: str = "hello",
    entry: str = "index.js",
    source: str = "",
    dependencies: dict[str, str] | None = None,
) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    package: dict[str, Any] = {"name": name, "version": "1.0.0", "main": entry}
    if dependencies:
        package["dependencies"] = dependencies
    (root / "package.json").write_text(json.dumps(package), encoding="utf-8")
    (root / "sea-config.json").write_text(
        json.dumps(
            {"main": entry, "output": "sea-prep.blob", "disableExperimentalSEAWarning": True}
        ),
        encoding="utf-8",
    )
    (root / entry).write_text(source or 'console.log("hello");\n', encoding="utf-8")
    return root


class FakeSeaRuntime:
    """Stands in for every external program seapack runs, recording each call.

    `node --experimental-sea-config` writes a blob derived from the entry
    script, `npm install` writes a marker module naming the requested platform,
    and anything else (signing tools) just exits with ``tool_returncode``.
    """

    def __init__(
        self,
        *,
        returncode: int = 0,
        write_output: bool = True,
        npm_returncode: int = 0,
        tool_returncode: int = 0,
    ) -> None:
        self.returncode = returncode
        self.write_output = write_output
        self.npm_returncode = npm_returncode
        self.tool_returncode = tool_returncode
        self.calls: list[dict[str, Any]] = []
        self.npm_calls: list[dict[str, Any]] = []
        self.tool_calls: list[list[str]] = []

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        if "--experimental-sea-config" in cmd:
            return self._compile(cmd, kwargs)
        if Path(cmd[0]).name == "npm":
            return self._install(cmd, kwargs)
        self.tool_calls.append(list(cmd))
        stderr = "" if self.tool_returncode == 0 else "error: tool failed"
        return subprocess.CompletedProcess(cmd, self.tool_returncode, stdout="", stderr=stderr)

    def _compile(self, cmd: list[str], kwargs: dict[str, Any]) -> subprocess.CompletedProcess[str]:
        config = json.loads(Path(cmd[2]).read_text(encoding="utf-8"))
        self.calls.append({"cmd": list(cmd), "cwd": kwargs.get("cwd"), "config": config})
        if self.returncode == 0 and self.write_output:
            entry = Path(config["main"])
            Path(config["output"]).write_bytes(b"SEA-BLOB:" + entry.read_bytes())
        stderr = "" if self.returncode == 0 else "SyntaxError: boom"
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=stderr)

    def _install(self, cmd: list[str], kwargs: dict[str, Any]) -> subprocess.CompletedProcess[str]:
        cwd = Path(kwargs["cwd"])
        self.npm_calls.append({"cmd": list(cmd), "cwd": kwargs.get("cwd")})
        if self.npm_returncode != 0:
            return subprocess.CompletedProcess(cmd, self.npm_returncode, stdout="", stderr="npm ERR! 404")
        platform = [arg for arg in cmd if arg.startswith("--target_")]
        marker = cwd / "node_modules" / "native-dep"
        marker.mkdir(parents=True, exist_ok=True)
        (marker / "index.js").write_text(f"module.exports = {json.dumps(platform)};\n", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, stdout="added 1 package\n", stderr="")
