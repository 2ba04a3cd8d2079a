"""PE embedding: the blob is the ``RT_RCDATA/NODE_SEA_BLOB`` resource.

The runtime finds the blob with ``FindResource``, which walks the resource
directory named by the optional header. Injection writes a new resource
tree into a dedicated last section, keeping every existing entry (their data
stays in place in the old ``.rsrc``), and points the resource directory at
it. The section opens with a record of the header values it replaced, so a
strip restores the image exactly.

Injection invalidates any Authenticode signature, so the certificate table is
dropped before the section table is touched.
"""

from __future__ import annotations

import struct
import sys
from array import array
from collections import deque
from dataclasses import dataclass, field

from seapack.errors import AlreadyInjected, InjectionError
from seapack.inject.base import RESOURCE_NAME, EmbeddedRegion, EmbedResult
from seapack.inject.fuse import FuseLocation, locate_fuse

SECTION_NAME = b".sea"
SECTION_CHARACTERISTICS = 0x40000040  # initialized data, readable
SECTION_HEADER_SIZE = 40
COFF_HEADER_SIZE = 20
PE32_MAGIC = 0x10B
PE32_PLUS_MAGIC = 0x20B
RESOURCE_DIRECTORY = 2
SECURITY_DIRECTORY = 4
RT_RCDATA = 10
LANG_NEUTRAL = 0
SUBDIRECTORY_FLAG = 0x80000000
MAX_RESOURCE_DEPTH = 8

SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")
RESOURCE_HEADER = struct.Struct("<IIHHHH")
RESOURCE_ENTRY = struct.Struct("<II")
RESOURCE_DATA = struct.Struct("<IIII")
# magic, resource rva, resource size, SizeOfImage, file length, checksum
RESTORE_RECORD = struct.Struct("<8sIIIII4x")
RESTORE_MAGIC = b"SEAPACK\0"

ResourceKey = int | str


@dataclass(slots=True)
class _ResourceLeaf:
    rva: int
    size: int
    codepage: int = 0


@dataclass(slots=True)
class _ResourceTable:
    characteristics: int = 0
    timestamp: int = 0
    major: int = 0
    minor: int = 0
    entries: dict[ResourceKey, _ResourceTable | _ResourceLeaf] = field(default_factory=dict)

    def sorted_entries(self) -> list[tuple[ResourceKey, _ResourceTable | _ResourceLeaf]]:
        # Named entries first, then ids; the loader binary-searches both runs.
        named = sorted(
            ((key, value) for key, value in self.entries.items() if isinstance(key, str)),
            key=lambda item: str(item[0]).upper(),
        )
        ids = sorted(
            ((key, value) for key, value in self.entries.items() if isinstance(key, int)),
            key=lambda item: int(item[0]),
        )
        return [*named, *ids]


@dataclass(frozen=True, slots=True)
class _Section:
    index: int
    header_offset: int
    name: bytes
    virtual_size: int
    virtual_address: int
    raw_size: int
    raw_pointer: int

    @property
    def virtual_end(self) -> int:
        return self.virtual_address + (self.virtual_size or self.raw_size)

    def contains(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + max(self.virtual_size, self.raw_size)


@dataclass(frozen=True, slots=True)
class _Layout:
    coff: int
    optional: int
    section_table: int
    section_alignment: int
    file_alignment: int
    size_of_headers: int
    data_directories: int
    directory_count: int
    sections: tuple[_Section, ...]

    @property
    def number_of_sections_offset(self) -> int:
        return self.coff + 2

    @property
    def size_of_image_offset(self) -> int:
        return self.optional + 56

    @property
    def checksum_offset(self) -> int:
        return self.optional + 64

    def directory_offset(self, index: int) -> int:
        return self.data_directories + index * 8

    @property
    def free_header_slot(self) -> int:
        return self.section_table + len(self.sections) * SECTION_HEADER_SIZE

    def rva_to_offset(self, rva: int) -> int:
        for section in self.sections:
            if section.contains(rva):
                return section.raw_pointer + rva - section.virtual_address
        raise _not_pe(f"RVA {rva:#x} is outside every section")


class PeFormat:
    name = "pe"

    def locate_fuse(self, image: bytes) -> FuseLocation:
        return locate_fuse(image)

    def find_region(self, image: bytes) -> EmbeddedRegion | None:
        layout = _parse(image)
        root = _read_resources(image, layout)
        if root is None:
            return None
        names = root.entries.get(RT_RCDATA)
        if not isinstance(names, _ResourceTable):
            return None
        languages = names.entries.get(RESOURCE_NAME)
        if not isinstance(languages, _ResourceTable) or not languages.entries:
            return None
        leaf = next(iter(languages.entries.values()))
        if not isinstance(leaf, _ResourceLeaf):
            raise _not_pe("resource tree is deeper than type/name/language")
        return EmbeddedRegion(offset=layout.rva_to_offset(leaf.rva), length=leaf.size)

    def strip(self, image: bytes, region: EmbeddedRegion | None) -> bytes:
        data = bytearray(_strip_certificate(image))
        if region is None:
            return bytes(data)
        layout = _parse(data)
        section = layout.sections[-1] if layout.sections else None
        if section is None or section.name != SECTION_NAME:
            raise AlreadyInjected(
                f"Executable carries a {RESOURCE_NAME} resource that seapack did not write.",
                hint="Inject into the bare runtime executable from the cache.",
                context={"operation": "inject", "format": self.name},
            )
        magic, resource_rva, resource_size, size_of_image, length, checksum = RESTORE_RECORD.unpack_from(
            data, section.raw_pointer
        )
        if magic != RESTORE_MAGIC or length > section.raw_pointer:
            raise InjectionError(
                f"The {SECTION_NAME.decode()} section has no valid restore record.",
                hint="Start from the cached runtime instead of a modified executable.",
                context={"operation": "inject", "format": self.name},
            )
        data[section.header_offset : section.header_offset + SECTION_HEADER_SIZE] = bytes(SECTION_HEADER_SIZE)
        struct.pack_into("<H", data, layout.number_of_sections_offset, len(layout.sections) - 1)
        struct.pack_into("<I", data, layout.size_of_image_offset, size_of_image)
        struct.pack_into("<I", data, layout.checksum_offset, checksum)
        struct.pack_into("<II", data, layout.directory_offset(RESOURCE_DIRECTORY), resource_rva, resource_size)
        del data[length:]
        return bytes(data)

    def embed(self, image: bytes, blob: bytes) -> EmbedResult:
        layout = _parse(image)
        if layout.directory_count <= RESOURCE_DIRECTORY:
            raise _not_pe("optional header has no resource directory")
        first_raw = min(
            (item.raw_pointer for item in layout.sections if item.raw_size),
            default=layout.size_of_headers,
        )
        slot = layout.free_header_slot
        if slot + SECTION_HEADER_SIZE > min(layout.size_of_headers, first_raw):
            raise InjectionError(
                "No room in the PE headers for another section.",
                context={"operation": "inject", "format": self.name},
            )
        resource_entry = layout.directory_offset(RESOURCE_DIRECTORY)
        resource_rva, resource_size = struct.unpack_from("<II", image, resource_entry)
        (size_of_image,) = struct.unpack_from("<I", image, layout.size_of_image_offset)
        (checksum,) = struct.unpack_from("<I", image, layout.checksum_offset)

        root = _read_resources(image, layout) or _ResourceTable()
        leaf = _add_blob_entry(root, len(blob))
        image_end = max((item.virtual_end for item in layout.sections), default=layout.size_of_headers)
        virtual_address = _align(image_end, layout.section_alignment)
        tree_size = len(_serialize(root))
        blob_start = RESTORE_RECORD.size + _align(tree_size, 8)
        leaf.rva = virtual_address + blob_start
        body = bytearray(
            RESTORE_RECORD.pack(RESTORE_MAGIC, resource_rva, resource_size, size_of_image, len(image), checksum)
        )
        body.extend(_serialize(root))
        body.extend(bytes(blob_start - len(body)))
        body.extend(blob)

        data = bytearray(image)
        raw_pointer = _align(len(data), layout.file_alignment)
        raw_size = _align(len(body), layout.file_alignment)
        data.extend(bytes(raw_pointer - len(data)))
        data.extend(body)
        data.extend(bytes(raw_size - len(body)))
        SECTION_HEADER.pack_into(
            data,
            slot,
            SECTION_NAME,
            len(body),
            virtual_address,
            raw_size,
            raw_pointer,
            0,
            0,
            0,
            0,
            SECTION_CHARACTERISTICS,
        )
        struct.pack_into("<H", data, layout.number_of_sections_offset, len(layout.sections) + 1)
        struct.pack_into(
            "<I",
            data,
            layout.size_of_image_offset,
            _align(virtual_address + len(body), layout.section_alignment),
        )
        struct.pack_into("<II", data, resource_entry, virtual_address + RESTORE_RECORD.size, tree_size)
        struct.pack_into("<I", data, layout.checksum_offset, pe_checksum(data, layout.checksum_offset))
        return EmbedResult(data=bytes(data), offset=raw_pointer + blob_start, length=len(blob))


def pe_checksum(image: bytes | bytearray, checksum_offset: int) -> int:
    """The optional-header checksum: folded 16-bit word sum plus file length."""
    data = bytearray(image)
    data[checksum_offset : checksum_offset + 4] = b"\0\0\0\0"
    if len(data) % 2:
        data.append(0)
    words = array("H")
    words.frombytes(bytes(data))
    if sys.byteorder == "big":
        words.byteswap()
    total = sum(words)
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return (total + len(image)) & 0xFFFFFFFF


def _add_blob_entry(root: _ResourceTable, size: int) -> _ResourceLeaf:
    names = root.entries.get(RT_RCDATA)
    if not isinstance(names, _ResourceTable):
        names = root.entries[RT_RCDATA] = _ResourceTable()
    leaf = _ResourceLeaf(rva=0, size=size)
    names.entries[RESOURCE_NAME] = _ResourceTable(entries={LANG_NEUTRAL: leaf})
    return leaf


def _read_resources(image: bytes | bytearray, layout: _Layout) -> _ResourceTable | None:
    if layout.directory_count <= RESOURCE_DIRECTORY:
        return None
    rva, size = struct.unpack_from("<II", image, layout.directory_offset(RESOURCE_DIRECTORY))
    if not rva or not size:
        return None
    return _read_table(image, layout.rva_to_offset(rva), 0, depth=0)


def _read_table(image: bytes | bytearray, base: int, offset: int, *, depth: int) -> _ResourceTable:
    if depth > MAX_RESOURCE_DEPTH:
        raise _not_pe("resource tree is too deep")
    characteristics, timestamp, major, minor, named, ids = RESOURCE_HEADER.unpack_from(image, base + offset)
    table = _ResourceTable(characteristics=characteristics, timestamp=timestamp, major=major, minor=minor)
    for index in range(named + ids):
        name_field, data_field = RESOURCE_ENTRY.unpack_from(
            image, base + offset + RESOURCE_HEADER.size + index * RESOURCE_ENTRY.size
        )
        key: ResourceKey
        if name_field & SUBDIRECTORY_FLAG:
            position = base + (name_field & ~SUBDIRECTORY_FLAG)
            (length,) = struct.unpack_from("<H", image, position)
            key = bytes(image[position + 2 : position + 2 + 2 * length]).decode("utf-16-le")
        else:
            key = name_field & 0xFFFF
        child: _ResourceTable | _ResourceLeaf
        if data_field & SUBDIRECTORY_FLAG:
            child = _read_table(image, base, data_field & ~SUBDIRECTORY_FLAG, depth=depth + 1)
        else:
            rva, size, codepage, _reserved = RESOURCE_DATA.unpack_from(image, base + data_field)
            child = _ResourceLeaf(rva=rva, size=size, codepage=codepage)
        table.entries[key] = child
    return table


def _serialize(root: _ResourceTable) -> bytes:
    """Lay out tables first, then data entries, then name strings."""
    tables: list[_ResourceTable] = []
    leaves: list[_ResourceLeaf] = []
    names: list[str] = []
    queue = deque([root])
    while queue:
        table = queue.popleft()
        tables.append(table)
        for key, child in table.sorted_entries():
            if isinstance(key, str) and key not in names:
                names.append(key)
            if isinstance(child, _ResourceTable):
                queue.append(child)
            else:
                leaves.append(child)

    position = 0
    table_offsets: dict[int, int] = {}
    for table in tables:
        table_offsets[id(table)] = position
        position += RESOURCE_HEADER.size + RESOURCE_ENTRY.size * len(table.entries)
    leaf_offsets: dict[int, int] = {}
    for leaf in leaves:
        leaf_offsets[id(leaf)] = position
        position += RESOURCE_DATA.size
    name_offsets: dict[str, int] = {}
    for name in names:
        name_offsets[name] = position
        position += 2 + len(name.encode("utf-16-le"))

    out = bytearray(_align(position, 4))
    for table in tables:
        offset = table_offsets[id(table)]
        entries = table.sorted_entries()
        named = sum(isinstance(key, str) for key, _child in entries)
        RESOURCE_HEADER.pack_into(
            out,
            offset,
            table.characteristics,
            table.timestamp,
            table.major,
            table.minor,
            named,
            len(entries) - named,
        )
        for index, (key, child) in enumerate(entries):
            name_field = SUBDIRECTORY_FLAG | name_offsets[key] if isinstance(key, str) else key
            if isinstance(child, _ResourceTable):
                data_field = SUBDIRECTORY_FLAG | table_offsets[id(child)]
            else:
                data_field = leaf_offsets[id(child)]
            RESOURCE_ENTRY.pack_into(
                out, offset + RESOURCE_HEADER.size + index * RESOURCE_ENTRY.size, name_field, data_field
            )
    for leaf in leaves:
        RESOURCE_DATA.pack_into(out, leaf_offsets[id(leaf)], leaf.rva, leaf.size, leaf.codepage, 0)
    for name, offset in name_offsets.items():
        encoded = name.encode("utf-16-le")
        struct.pack_into("<H", out, offset, len(encoded) // 2)
        out[offset + 2 : offset + 2 + len(encoded)] = encoded
    return bytes(out)


def _strip_certificate(image: bytes) -> bytes:
    layout = _parse(image)
    if layout.directory_count <= SECURITY_DIRECTORY:
        return image
    entry = layout.directory_offset(SECURITY_DIRECTORY)
    cert_offset, cert_size = struct.unpack_from("<II", image, entry)
    if not cert_size:
        return image
    if cert_offset + cert_size != len(image):
        raise InjectionError(
            "Authenticode certificate table is not at the end of the executable.",
            context={"operation": "inject", "format": "pe", "offset": str(cert_offset)},
        )
    data = bytearray(image[:cert_offset])
    struct.pack_into("<II", data, entry, 0, 0)
    return bytes(data)


def _parse(image: bytes | bytearray) -> _Layout:
    if image[:2] != b"MZ" or len(image) < 0x40:
        raise _not_pe("missing MZ header")
    (pe_offset,) = struct.unpack_from("<I", image, 0x3C)
    if image[pe_offset : pe_offset + 4] != b"PE\0\0":
        raise _not_pe("missing PE signature")
    coff = pe_offset + 4
    (section_count,) = struct.unpack_from("<H", image, coff + 2)
    (optional_size,) = struct.unpack_from("<H", image, coff + 16)
    optional = coff + COFF_HEADER_SIZE
    (magic,) = struct.unpack_from("<H", image, optional)
    if magic == PE32_MAGIC:
        directories = optional + 96
    elif magic == PE32_PLUS_MAGIC:
        directories = optional + 112
    else:
        raise _not_pe(f"unknown optional header magic {magic:#x}")
    section_alignment, file_alignment = struct.unpack_from("<II", image, optional + 32)
    (size_of_headers,) = struct.unpack_from("<I", image, optional + 60)
    (directory_count,) = struct.unpack_from("<I", image, directories - 4)
    section_table = optional + optional_size
    if section_table + section_count * SECTION_HEADER_SIZE > len(image):
        raise _not_pe("section table is truncated")
    sections = []
    for index in range(section_count):
        header_offset = section_table + index * SECTION_HEADER_SIZE
        name, virtual_size, virtual_address, raw_size, raw_pointer, *_ = SECTION_HEADER.unpack_from(
            image, header_offset
        )
        sections.append(
            _Section(
                index=index,
                header_offset=header_offset,
                name=name.rstrip(b"\0"),
                virtual_size=virtual_size,
                virtual_address=virtual_address,
                raw_size=raw_size,
                raw_pointer=raw_pointer,
            )
        )
    if not section_alignment or not file_alignment:
        raise _not_pe("zero section or file alignment")
    return _Layout(
        coff=coff,
        optional=optional,
        section_table=section_table,
        section_alignment=section_alignment,
        file_alignment=file_alignment,
        size_of_headers=size_of_headers,
        data_directories=directories,
        directory_count=directory_count,
        sections=tuple(sections),
    )


def _align(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def _not_pe(reason: str) -> InjectionError:
    return InjectionError(
        "Runtime executable is not a supported PE image.",
        hint="Windows targets require the win runtime build.",
        context={"operation": "inject", "format": "pe", "reason": reason},
    )
