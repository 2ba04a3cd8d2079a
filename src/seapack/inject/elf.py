"""ELF embedding: the blob is a ``NODE_SEA_BLOB`` note in a loaded PT_NOTE segment.

At startup the runtime walks the PT_NOTE headers of the main program in
memory, so the note has to be mapped. Injection appends a new PT_LOAD
segment past the highest loaded address holding a relocated program header
table, the blob note and a restore note. The restore note records the
original file size and program header location, which makes stripping a
truncation plus two header writes.
"""

from __future__ import annotations

import dataclasses
import struct
from collections.abc import Iterator
from dataclasses import dataclass

from seapack.errors import AlreadyInjected, InjectionError
from seapack.inject.base import RESOURCE_NAME, EmbeddedRegion, EmbedResult
from seapack.inject.fuse import FuseLocation, locate_fuse

ELF_MAGIC = b"\x7fELF"
ELFCLASS32 = 1
ELFCLASS64 = 2
PT_LOAD = 1
PT_NOTE = 4
PT_PHDR = 6
PF_R = 4
MIN_PAGE = 0x1000

NOTE_NAME = RESOURCE_NAME.encode() + b"\0"
RESTORE_NAME = b"SEAPACK\0"
RESTORE_TYPE = 1


@dataclass(frozen=True, slots=True)
class _Header:
    order: str
    wide: bool
    phoff: int
    phentsize: int
    phnum: int

    @property
    def phoff_field(self) -> int:
        return 0x20 if self.wide else 0x1C

    @property
    def phnum_field(self) -> int:
        return 0x38 if self.wide else 0x2C

    @property
    def program_header(self) -> struct.Struct:
        return struct.Struct(self.order + ("IIQQQQQQ" if self.wide else "IIIIIIII"))

    @property
    def restore(self) -> struct.Struct:
        return struct.Struct(self.order + "QQI")


@dataclass(frozen=True, slots=True)
class _Segment:
    type: int
    flags: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int


class ElfFormat:
    name = "elf"

    def locate_fuse(self, image: bytes) -> FuseLocation:
        return locate_fuse(image)

    def find_region(self, image: bytes) -> EmbeddedRegion | None:
        header = _read_header(image)
        for name, offset, size in _notes(image, header):
            if name == NOTE_NAME:
                return EmbeddedRegion(offset=offset, length=size)
        return None

    def strip(self, image: bytes, region: EmbeddedRegion | None) -> bytes:
        if region is None:
            return image
        header = _read_header(image)
        record = _restore_record(image, header)
        if record is None or len(record) != header.restore.size:
            raise AlreadyInjected(
                "Executable carries a startup blob note that seapack did not write.",
                hint="Inject into the bare runtime executable from the cache.",
                context={"operation": "inject", "format": self.name},
            )
        size, phoff, phnum = header.restore.unpack(record)
        if size > len(image) or phoff + phnum * header.phentsize > size:
            raise InjectionError(
                "Restore record does not match the executable.",
                hint="Start from the cached runtime instead of a modified executable.",
                context={"operation": "inject", "format": self.name, "size": str(size)},
            )
        stripped = bytearray(image[:size])
        _write_table_location(stripped, header, phoff, phnum)
        return bytes(stripped)

    def embed(self, image: bytes, blob: bytes) -> EmbedResult:
        header = _read_header(image)
        segments = _segments(image, header)
        loads = [index for index, segment in enumerate(segments) if segment.type == PT_LOAD]
        if not loads:
            raise _not_elf("no PT_LOAD segment")
        first = segments[loads[0]]
        align = max(MIN_PAGE, *(segments[index].align for index in loads))
        bias = first.vaddr - first.offset
        if bias % align:
            raise InjectionError(
                "First PT_LOAD segment is not congruent with its file offset.",
                context={"operation": "inject", "format": self.name, "bias": hex(bias)},
            )
        memory_end = max(segments[index].vaddr + segments[index].memsz for index in loads)
        # vaddr - offset must match the first PT_LOAD: older kernels compute
        # AT_PHDR from that bias and e_phoff.
        offset = _align(max(len(image), memory_end - bias), align)
        vaddr = offset + bias

        count = header.phnum + 2
        table_size = count * header.phentsize
        restore = header.restore.pack(len(image), header.phoff, header.phnum)
        notes = _note(header, NOTE_NAME, 0, blob) + _note(header, RESTORE_NAME, RESTORE_TYPE, restore)
        region_size = table_size + len(notes)
        load = _Segment(PT_LOAD, PF_R, offset, vaddr, vaddr, region_size, region_size, align)
        note_vaddr = vaddr + table_size
        note = _Segment(PT_NOTE, PF_R, offset + table_size, note_vaddr, note_vaddr, len(notes), len(notes), 4)

        table: list[_Segment] = []
        for index, segment in enumerate(segments):
            if segment.type == PT_PHDR:
                segment = dataclasses.replace(
                    segment, offset=offset, vaddr=vaddr, paddr=vaddr, filesz=table_size, memsz=table_size
                )
            table.append(segment)
            if index == loads[-1]:
                table.append(load)
        table.append(note)

        data = bytearray(image)
        data.extend(bytes(offset - len(data)))
        data.extend(b"".join(_pack_segment(header, segment) for segment in table))
        data.extend(notes)
        _write_table_location(data, header, offset, count)
        blob_offset = offset + table_size + 12 + _align(len(NOTE_NAME), 4)
        return EmbedResult(data=bytes(data), offset=blob_offset, length=len(blob))


def _read_header(image: bytes | bytearray) -> _Header:
    if image[:4] != ELF_MAGIC:
        raise _not_elf("missing ELF magic")
    if len(image) < 0x40:
        raise _not_elf("header is truncated")
    elf_class, encoding = image[4], image[5]
    if elf_class not in (ELFCLASS32, ELFCLASS64):
        raise _not_elf(f"unknown ELF class {elf_class}")
    if encoding not in (1, 2):
        raise _not_elf(f"unknown data encoding {encoding}")
    order = "<" if encoding == 1 else ">"
    wide = elf_class == ELFCLASS64
    if wide:
        (phoff,) = struct.unpack_from(order + "Q", image, 0x20)
        phentsize, phnum = struct.unpack_from(order + "HH", image, 0x36)
    else:
        (phoff,) = struct.unpack_from(order + "I", image, 0x1C)
        phentsize, phnum = struct.unpack_from(order + "HH", image, 0x2A)
    header = _Header(order=order, wide=wide, phoff=phoff, phentsize=phentsize, phnum=phnum)
    if phentsize != header.program_header.size:
        raise _not_elf(f"unexpected program header size {phentsize}")
    if phoff + phnum * phentsize > len(image):
        raise _not_elf("program header table is truncated")
    return header


def _segments(image: bytes | bytearray, header: _Header) -> list[_Segment]:
    layout = header.program_header
    segments = []
    for index in range(header.phnum):
        fields = layout.unpack_from(image, header.phoff + index * header.phentsize)
        if header.wide:
            p_type, flags, offset, vaddr, paddr, filesz, memsz, align = fields
        else:
            p_type, offset, vaddr, paddr, filesz, memsz, flags, align = fields
        segments.append(_Segment(p_type, flags, offset, vaddr, paddr, filesz, memsz, align))
    return segments


def _pack_segment(header: _Header, segment: _Segment) -> bytes:
    if header.wide:
        return header.program_header.pack(
            segment.type,
            segment.flags,
            segment.offset,
            segment.vaddr,
            segment.paddr,
            segment.filesz,
            segment.memsz,
            segment.align,
        )
    return header.program_header.pack(
        segment.type,
        segment.offset,
        segment.vaddr,
        segment.paddr,
        segment.filesz,
        segment.memsz,
        segment.flags,
        segment.align,
    )


def _notes(image: bytes, header: _Header) -> Iterator[tuple[bytes, int, int]]:
    """Yield ``(name, desc_offset, desc_size)`` for every note in PT_NOTE segments."""
    for segment in _segments(image, header):
        if segment.type != PT_NOTE:
            continue
        position = segment.offset
        end = min(segment.offset + segment.filesz, len(image))
        while position + 12 <= end:
            namesz, descsz, _note_type = struct.unpack_from(header.order + "III", image, position)
            name_start = position + 12
            desc_start = name_start + _align(namesz, 4)
            following = desc_start + _align(descsz, 4)
            if following > end:
                break
            yield image[name_start : name_start + namesz], desc_start, descsz
            position = following


def _restore_record(image: bytes, header: _Header) -> bytes | None:
    for name, offset, size in _notes(image, header):
        if name == RESTORE_NAME:
            return image[offset : offset + size]
    return None


def _note(header: _Header, name: bytes, note_type: int, desc: bytes) -> bytes:
    return b"".join(
        (
            struct.pack(header.order + "III", len(name), len(desc), note_type),
            name.ljust(_align(len(name), 4), b"\0"),
            desc.ljust(_align(len(desc), 4), b"\0"),
        )
    )


def _write_table_location(image: bytearray, header: _Header, phoff: int, phnum: int) -> None:
    struct.pack_into(header.order + ("Q" if header.wide else "I"), image, header.phoff_field, phoff)
    struct.pack_into(header.order + "H", image, header.phnum_field, phnum)


def _align(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def _not_elf(reason: str) -> InjectionError:
    return InjectionError(
        "Runtime executable is not a supported ELF image.",
        hint="Linux targets require the linux runtime build.",
        context={"operation": "inject", "format": "elf", "reason": reason},
    )
