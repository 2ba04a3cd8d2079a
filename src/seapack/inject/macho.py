"""Mach-O embedding: a ``NODE_SEA`` segment with one ``__NODE_SEA_BLOB`` section.

The runtime reads the blob with ``getsectiondata``. The new segment takes the
place of ``__LINKEDIT``, which moves up by the segment size and stays last in
the file, and every load command offset into it is shifted by the same amount.
An existing code signature covers the old layout and is removed first; the
signing stage re-signs the result.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from seapack.errors import AlreadyInjected, InjectionError
from seapack.inject.base import MACHO_SEGMENT_NAME, RESOURCE_NAME, EmbeddedRegion, EmbedResult
from seapack.inject.fuse import FuseLocation, locate_fuse

MH_MAGIC_64 = 0xFEEDFACF
LC_SEGMENT_64 = 0x19
LC_CODE_SIGNATURE = 0x1D
VM_PROT_READ = 0x1
PAGE_SIZE = 0x4000

LINKEDIT = b"__LINKEDIT"
SEGMENT_NAME = MACHO_SEGMENT_NAME.encode()
SECTION_NAME = b"__" + RESOURCE_NAME.encode()

HEADER = struct.Struct("<IiiIIIII")
LOAD_COMMAND = struct.Struct("<II")
SEGMENT_COMMAND = struct.Struct("<II16sQQQQiiII")
SECTION = struct.Struct("<16s16sQQIIIIIIII")

# Byte offsets of file offsets into __LINKEDIT, per load command.
LINKEDIT_OFFSET_FIELDS: dict[int, tuple[int, ...]] = {
    0x02: (8, 16),  # LC_SYMTAB
    0x0B: (32, 40, 48, 56, 64, 72),  # LC_DYSYMTAB
    0x22: (8, 16, 24, 32, 40),  # LC_DYLD_INFO
    0x80000022: (8, 16, 24, 32, 40),  # LC_DYLD_INFO_ONLY
    LC_CODE_SIGNATURE: (8,),
    0x1E: (8,),  # LC_SEGMENT_SPLIT_INFO
    0x26: (8,),  # LC_FUNCTION_STARTS
    0x29: (8,),  # LC_DATA_IN_CODE
    0x2B: (8,),  # LC_DYLIB_CODE_SIGN_DRS
    0x2E: (8,),  # LC_LINKER_OPTIMIZATION_HINT
    0x80000033: (8,),  # LC_DYLD_EXPORTS_TRIE
    0x80000034: (8,),  # LC_DYLD_CHAINED_FIXUPS
}


@dataclass(frozen=True, slots=True)
class _Command:
    offset: int
    cmd: int
    size: int


@dataclass(frozen=True, slots=True)
class _Section:
    name: bytes
    addr: int
    size: int
    offset: int


@dataclass(frozen=True, slots=True)
class _Segment:
    command: _Command
    name: bytes
    vmaddr: int
    vmsize: int
    fileoff: int
    filesize: int
    sections: tuple[_Section, ...]


@dataclass(frozen=True, slots=True)
class _MachO:
    ncmds: int
    sizeofcmds: int
    commands: tuple[_Command, ...]
    segments: tuple[_Segment, ...]

    def segment(self, name: bytes) -> _Segment | None:
        return next((segment for segment in self.segments if segment.name == name), None)

    def command(self, cmd: int) -> _Command | None:
        return next((command for command in self.commands if command.cmd == cmd), None)

    @property
    def linkedit(self) -> _Segment:
        segment = self.segment(LINKEDIT)
        if segment is None:
            raise _not_macho("no __LINKEDIT segment")
        return segment

    @property
    def commands_end(self) -> int:
        return HEADER.size + self.sizeofcmds

    @property
    def header_limit(self) -> int:
        """First file offset used by segment content; load commands must end before it."""
        offsets = [
            section.offset for segment in self.segments for section in segment.sections if section.offset
        ]
        offsets.extend(segment.fileoff for segment in self.segments if segment.fileoff and segment.filesize)
        return min(offsets, default=self.commands_end)


class MachOFormat:
    name = "macho"

    def locate_fuse(self, image: bytes) -> FuseLocation:
        return locate_fuse(image)

    def find_region(self, image: bytes) -> EmbeddedRegion | None:
        segment = _parse(image).segment(SEGMENT_NAME)
        if segment is None:
            return None
        section = next((item for item in segment.sections if item.name == SECTION_NAME), None)
        if section is None:
            raise AlreadyInjected(
                f"Executable has a {MACHO_SEGMENT_NAME} segment without the blob section.",
                hint="Inject into the bare runtime executable from the cache.",
                context={"operation": "inject", "format": self.name},
            )
        return EmbeddedRegion(offset=section.offset, length=section.size)

    def strip(self, image: bytes, region: EmbeddedRegion | None) -> bytes:
        unsigned = _remove_signature(image)
        if region is None:
            return unsigned
        macho = _parse(unsigned)
        segment = macho.segment(SEGMENT_NAME)
        linkedit = macho.linkedit
        if (
            segment is None
            or linkedit.fileoff != segment.fileoff + segment.filesize
            or linkedit.vmaddr != segment.vmaddr + segment.vmsize
        ):
            raise AlreadyInjected(
                f"The {MACHO_SEGMENT_NAME} segment was not written by seapack.",
                hint="Inject into the bare runtime executable from the cache.",
                context={"operation": "inject", "format": self.name},
            )
        data = bytearray(unsigned[: segment.fileoff])
        data.extend(unsigned[linkedit.fileoff :])
        _shift_linkedit(data, macho, start=linkedit.fileoff, file_delta=-segment.filesize)
        _move_segment(data, linkedit, vmaddr=segment.vmaddr, fileoff=segment.fileoff)
        _remove_command(data, macho, segment.command)
        return bytes(data)

    def embed(self, image: bytes, blob: bytes) -> EmbedResult:
        macho = _parse(image)
        if macho.segment(SEGMENT_NAME) is not None:
            raise InjectionError(
                f"Executable already has a {MACHO_SEGMENT_NAME} segment.",
                context={"operation": "inject", "format": self.name},
            )
        if macho.command(LC_CODE_SIGNATURE) is not None:
            raise InjectionError(
                "Executable must be unsigned before embedding.",
                context={"operation": "inject", "format": self.name},
            )
        linkedit = macho.linkedit
        if linkedit.fileoff + linkedit.filesize != len(image):
            raise _not_macho("__LINKEDIT is not the last content in the file")
        command = _segment_command(linkedit.vmaddr, linkedit.fileoff, blob)
        if macho.commands_end + len(command) > macho.header_limit:
            raise InjectionError(
                "No room in the Mach-O header for another load command.",
                context={"operation": "inject", "format": self.name},
            )
        size = _align(len(blob), PAGE_SIZE)
        data = bytearray(image[: linkedit.fileoff])
        data.extend(blob)
        data.extend(bytes(size - len(blob)))
        data.extend(image[linkedit.fileoff :])
        _shift_linkedit(data, macho, start=linkedit.fileoff, file_delta=size)
        _move_segment(data, linkedit, vmaddr=linkedit.vmaddr + size, fileoff=linkedit.fileoff + size)
        _insert_command(data, macho, before=linkedit.command, command=command)
        return EmbedResult(data=bytes(data), offset=linkedit.fileoff, length=len(blob))


def _segment_command(vmaddr: int, fileoff: int, blob: bytes) -> bytes:
    size = _align(len(blob), PAGE_SIZE)
    segment = SEGMENT_COMMAND.pack(
        LC_SEGMENT_64,
        SEGMENT_COMMAND.size + SECTION.size,
        SEGMENT_NAME,
        vmaddr,
        size,
        fileoff,
        size,
        VM_PROT_READ,
        VM_PROT_READ,
        1,
        0,
    )
    section = SECTION.pack(SECTION_NAME, SEGMENT_NAME, vmaddr, len(blob), fileoff, 0, 0, 0, 0, 0, 0, 0)
    return segment + section


def _remove_signature(image: bytes) -> bytes:
    macho = _parse(image)
    command = macho.command(LC_CODE_SIGNATURE)
    if command is None:
        return image
    dataoff, datasize = struct.unpack_from("<II", image, command.offset + 8)
    linkedit = macho.linkedit
    if dataoff + datasize != linkedit.fileoff + linkedit.filesize or dataoff < linkedit.fileoff:
        raise InjectionError(
            "Code signature is not at the end of __LINKEDIT.",
            context={"operation": "inject", "format": "macho", "dataoff": str(dataoff)},
        )
    data = bytearray(image[:dataoff])
    struct.pack_into("<Q", data, linkedit.command.offset + 48, dataoff - linkedit.fileoff)
    _remove_command(data, macho, command)
    return bytes(data)


def _shift_linkedit(data: bytearray, macho: _MachO, *, start: int, file_delta: int) -> None:
    for command in macho.commands:
        for field in LINKEDIT_OFFSET_FIELDS.get(command.cmd, ()):
            if field + 4 > command.size:
                continue
            (value,) = struct.unpack_from("<I", data, command.offset + field)
            if value and value >= start:
                struct.pack_into("<I", data, command.offset + field, value + file_delta)


def _move_segment(data: bytearray, segment: _Segment, *, vmaddr: int, fileoff: int) -> None:
    struct.pack_into("<Q", data, segment.command.offset + 24, vmaddr)
    struct.pack_into("<Q", data, segment.command.offset + 40, fileoff)


def _insert_command(data: bytearray, macho: _MachO, *, before: _Command, command: bytes) -> None:
    end = macho.commands_end
    data[before.offset : end + len(command)] = command + data[before.offset : end]
    _write_counts(data, macho.ncmds + 1, macho.sizeofcmds + len(command))


def _remove_command(data: bytearray, macho: _MachO, command: _Command) -> None:
    end = macho.commands_end
    data[command.offset : end] = data[command.offset + command.size : end] + bytes(command.size)
    _write_counts(data, macho.ncmds - 1, macho.sizeofcmds - command.size)


def _write_counts(data: bytearray, ncmds: int, sizeofcmds: int) -> None:
    struct.pack_into("<II", data, 16, ncmds, sizeofcmds)


def _parse(image: bytes | bytearray) -> _MachO:
    if len(image) < HEADER.size:
        raise _not_macho("image is shorter than a Mach-O header")
    magic, _cputype, _subtype, _filetype, ncmds, sizeofcmds, _flags, _reserved = HEADER.unpack_from(image, 0)
    if magic != MH_MAGIC_64:
        raise _not_macho("only thin 64-bit little-endian images are supported")
    end = HEADER.size + sizeofcmds
    if end > len(image):
        raise _not_macho("load commands are truncated")
    commands: list[_Command] = []
    segments: list[_Segment] = []
    offset = HEADER.size
    for _ in range(ncmds):
        if offset + LOAD_COMMAND.size > end:
            raise _not_macho("load commands are truncated")
        cmd, cmdsize = LOAD_COMMAND.unpack_from(image, offset)
        if cmdsize < LOAD_COMMAND.size or offset + cmdsize > end:
            raise _not_macho("load command has an invalid size")
        command = _Command(offset=offset, cmd=cmd, size=cmdsize)
        commands.append(command)
        if cmd == LC_SEGMENT_64:
            segments.append(_read_segment(image, command))
        offset += cmdsize
    return _MachO(ncmds=ncmds, sizeofcmds=sizeofcmds, commands=tuple(commands), segments=tuple(segments))


def _read_segment(image: bytes | bytearray, command: _Command) -> _Segment:
    if command.size < SEGMENT_COMMAND.size:
        raise _not_macho("segment command is truncated")
    (_cmd, _size, segname, vmaddr, vmsize, fileoff, filesize, _maxprot, _initprot, nsects, _flags) = (
        SEGMENT_COMMAND.unpack_from(image, command.offset)
    )
    if SEGMENT_COMMAND.size + nsects * SECTION.size > command.size:
        raise _not_macho("section headers are truncated")
    sections = []
    for index in range(nsects):
        sectname, _segname, addr, size, offset, *_rest = SECTION.unpack_from(
            image, command.offset + SEGMENT_COMMAND.size + index * SECTION.size
        )
        sections.append(_Section(name=sectname.rstrip(b"\0"), addr=addr, size=size, offset=offset))
    return _Segment(
        command=command,
        name=segname.rstrip(b"\0"),
        vmaddr=vmaddr,
        vmsize=vmsize,
        fileoff=fileoff,
        filesize=filesize,
        sections=tuple(sections),
    )


def _align(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def _not_macho(reason: str) -> InjectionError:
    return InjectionError(
        "Runtime executable is not a supported Mach-O image.",
        hint="macOS targets require the darwin runtime build.",
        context={"operation": "inject", "format": "macho", "reason": reason},
    )
