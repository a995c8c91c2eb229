"""
Archive reader — unpack a static ``ar`` archive into its members.

Handles the GNU variant (``/`` symbol index, ``//`` long-name table,
``/N`` long-name references, ``name/`` short names) and the BSD variant
(``#1/N`` inline names, ``__.SYMDEF`` index).  Thin archives are rejected:
their members live outside the archive and cannot be merged from it.

Members are kept in archive order; duplicate names are allowed (rustc
emits them) and are told apart by their index.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from kmod_forge.errors import ArchiveFormatError

logger = logging.getLogger(__name__)

AR_MAGIC = b"!<arch>\n"
AR_THIN_MAGIC = b"!<thin>\n"
HEADER_SIZE = 60
HEADER_FMAG = b"`\n"

_INDEX_NAMES = frozenset({"/", "/SYM64/", "__.SYMDEF", "__.SYMDEF SORTED"})


@dataclass(frozen=True)
class ArchiveMember:
    """One file stored in the archive."""

    index: int
    name: str
    data: bytes

    @property
    def is_elf(self) -> bool:
        return self.data[:4] == b"\x7fELF"

    @property
    def label(self) -> str:
        """Unique, human-readable member id."""
        return f"{self.name}#{self.index}"


@dataclass(frozen=True)
class Archive:
    """A static archive produced by the Target Compiler Invoker."""

    path: Path
    members: Tuple[ArchiveMember, ...]

    @property
    def object_members(self) -> Tuple[ArchiveMember, ...]:
        return tuple(m for m in self.members if m.is_elf)


def _parse_header(raw: bytes, offset: int) -> Tuple[str, int]:
    if len(raw) < HEADER_SIZE:
        raise ArchiveFormatError(f"truncated member header at offset {offset}")
    if raw[58:60] != HEADER_FMAG:
        raise ArchiveFormatError(f"bad member header magic at offset {offset}")
    name = raw[0:16].decode("ascii", errors="replace").rstrip(" ")
    size_field = raw[48:58].decode("ascii", errors="replace").strip()
    try:
        size = int(size_field)
    except ValueError:
        raise ArchiveFormatError(
            f"bad member size {size_field!r} at offset {offset}"
        ) from None
    return name, size


def _long_name(table: Optional[bytes], ref: str, offset: int) -> str:
    if table is None:
        raise ArchiveFormatError(f"long name {ref!r} at offset {offset} without '//' table")
    start = int(ref[1:])
    if start >= len(table):
        raise ArchiveFormatError(f"long name {ref!r} at offset {offset} out of range")
    end = table.find(b"\n", start)
    if end == -1:
        end = len(table)
    return table[start:end].decode("utf-8", errors="replace").rstrip("/")


def iter_members(blob: bytes) -> Iterator[ArchiveMember]:
    """Yield the regular members of an in-memory archive."""
    if blob.startswith(AR_THIN_MAGIC):
        raise ArchiveFormatError("thin archives are not supported")
    if not blob.startswith(AR_MAGIC):
        raise ArchiveFormatError("not an ar archive (bad magic)")

    offset = len(AR_MAGIC)
    long_names: Optional[bytes] = None
    index = 0

    while offset < len(blob):
        # trailing newline padding after the last member
        if blob[offset:].strip(b"\n") == b"":
            break
        header_offset = offset
        name, size = _parse_header(blob[offset:offset + HEADER_SIZE], offset)
        data_start = offset + HEADER_SIZE
        data_end = data_start + size
        if data_end > len(blob):
            raise ArchiveFormatError(f"member {name!r} at offset {offset} is truncated")
        data = blob[data_start:data_end]
        # members are 2-byte aligned
        offset = data_end + (size % 2)

        if name in _INDEX_NAMES:
            continue
        if name == "//":
            long_names = data
            continue
        if name.startswith("#1/"):
            try:
                name_len = int(name[3:])
            except ValueError:
                raise ArchiveFormatError(
                    f"bad BSD name length {name!r} at offset {header_offset}"
                ) from None
            if not 0 <= name_len <= len(data):
                raise ArchiveFormatError(
                    f"BSD name length {name_len} out of range at offset {header_offset}"
                )
            name = data[:name_len].decode("utf-8", errors="replace").rstrip("\x00")
            data = data[name_len:]
            if name in _INDEX_NAMES:
                continue
        elif name.startswith("/") and name[1:].isdigit():
            name = _long_name(long_names, name, header_offset)
        else:
            name = name.rstrip("/")

        yield ArchiveMember(index=index, name=name, data=data)
        index += 1


def read_archive(path: Path) -> Archive:
    """Read *path* and return every regular member."""
    if not path.exists():
        raise ArchiveFormatError(f"archive not found: {path}")
    members: List[ArchiveMember] = list(iter_members(path.read_bytes()))
    logger.debug(
        "%s: %d members (%d ELF objects)",
        path.name,
        len(members),
        sum(1 for m in members if m.is_elf),
    )
    return Archive(path=path, members=tuple(members))
