"""
ELF symbols — read the symbol table of a relocatable object.

Responsibilities:
  - Validate that the input is an ELF relocatable object (ET_REL).
  - Split global/weak symbols into strong definitions, weak definitions,
    common (tentative) definitions and undefined references.
  - List the object's allocated sections (what survives into the module).

Works on a path or on in-memory bytes (archive members), so archives never
need to be extracted to disk.  Local symbols are ignored: they cannot
conflict across objects and cannot be referenced from outside.
"""
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, FrozenSet, List, Tuple, Union

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

# Section flag SHF_ALLOC: occupies memory at load time
SHF_ALLOC = 0x2


@dataclass(frozen=True)
class ElfSymbol:
    """One non-local symbol."""

    name: str
    binding: str             # STB_GLOBAL | STB_WEAK | STB_GNU_UNIQUE
    sym_type: str            # STT_FUNC, STT_OBJECT, STT_NOTYPE, ...
    section: str             # defining section name, or SHN_UNDEF / SHN_COMMON / SHN_ABS

    @property
    def is_undefined(self) -> bool:
        return self.section == "SHN_UNDEF"

    @property
    def is_common(self) -> bool:
        return self.section == "SHN_COMMON"

    @property
    def is_weak(self) -> bool:
        return self.binding == "STB_WEAK"

    @property
    def is_strong_definition(self) -> bool:
        return not (self.is_undefined or self.is_common or self.is_weak)


@dataclass(frozen=True)
class ObjectSymbols:
    """Symbol facts of one relocatable object."""

    label: str
    elf_type: str
    machine: str
    symbols: Tuple[ElfSymbol, ...]
    sections: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def strong_definitions(self) -> FrozenSet[str]:
        return frozenset(s.name for s in self.symbols if s.is_strong_definition)

    @property
    def definitions(self) -> FrozenSet[str]:
        """Every defined name (strong, weak or common)."""
        return frozenset(s.name for s in self.symbols if not s.is_undefined)

    @property
    def undefined(self) -> FrozenSet[str]:
        """Names referenced but not defined here (strong references only)."""
        return frozenset(
            s.name for s in self.symbols if s.is_undefined and not s.is_weak
        ) - self.definitions

    @property
    def weak_undefined(self) -> FrozenSet[str]:
        return frozenset(
            s.name for s in self.symbols if s.is_undefined and s.is_weak
        ) - self.definitions

    def lookup(self, name: str) -> List[ElfSymbol]:
        return [s for s in self.symbols if s.name == name]


def _section_label(elffile: ELFFile, shndx: Union[int, str]) -> str:
    if isinstance(shndx, str):
        return shndx
    return elffile.get_section(shndx).name


def _read(stream: BinaryIO, label: str) -> ObjectSymbols:
    try:
        elffile = ELFFile(stream)
    except ELFError as e:
        raise ValueError(f"{label}: not an ELF object: {e}") from e

    elf_type = elffile.header["e_type"]
    symbols: List[ElfSymbol] = []
    sections: List[str] = []

    for section in elffile.iter_sections():
        if section["sh_flags"] & SHF_ALLOC and section.name:
            sections.append(section.name)
        if not isinstance(section, SymbolTableSection) or section.name != ".symtab":
            continue
        for sym in section.iter_symbols():
            binding = sym["st_info"]["bind"]
            if binding == "STB_LOCAL" or not sym.name:
                continue
            symbols.append(ElfSymbol(
                name=sym.name,
                binding=binding,
                sym_type=sym["st_info"]["type"],
                section=_section_label(elffile, sym["st_shndx"]),
            ))

    return ObjectSymbols(
        label=label,
        elf_type=elf_type,
        machine=elffile.header["e_machine"],
        symbols=tuple(symbols),
        sections=tuple(sections),
    )


def read_object_symbols(path: Path) -> ObjectSymbols:
    """
    Read the symbol table of the object at *path*.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the file is not an ELF object.
    """
    if not path.exists():
        raise FileNotFoundError(f"Object not found: {path}")
    with open(path, "rb") as f:
        return _read(f, str(path))


def read_member_symbols(data: bytes, label: str) -> ObjectSymbols:
    """Read the symbol table of an in-memory object (archive member)."""
    return _read(io.BytesIO(data), label)


def find_strong_conflicts(objects: List[ObjectSymbols]) -> Dict[str, List[str]]:
    """
    Map every name defined strongly by two or more objects to its definers.

    Weak and common definitions never conflict.
    """
    definers: Dict[str, List[str]] = {}
    for obj in objects:
        for name in sorted(obj.strong_definitions):
            definers.setdefault(name, []).append(obj.label)
    return {name: labels for name, labels in sorted(definers.items()) if len(labels) > 1}
