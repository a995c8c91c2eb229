"""
Symbol resolver — which undefined references a module may keep.

A module may call into another module only through that module's exported
interface, and only if the exported-symbol table is supplied at link time.
The table is loaded once per build, never written, and answers one
question: is every undefined reference of the module someone's export?

Accepted table formats, detected per line:
  - Module.symvers:  ``0x<crc>\\t<symbol>\\t<module>\\t<export type>[\\t<namespace>]``
  - plain list:      one symbol name per line (``#`` comments, blanks ignored)
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from kmod_forge.errors import UnresolvedSymbolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportEntry:
    """Provenance of one exported name."""

    name: str
    crc: Optional[str] = None
    module: Optional[str] = None
    export_type: Optional[str] = None
    namespace: Optional[str] = None


@dataclass(frozen=True)
class ExternalSymbolTable:
    """Immutable, ordered set of exported names."""

    entries: Tuple[ExportEntry, ...] = ()
    sources: Tuple[Path, ...] = ()
    _index: Dict[str, ExportEntry] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        index: Dict[str, ExportEntry] = {}
        for e in self.entries:
            index.setdefault(e.name, e)
        object.__setattr__(self, "_index", index)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._index)

    @property
    def names(self) -> Tuple[str, ...]:
        """Exported names in first-seen order."""
        return tuple(self._index)

    def get(self, name: str) -> Optional[ExportEntry]:
        return self._index.get(name)

    def union(self, other: "ExternalSymbolTable") -> "ExternalSymbolTable":
        """Both tables; on duplicates the entry from *self* wins."""
        seen = set(self._index)
        extra = tuple(e for e in other.entries if e.name not in seen)
        return ExternalSymbolTable(
            entries=self.entries + extra,
            sources=self.sources + other.sources,
        )


def parse_symbol_table(text: str, source: str = "<string>") -> List[ExportEntry]:
    """Parse the contents of one table file."""
    entries: List[ExportEntry] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        fields = raw.rstrip("\n").split("\t")
        if len(fields) >= 4 and fields[0].startswith("0x"):
            entries.append(ExportEntry(
                name=fields[1],
                crc=fields[0],
                module=fields[2] or None,
                export_type=fields[3] or None,
                namespace=(fields[4] or None) if len(fields) > 4 else None,
            ))
        elif len(line.split()) == 1:
            entries.append(ExportEntry(name=line))
        else:
            logger.warning("%s:%d: unrecognised symbol table line ignored", source, lineno)
    return entries


def load_symbol_table(paths: Sequence[Path]) -> ExternalSymbolTable:
    """
    Load and combine the tables at *paths*, in order.

    A missing table is a build-time failure: without it no reference into
    the sibling module can be proven legal.
    """
    table = ExternalSymbolTable()
    for p in paths:
        if not p.exists():
            raise UnresolvedSymbolError(
                (), message=f"exported-symbol table not found: {p}"
            )
        entries = parse_symbol_table(p.read_text(encoding="utf-8"), source=str(p))
        logger.info("Loaded %d exported symbols from %s", len(entries), p)
        table = table.union(ExternalSymbolTable(entries=tuple(entries), sources=(p,)))
    return table


@dataclass(frozen=True)
class Resolution:
    """Undefined references split by legality."""

    external: Tuple[str, ...]   # satisfied by the table
    unknown: Tuple[str, ...]    # satisfied by nothing

    @property
    def ok(self) -> bool:
        return not self.unknown


class SymbolResolver:
    """Checks undefined references against an ExternalSymbolTable."""

    def __init__(self, table: ExternalSymbolTable):
        self.table = table

    def classify(self, undefined: Iterable[str]) -> Resolution:
        external: List[str] = []
        unknown: List[str] = []
        for name in sorted(set(undefined)):
            (external if name in self.table else unknown).append(name)
        return Resolution(external=tuple(external), unknown=tuple(unknown))

    def check(self, undefined: Iterable[str], context: str = "") -> Resolution:
        """
        Classify *undefined* and raise if any reference is unknown.

        Raises
        ------
        UnresolvedSymbolError
            Naming every reference not present in the table.
        """
        res = self.classify(undefined)
        if not res.ok:
            prefix = f"{context}: " if context else ""
            raise UnresolvedSymbolError(
                res.unknown,
                message=(
                    f"{prefix}undefined symbols not exported by any supplied "
                    f"symbol table: {', '.join(res.unknown)}"
                ),
            )
        return res
