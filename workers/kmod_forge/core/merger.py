"""
Archive merger — every archive member + the native shim → one relocatable object.

Whole-archive policy: the component exposes its lifecycle entry points only
through symbols nothing in the shim references, so selective archive
linking would drop them before the assembler's GC pass ever sees them.
Every member is therefore force-included, and dead code is pruned later,
around explicitly pinned roots.

Before ``ld`` runs, member symbol tables are compared so that two strong
definitions of one name fail with the names of both definers instead of a
raw linker message.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from kmod_forge.config import Settings
from kmod_forge.core.archive import Archive
from kmod_forge.core.elf_symbols import (
    ObjectSymbols,
    find_strong_conflicts,
    read_member_symbols,
    read_object_symbols,
)
from kmod_forge.core.phase import (
    discard,
    inputs_changed,
    is_stale,
    publish,
    run_phase,
    stderr_tail,
    tmp_path,
    up_to_date,
    write_inputs_stamp,
)
from kmod_forge.core.resolver import Resolution, SymbolResolver
from kmod_forge.core.target import BuildPaths, BuildTarget
from kmod_forge.errors import LinkError
from kmod_forge.io.schema import PhaseRecord, PhaseStatus, hash_file

logger = logging.getLogger(__name__)

SHIM_PHASE = "shim"
MERGE_PHASE = "merge"


@dataclass(frozen=True)
class MergedObject:
    """Single relocatable object holding the shim and all archive members."""

    path: Path
    sha256: str
    members: Tuple[str, ...]
    symbols: ObjectSymbols
    resolution: Resolution

    @property
    def defined(self):
        return self.symbols.definitions

    @property
    def undefined(self):
        return self.symbols.undefined


# =============================================================================
# Shim
# =============================================================================

def prepare_shim(
    target: BuildTarget,
    paths: BuildPaths,
    settings: Settings,
    force: bool = False,
) -> Tuple[Path, Optional[PhaseRecord]]:
    """
    Return the shim object, compiling a ``.c`` shim with the host-supplied
    cflags when needed.  A prebuilt ``.o`` shim is used as-is (no record).
    """
    obj = paths.shim_object(target)
    if target.shim.suffix != ".c":
        if not obj.exists():
            raise LinkError(f"{target.name}: shim object not found: {obj}")
        return obj, None

    if not target.shim.exists():
        raise LinkError(f"{target.name}: shim source not found: {target.shim}")
    if not force and not is_stale(obj, [target.shim]):
        return obj, up_to_date(SHIM_PHASE)

    paths.ensure()
    tmp = tmp_path(obj)
    cmd = [settings.CC, *target.shim_cflags, "-c", str(target.shim), "-o", str(tmp)]
    record = run_phase(
        SHIM_PHASE,
        cmd,
        logs_dir=paths.logs_dir,
        rel_base=paths.build_dir,
        timeout=settings.PHASE_TIMEOUT,
    )
    if record.status != PhaseStatus.SUCCESS or not tmp.exists():
        discard(tmp)
        tail = stderr_tail(record, paths.build_dir)
        raise LinkError(
            f"{target.name}: shim compile failed (exit {record.exit_code})"
            + (f"\n{tail}" if tail else "")
        )
    return publish(tmp, obj), record


# =============================================================================
# Merge
# =============================================================================

def collect_inputs(archive: Archive, shim_object: Path) -> List[ObjectSymbols]:
    """Symbol tables of the shim followed by every ELF archive member."""
    try:
        objects = [read_object_symbols(shim_object)]
    except (FileNotFoundError, ValueError) as e:
        raise LinkError(f"shim: {e}") from e
    for member in archive.members:
        if not member.is_elf:
            logger.debug("%s: skipping non-ELF member %s", archive.path.name, member.name)
            continue
        try:
            objects.append(read_member_symbols(member.data, member.label))
        except ValueError as e:
            raise LinkError(f"{archive.path.name}: {e}") from e
    return objects


def check_conflicts(objects: List[ObjectSymbols]) -> None:
    """
    Raises
    ------
    LinkError
        If any name is strongly defined by more than one input.
    """
    conflicts = find_strong_conflicts(objects)
    if conflicts:
        detail = "; ".join(
            f"{name} defined in {', '.join(labels)}" for name, labels in conflicts.items()
        )
        raise LinkError(f"conflicting strong definitions: {detail}")


def merge_command(settings: Settings, output: Path, shim_object: Path, archive: Archive) -> List[str]:
    return [
        settings.LD,
        "-r",
        "-o", str(output),
        str(shim_object),
        "--whole-archive",
        str(archive.path),
        "--no-whole-archive",
    ]


def merge_identity(archive_path: Path, shim_object: Path) -> Dict[str, str]:
    """What a merged object is built from, by path and content."""
    return {
        "archive": str(archive_path),
        "archive_sha256": hash_file(archive_path),
        "shim": str(shim_object),
        "shim_sha256": hash_file(shim_object),
    }


def needs_merge(target: BuildTarget, paths: BuildPaths, archive_path: Path, shim_object: Path) -> bool:
    """True if the merged object is older than, or was built from other, inputs."""
    merged_path = paths.merged_path(target)
    if is_stale(merged_path, [archive_path, shim_object]):
        return True
    return inputs_changed(
        paths.inputs_stamp(merged_path), merge_identity(archive_path, shim_object))


def merge_archive(
    target: BuildTarget,
    archive: Archive,
    shim_object: Path,
    paths: BuildPaths,
    resolver: SymbolResolver,
    settings: Settings,
    force: bool = False,
) -> Tuple[MergedObject, PhaseRecord]:
    """
    Produce the MergedObject for *target*.

    The conflict check always runs; ``ld`` runs only when needs_merge says
    so.  The resolver classifies the merged object's undefined references;
    unknown ones are reported here and judged by the assembler once section
    GC has run.

    Raises
    ------
    LinkError
        On conflicting strong definitions, unreadable members or objects,
        or ld failure.  No merged object is left behind.
    """
    merged_path = paths.merged_path(target)
    stamp = paths.inputs_stamp(merged_path)
    objects = collect_inputs(archive, shim_object)
    member_labels = tuple(o.label for o in objects[1:])

    try:
        check_conflicts(objects)
    except LinkError:
        discard(merged_path, stamp)
        raise

    if not force and not needs_merge(target, paths, archive.path, shim_object):
        logger.info("%s: %s is up to date", target.name, merged_path.name)
        record = up_to_date(MERGE_PHASE)
    else:
        paths.ensure()
        tmp = tmp_path(merged_path)
        cmd = merge_command(settings, tmp, shim_object, archive)
        logger.info(
            "%s: merging %d archive members with %s",
            target.name, len(member_labels), shim_object.name,
        )
        record = run_phase(
            MERGE_PHASE,
            cmd,
            logs_dir=paths.logs_dir,
            rel_base=paths.build_dir,
            timeout=settings.PHASE_TIMEOUT,
        )
        if record.status != PhaseStatus.SUCCESS or not tmp.exists():
            discard(tmp, merged_path, stamp)
            tail = stderr_tail(record, paths.build_dir)
            raise LinkError(
                f"{target.name}: {settings.LD} -r failed (exit {record.exit_code})"
                + (f"\n{tail}" if tail else "")
            )
        publish(tmp, merged_path)
        write_inputs_stamp(stamp, merge_identity(archive.path, shim_object))

    try:
        symbols = read_object_symbols(merged_path)
    except ValueError as e:
        discard(merged_path, stamp)
        raise LinkError(f"{target.name}: {merged_path.name}: {e}") from e
    resolution = resolver.classify(symbols.undefined)
    if resolution.unknown:
        logger.warning(
            "%s: merged object references symbols no table exports "
            "(fatal unless section GC drops them): %s",
            target.name, ", ".join(resolution.unknown),
        )

    merged = MergedObject(
        path=merged_path,
        sha256=hash_file(merged_path),
        members=member_labels,
        symbols=symbols,
        resolution=resolution,
    )
    return merged, record
