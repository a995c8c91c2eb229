"""
Module assembler — merged object → loadable module.

Three steps around the linker:
  1. Pre-check: both lifecycle symbols are defined exactly once.  Undefined
     references are classified but not yet judged: one that only dead
     code makes is harmless once section GC drops that code.
  2. ``ld -r --gc-sections`` with the init symbol as entry and the cleanup
     symbol as an extra root.  The kernel loader finds these hooks by name,
     not by reachability, so without the pins GC would discard them.
  3. Post-check on the pruned object: the lifecycle symbols survived and
     every strong undefined reference left is exported by a supplied table.
     Only then does the module move to ASSEMBLED and get renamed into place.

On failure nothing is left at the output path: not the temp file, and not
a module from an earlier build that the new inputs no longer describe.
"""
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from kmod_forge.config import Settings
from kmod_forge.core.elf_symbols import ObjectSymbols, read_object_symbols
from kmod_forge.core.merger import MergedObject
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
from kmod_forge.errors import AssemblyError, KmodBuildError
from kmod_forge.io.schema import PhaseRecord, PhaseStatus, hash_file
from kmod_forge.policy.profile import BuildProfile
from kmod_forge.policy.state import BuildState, BuildStateMachine

logger = logging.getLogger(__name__)

PHASE_NAME = "assemble"


@dataclass(frozen=True)
class LoadableModule:
    """The final kernel object."""

    path: Path
    sha256: str
    init_symbol: str
    exit_symbol: str
    retained_sections: Tuple[str, ...]
    external_refs: Tuple[str, ...]


# =============================================================================
# Checks
# =============================================================================

def check_lifecycle_symbols(symbols: ObjectSymbols, profile: BuildProfile, stage: str) -> None:
    """
    Require exactly one global definition of each pinned symbol.

    Raises
    ------
    AssemblyError
        If a pinned symbol is missing, only referenced, or defined twice.
    """
    problems: List[str] = []
    for name in profile.pinned_symbols:
        defs = [s for s in symbols.lookup(name) if not s.is_undefined]
        if not defs:
            problems.append(f"{name} is not defined")
        elif len(defs) > 1:
            problems.append(f"{name} is defined {len(defs)} times")
        elif defs[0].sym_type != "STT_FUNC":
            logger.warning("%s: %s has type %s, expected STT_FUNC", stage, name, defs[0].sym_type)
    if problems:
        raise AssemblyError(
            f"{stage}: lifecycle symbols missing ({'; '.join(problems)}); "
            f"the embedded component must export them under these exact names"
        )


def check_references(symbols: ObjectSymbols, resolver: SymbolResolver, stage: str) -> Resolution:
    """
    Raises
    ------
    UnresolvedSymbolError
        If a strong undefined reference is exported by no supplied table.
    """
    return resolver.check(symbols.undefined, context=stage)


# =============================================================================
# Assemble
# =============================================================================

def assemble_command(
    settings: Settings,
    profile: BuildProfile,
    output: Path,
    merged: Path,
) -> List[str]:
    return [
        settings.LD,
        "-r",
        "--gc-sections",
        f"--entry={profile.init_symbol}",
        f"--undefined={profile.exit_symbol}",
        "-o", str(output),
        str(merged),
    ]


def _inspect(
    path: Path,
    resolver: SymbolResolver,
    profile: BuildProfile,
    stage: str,
) -> Tuple[LoadableModule, Resolution]:
    try:
        symbols = read_object_symbols(path)
    except ValueError as e:
        raise AssemblyError(f"{stage}: {e}") from e
    check_lifecycle_symbols(symbols, profile, stage)
    resolution = check_references(symbols, resolver, stage)
    module = LoadableModule(
        path=path,
        sha256=hash_file(path),
        init_symbol=profile.init_symbol,
        exit_symbol=profile.exit_symbol,
        retained_sections=tuple(sorted(set(symbols.sections))),
        external_refs=resolution.external,
    )
    return module, resolution


def inspect_module(
    path: Path,
    resolver: SymbolResolver,
    profile: BuildProfile,
    stage: str,
) -> LoadableModule:
    """Verify a finished (or candidate) module and describe it."""
    return _inspect(path, resolver, profile, stage)[0]


def assemble_identity(
    merged_path: Path,
    merged_sha256: str,
    tables: Tuple[Path, ...],
    profile: BuildProfile,
) -> Dict[str, str]:
    """What a module is built from: the merged object, the tables and the pins."""
    return {
        "merged": str(merged_path),
        "merged_sha256": merged_sha256,
        "tables": "\n".join(f"{t} {hash_file(t)}" for t in tables),
        "profile_id": profile.profile_id,
        "pinned": ",".join(profile.pinned_symbols),
    }


def needs_assemble(
    target: BuildTarget,
    paths: BuildPaths,
    merged_path: Path,
    tables: Tuple[Path, ...],
    profile: BuildProfile,
) -> bool:
    """True if the module is older than, or was built from other, inputs."""
    output = target.output_path
    if is_stale(output, [merged_path, *tables]):
        return True
    identity = assemble_identity(merged_path, hash_file(merged_path), tables, profile)
    return inputs_changed(paths.inputs_stamp(output), identity)


def assemble_module(
    target: BuildTarget,
    merged: MergedObject,
    resolver: SymbolResolver,
    paths: BuildPaths,
    profile: BuildProfile,
    settings: Settings,
    extra_inputs: Tuple[Path, ...] = (),
    force: bool = False,
    machine: Optional[BuildStateMachine] = None,
) -> Tuple[LoadableModule, PhaseRecord]:
    """
    Pre-check *merged*, prune it and publish the module at target.output_path.

    *extra_inputs* (the symbol table files) also make the output stale.
    When *machine* is given it is moved MERGED → ASSEMBLED once the pruned
    object passed the resolver, and ASSEMBLED → LOADABLE once it is
    published.

    Raises
    ------
    AssemblyError
        Missing/duplicate lifecycle symbol, linker failure, or a pinned
        symbol lost to section GC.
    UnresolvedSymbolError
        A reference no table exports that survives section GC (subclass of
        AssemblyError).
    """
    output = target.output_path
    tmp = tmp_path(output)
    stamp = paths.inputs_stamp(output)
    stage = f"{target.name} ({merged.path.name})"

    def _advance(to: BuildState, resolver_ok: bool) -> None:
        if machine is not None:
            machine.advance(to, resolver_ok=resolver_ok)

    try:
        check_lifecycle_symbols(merged.symbols, profile, stage)
        pending = resolver.classify(merged.symbols.undefined)
        if pending.unknown:
            logger.info(
                "%s: deferring %s to the post-GC check",
                stage, ", ".join(pending.unknown),
            )
        identity = assemble_identity(merged.path, merged.sha256, extra_inputs, profile)

        if (not force
                and not is_stale(output, [merged.path, *extra_inputs])
                and not inputs_changed(stamp, identity)):
            logger.info("%s: %s is up to date", target.name, output.name)
            module, resolution = _inspect(
                output, resolver, profile, f"{target.name} ({output.name})")
            _advance(BuildState.ASSEMBLED, resolution.ok)
            _advance(BuildState.LOADABLE, resolution.ok)
            return module, up_to_date(PHASE_NAME)

        output.parent.mkdir(parents=True, exist_ok=True)
        cmd = assemble_command(settings, profile, tmp, merged.path)
        logger.info(
            "%s: pruning sections, pinned roots %s",
            target.name, ", ".join(profile.pinned_symbols),
        )
        record = run_phase(
            PHASE_NAME,
            cmd,
            logs_dir=paths.logs_dir,
            rel_base=paths.build_dir,
            timeout=settings.PHASE_TIMEOUT,
        )
        if record.status != PhaseStatus.SUCCESS or not tmp.exists():
            tail = stderr_tail(record, paths.build_dir)
            raise AssemblyError(
                f"{target.name}: {settings.LD} --gc-sections failed (exit {record.exit_code})"
                + (f"\n{tail}" if tail else "")
            )

        candidate, resolution = _inspect(
            tmp, resolver, profile, f"{target.name} (after section GC)")
        _advance(BuildState.ASSEMBLED, resolution.ok)
        publish(tmp, output)
        write_inputs_stamp(stamp, identity)
        module = replace(candidate, path=output)
        _advance(BuildState.LOADABLE, resolution.ok)
    except KmodBuildError:
        discard(tmp, output, stamp)
        raise

    logger.info(
        "%s: %s ready (%d sections, %d external refs)",
        target.name, output, len(module.retained_sections), len(module.external_refs),
    )
    return module, record


def verify_module(
    path: Path,
    resolver: SymbolResolver,
    profile: Optional[BuildProfile] = None,
) -> LoadableModule:
    """Check an existing module file without building anything."""
    profile = profile or BuildProfile.v0()
    if not path.exists():
        raise AssemblyError(f"module not found: {path}")
    return inspect_module(path, resolver, profile, str(path))
