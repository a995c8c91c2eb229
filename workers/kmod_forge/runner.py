"""
Module build runner — top-level orchestration: manifest entry → loadable module.

This module ties the four stages (compile, merge, resolve, assemble), the
state machine and the receipt together into a single ``run_build``
function, and exposes it as the ``kmod-forge`` command line the host
kernel build invokes.  Building a module transitively runs every stale
upstream stage; fresh stages are reused.
"""
from __future__ import annotations

import argparse
import logging
import shutil
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from kmod_forge.config import Settings, get_settings
from kmod_forge.core.assembler import (
    LoadableModule,
    assemble_module,
    needs_assemble,
    verify_module,
)
from kmod_forge.core.merger import merge_archive, needs_merge, prepare_shim
from kmod_forge.core.phase import is_stale
from kmod_forge.core.resolver import SymbolResolver, load_symbol_table
from kmod_forge.core.target import BuildPaths, BuildTarget
from kmod_forge.core.toolchain import capture_toolchain, compile_component, needs_compile
from kmod_forge.errors import KmodBuildError, ManifestError
from kmod_forge.io.schema import (
    BuildReceipt,
    JobInfo,
    ModuleSpec,
    SymbolSummary,
    artifact_meta,
    load_manifest,
    now_iso,
)
from kmod_forge.io.writer import write_receipt
from kmod_forge.policy.profile import BuildProfile
from kmod_forge.policy.state import BuildState, BuildStateMachine

logger = logging.getLogger(__name__)


# ── Manifest → BuildTarget ───────────────────────────────────────────────────

def target_from_spec(spec: ModuleSpec, base_dir: Path, settings: Settings) -> BuildTarget:
    """Resolve a manifest entry against the manifest directory."""
    return BuildTarget(
        name=spec.name,
        crate_name=spec.resolved_crate_name,
        target_triple=spec.target_triple or settings.DEFAULT_TARGET_TRIPLE,
        source_root=(base_dir / spec.source_root).resolve(),
        shim=(base_dir / spec.shim).resolve(),
        output_path=(base_dir / spec.output).resolve(),
        toolchain=settings.CARGO,
        profile=spec.profile,
        rustflags=tuple(spec.rustflags),
        shim_cflags=tuple(spec.shim_cflags),
        symbol_tables=tuple((base_dir / s).resolve() for s in spec.symbols),
        kernel_symvers=(base_dir / spec.kernel_symvers).resolve() if spec.kernel_symvers else None,
    )


def table_paths(target: BuildTarget) -> Tuple[Path, ...]:
    """Sibling tables first, then the host kernel's, if any."""
    if target.kernel_symvers is not None:
        return target.symbol_tables + (target.kernel_symvers,)
    return target.symbol_tables


# ── Public API ───────────────────────────────────────────────────────────────

def run_build(
    target: BuildTarget,
    build_root: Path,
    settings: Optional[Settings] = None,
    profile: Optional[BuildProfile] = None,
    force: bool = False,
) -> Tuple[BuildReceipt, LoadableModule]:
    """
    Build one loadable module.

    Parameters
    ----------
    target : BuildTarget
        What to build.
    build_root : Path
        Root of all private build directories; this module uses
        ``<build_root>/<name>/<triple>/``.
    settings : Settings, optional
        Defaults to the environment-derived settings.
    profile : BuildProfile, optional
        Defaults to BuildProfile.v0().
    force : bool
        Re-run every stage even if its output is fresh.

    Returns
    -------
    (BuildReceipt, LoadableModule)

    Raises
    ------
    KmodBuildError
        Any stage failure.  The receipt is written either way.
    """
    settings = settings or get_settings()
    profile = profile or BuildProfile.v0()
    paths = BuildPaths.for_target(build_root, target)
    paths.ensure()

    machine = BuildStateMachine(target.name)
    receipt = BuildReceipt(
        profile_id=profile.profile_id,
        job=JobInfo(
            module=target.name,
            target_triple=target.target_triple,
            opt_profile=target.profile.value,
            created_at=now_iso(),
        ),
        toolchain=capture_toolchain(settings),
    )
    logger.info("Building module %s (%s)", target.name, target.output_path)

    try:
        # ── Step 0: exported-symbol tables, loaded once ──────────────────
        tables = table_paths(target)
        resolver = SymbolResolver(load_symbol_table(tables))

        # ── Step 1: foreign toolchain → static archive ───────────────────
        archive, record = compile_component(target, paths, profile, settings, force=force)
        receipt.phases.append(record)
        receipt.archive = artifact_meta(archive.path)
        machine.advance(BuildState.COMPONENT_COMPILED)

        # ── Step 2: whole-archive merge with the shim ────────────────────
        shim_object, shim_record = prepare_shim(target, paths, settings, force=force)
        if shim_record is not None:
            receipt.phases.append(shim_record)
        merged, record = merge_archive(
            target, archive, shim_object, paths, resolver, settings, force=force
        )
        receipt.phases.append(record)
        receipt.merged = artifact_meta(merged.path)
        machine.advance(BuildState.MERGED)

        # ── Step 3: symbol check, section GC, verification ───────────────
        module, record = assemble_module(
            target,
            merged,
            resolver,
            paths,
            profile,
            settings,
            extra_inputs=tables,
            force=force,
            machine=machine,
        )
        receipt.phases.append(record)
        receipt.module = artifact_meta(module.path)
        receipt.symbols = SymbolSummary(
            init_symbol=module.init_symbol,
            exit_symbol=module.exit_symbol,
            external_refs=list(module.external_refs),
            retained_sections=list(module.retained_sections),
        )
        receipt.job.status = "SUCCESS"
    except KmodBuildError as e:
        receipt.job.status = "FAILED"
        receipt.error_type = type(e).__name__
        receipt.error_message = str(e)
        logger.error("%s: %s: %s", target.name, type(e).__name__, e)
        raise
    finally:
        receipt.final_state = machine.state.value
        receipt.job.finished_at = now_iso()
        write_receipt(receipt, paths.receipt_path)

    return receipt, module


def stage_status(
    target: BuildTarget,
    build_root: Path,
    profile: Optional[BuildProfile] = None,
) -> List[Tuple[str, bool]]:
    """(stage, is_stale) for every stage, without running anything."""
    profile = profile or BuildProfile.v0()
    paths = BuildPaths.for_target(build_root, target)
    archive = paths.archive_path(target)
    shim_object = paths.shim_object(target)
    merged = paths.merged_path(target)

    stages = [("compile", needs_compile(target, paths))]
    if target.shim.suffix == ".c":
        stages.append(("shim", is_stale(shim_object, [target.shim])))
    stages.append(("merge", needs_merge(target, paths, archive, shim_object)))
    stages.append(("assemble", needs_assemble(target, paths, merged, table_paths(target), profile)))

    # a stale stage forces everything downstream
    out: List[Tuple[str, bool]] = []
    upstream_stale = False
    for name, stale in stages:
        upstream_stale = upstream_stale or stale
        out.append((name, upstream_stale))
    return out


def clean(target: BuildTarget, build_root: Path) -> None:
    """Remove the module's private build directory and its output."""
    paths = BuildPaths.for_target(build_root, target)
    if paths.build_dir.exists():
        shutil.rmtree(paths.build_dir)
        logger.info("Removed %s", paths.build_dir)
    if target.output_path.exists():
        target.output_path.unlink()
        logger.info("Removed %s", target.output_path)


# ── CLI ──────────────────────────────────────────────────────────────────────

def _resolve_targets(args, settings: Settings) -> Tuple[List[BuildTarget], Path]:
    manifest_path = Path(args.manifest or settings.MANIFEST)
    manifest, base_dir = load_manifest(manifest_path)
    targets = [
        target_from_spec(manifest.find_module(out, base_dir), base_dir, settings)
        for out in args.outputs
    ]
    return targets, base_dir / settings.BUILD_ROOT


def _cmd_build(args, settings: Settings) -> int:
    targets, build_root = _resolve_targets(args, settings)
    for target in targets:
        try:
            receipt, module = run_build(target, build_root, settings, force=args.force)
        except KmodBuildError:
            return 1
        ran = [p.name for p in receipt.phases if p.ran]
        print(f"{target.name}: {module.path} ({'rebuilt: ' + ', '.join(ran) if ran else 'up to date'})")
    return 0


def _cmd_status(args, settings: Settings) -> int:
    targets, build_root = _resolve_targets(args, settings)
    any_stale = False
    for target in targets:
        for stage, stale in stage_status(target, build_root):
            any_stale = any_stale or stale
            print(f"{target.name}\t{stage}\t{'stale' if stale else 'fresh'}")
    return 1 if any_stale else 0


def _cmd_verify(args, settings: Settings) -> int:
    targets, _ = _resolve_targets(args, settings)
    for target in targets:
        try:
            resolver = SymbolResolver(load_symbol_table(table_paths(target)))
            module = verify_module(target.output_path, resolver)
        except KmodBuildError as e:
            logger.error("%s: %s", target.name, e)
            return 1
        print(f"{target.name}: OK ({module.init_symbol}, {module.exit_symbol})")
        for name in module.external_refs:
            print(f"  external {name}")
    return 0


def _cmd_clean(args, settings: Settings) -> int:
    targets, build_root = _resolve_targets(args, settings)
    for target in targets:
        clean(target, build_root)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kmod-forge",
        description="Build kernel modules that embed a freestanding Rust component",
    )
    parser.add_argument(
        "-m", "--manifest",
        default=None,
        help="Module manifest (default: $KMOD_MANIFEST or kmod.json)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_build = sub.add_parser("build", help="Build the named module outputs")
    p_build.add_argument("outputs", nargs="+", help="Module output paths (.ko)")
    p_build.add_argument("--force", action="store_true", help="Re-run every stage")
    p_build.set_defaults(func=_cmd_build)

    p_status = sub.add_parser("status", help="Show which stages are stale")
    p_status.add_argument("outputs", nargs="+")
    p_status.set_defaults(func=_cmd_status)

    p_verify = sub.add_parser("verify", help="Check an existing module's symbols")
    p_verify.add_argument("outputs", nargs="+")
    p_verify.set_defaults(func=_cmd_verify)

    p_clean = sub.add_parser("clean", help="Remove build directories and outputs")
    p_clean.add_argument("outputs", nargs="+")
    p_clean.set_defaults(func=_cmd_clean)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    settings = get_settings()
    try:
        return args.func(args, settings)
    except ManifestError as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
