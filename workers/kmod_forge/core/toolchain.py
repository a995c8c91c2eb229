"""
Target compiler invoker — build the embedded component's static archive.

The component targets a freestanding triple with no prebuilt standard
distribution, so cargo is told to rebuild the runtime crates from source
(``-Z build-std``).  cargo is typically launched from inside ``make``; the
jobserver and recursion variables make inherits must not leak into it.

Scope: one cargo invocation per BuildTarget, only when the archive is
stale.  A failed compile aborts the module build; nothing is retried.
"""
import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from kmod_forge.config import Settings
from kmod_forge.core.archive import Archive, read_archive
from kmod_forge.core.phase import is_stale, iter_source_files, run_phase, stderr_tail, up_to_date
from kmod_forge.core.target import BuildPaths, BuildTarget
from kmod_forge.errors import ToolchainError
from kmod_forge.io.schema import PhaseRecord, PhaseStatus, ToolchainIdentity
from kmod_forge.policy.profile import BuildProfile

logger = logging.getLogger(__name__)

PHASE_NAME = "compile"


# =============================================================================
# Toolchain Discovery
# =============================================================================

def _run_quiet(cmd: List[str], timeout: int = 5) -> str:
    """Run a command and return the first line of stdout, or 'unknown'."""
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired):
        return "unknown"
    lines = r.stdout.strip().splitlines()
    return lines[0] if lines else "unknown"


def capture_toolchain(settings: Settings) -> ToolchainIdentity:
    """Record the versions of the tools a build is about to use."""
    return ToolchainIdentity(
        cargo_version=_run_quiet([settings.CARGO, "--version"]),
        rustc_version=_run_quiet(["rustc", "--version"]),
        ld_version=_run_quiet([settings.LD, "--version"]),
        cc_version=_run_quiet([settings.CC, "--version"]),
    )


# =============================================================================
# Command + environment
# =============================================================================

def scrubbed_env(
    base: Mapping[str, str],
    profile: BuildProfile,
    extra: Tuple[str, ...] = (),
) -> Dict[str, str]:
    """Copy of *base* without the invoking build system's orchestration variables."""
    drop = set(profile.scrub_env) | set(extra)
    return {k: v for k, v in base.items() if k not in drop}


def cargo_command(
    target: BuildTarget,
    paths: BuildPaths,
    profile: BuildProfile,
) -> List[str]:
    """The cargo invocation producing lib<crate>.a for *target*."""
    cmd = [
        target.toolchain,
        "build",
        "--manifest-path", str(target.manifest_path),
        "--target", target.target_triple,
        "--target-dir", str(paths.target_dir),
        "-Z", "build-std=" + ",".join(profile.build_std),
    ]
    cmd.extend(target.profile.cargo_flags())
    return cmd


def component_sources(target: BuildTarget) -> List[Path]:
    return list(iter_source_files(target.source_root))


def needs_compile(target: BuildTarget, paths: BuildPaths) -> bool:
    """
    True if cargo must run for *target*.

    Freshness is judged against the compile stamp, not the archive: cargo
    leaves the archive untouched when an edited file (docs, tests) does not
    feed the library.
    """
    if not paths.archive_path(target).exists():
        return True
    return is_stale(paths.compile_stamp(target), component_sources(target))


# =============================================================================
# Compile
# =============================================================================

def compile_component(
    target: BuildTarget,
    paths: BuildPaths,
    profile: BuildProfile,
    settings: Settings,
    force: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[Archive, PhaseRecord]:
    """
    Produce the component's static archive, invoking cargo only if stale.

    Returns (Archive, PhaseRecord).

    Raises
    ------
    ToolchainError
        If cargo cannot be run, exits non-zero, times out, or exits 0
        without leaving the archive where it was asked to.
    """
    if not target.manifest_path.exists():
        raise ToolchainError(f"{target.name}: no Cargo.toml in {target.source_root}")

    archive_path = paths.archive_path(target)
    if not force and not needs_compile(target, paths):
        logger.info("%s: %s is up to date", target.name, archive_path.name)
        return read_archive(archive_path), up_to_date(PHASE_NAME)

    paths.ensure()
    env = scrubbed_env(
        os.environ if environ is None else environ,
        profile,
        tuple(settings.EXTRA_SCRUB_ENV),
    )
    if target.rustflags:
        env["RUSTFLAGS"] = " ".join(target.rustflags)

    cmd = cargo_command(target, paths, profile)
    logger.info(
        "%s: compiling %s for %s (%s)",
        target.name, target.crate_name, target.target_triple, target.profile.value,
    )
    record = run_phase(
        PHASE_NAME,
        cmd,
        logs_dir=paths.logs_dir,
        rel_base=paths.build_dir,
        cwd=target.source_root,
        env=env,
        timeout=settings.PHASE_TIMEOUT,
    )

    if record.status != PhaseStatus.SUCCESS:
        tail = stderr_tail(record, paths.build_dir)
        raise ToolchainError(
            f"{target.name}: {target.toolchain} failed "
            f"(exit {record.exit_code}, {record.status.value})"
            + (f"\n{tail}" if tail else ""),
            exit_code=record.exit_code,
            stderr=tail,
        )
    if not archive_path.exists():
        raise ToolchainError(
            f"{target.name}: {target.toolchain} succeeded but {archive_path} is missing",
            exit_code=record.exit_code,
        )

    archive = read_archive(archive_path)
    paths.compile_stamp(target).write_text(record.command + "\n")
    return archive, record
