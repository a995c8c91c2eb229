"""
Phase runner — run one external command and record it.

Also holds the staleness rules every stage shares: an output is fresh when
it exists, no input is newer than it, and the inputs it records having been
built from are the ones the stage would use now (mtimes alone miss a
profile switch that swaps one up-to-date archive for another).  Stage
outputs are written to a ``.tmp`` sibling and renamed into place, so an
interrupted run never leaves a complete-looking output behind.
"""
import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from kmod_forge.io.schema import PhaseRecord, PhaseStatus

logger = logging.getLogger(__name__)

# Directories under a crate's source root that never count as sources
IGNORED_SOURCE_DIRS = frozenset({"target", ".git", ".hg", ".svn"})


def run_phase(
    name: str,
    cmd: List[str],
    logs_dir: Path,
    rel_base: Path,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: int = 1800,
) -> PhaseRecord:
    """
    Run *cmd* and return its PhaseRecord.

    stdout/stderr land in ``logs_dir/<name>.stdout|stderr`` (only when
    non-empty); paths in the record are relative to *rel_base*.  Never
    raises for a failing command: callers decide which error to raise.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    cmd_str = " ".join(cmd)
    logger.debug("[%s] %s", name, cmd_str)

    t0 = time.monotonic()
    stdout_content = ""
    stderr_content = ""
    status = PhaseStatus.FAILED
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        exit_code = result.returncode
        stdout_content = result.stdout
        stderr_content = result.stderr
        status = PhaseStatus.SUCCESS if exit_code == 0 else PhaseStatus.FAILED
    except subprocess.TimeoutExpired:
        exit_code = -1
        stderr_content = f"TIMEOUT after {timeout}s"
        status = PhaseStatus.TIMEOUT
    except OSError as e:
        # executable missing or not runnable
        exit_code = -1
        stderr_content = str(e)
    duration = int((time.monotonic() - t0) * 1000)

    # Only write log files if they have content
    stdout_rel = None
    stderr_rel = None
    if stdout_content:
        stdout_file = logs_dir / f"{name}.stdout"
        stdout_file.write_text(stdout_content)
        stdout_rel = _rel(stdout_file, rel_base)
    if stderr_content:
        stderr_file = logs_dir / f"{name}.stderr"
        stderr_file.write_text(stderr_content)
        stderr_rel = _rel(stderr_file, rel_base)

    return PhaseRecord(
        name=name,
        command=cmd_str,
        exit_code=exit_code,
        stdout_path_rel=stdout_rel,
        stderr_path_rel=stderr_rel,
        duration_ms=duration,
        status=status,
    )


def up_to_date(name: str) -> PhaseRecord:
    """Record for a phase whose output was reused."""
    return PhaseRecord(name=name, exit_code=0, status=PhaseStatus.UP_TO_DATE)


def stderr_tail(record: PhaseRecord, rel_base: Path, lines: int = 20) -> str:
    """Last *lines* of a phase's stderr log, for error messages."""
    if not record.stderr_path_rel:
        return ""
    text = (rel_base / record.stderr_path_rel).read_text(errors="replace")
    return "\n".join(text.splitlines()[-lines:])


def _rel(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return path.as_posix()


# =============================================================================
# Staleness
# =============================================================================

def iter_source_files(root: Path) -> Iterator[Path]:
    """Every regular file under *root*, skipping build output and VCS dirs."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_SOURCE_DIRS)
        for fn in sorted(filenames):
            yield Path(dirpath) / fn


def is_stale(output: Path, inputs: Iterable[Path]) -> bool:
    """
    True if *output* must be rebuilt from *inputs*.

    A missing output or a missing input is always stale; an input with the
    same mtime as the output is not.
    """
    if not output.exists():
        return True
    out_mtime = output.stat().st_mtime
    for inp in inputs:
        if not inp.exists():
            return True
        if inp.stat().st_mtime > out_mtime:
            logger.debug("%s is newer than %s", inp, output)
            return True
    return False


def tmp_path(path: Path) -> Path:
    """Temporary sibling a stage writes before publishing to *path*."""
    return path.with_name(path.name + ".tmp")


def publish(tmp: Path, final: Path) -> Path:
    """Atomically move a finished stage output into place."""
    os.replace(tmp, final)
    return final


def discard(*paths: Path) -> None:
    """Remove stage outputs that must not survive a failure."""
    for p in paths:
        try:
            p.unlink()
        except FileNotFoundError:
            pass


# =============================================================================
# Input stamps
# =============================================================================

def read_inputs_stamp(path: Path) -> Optional[Dict[str, str]]:
    """Identity recorded by write_inputs_stamp, or None if absent or unreadable."""
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning("ignoring unreadable stamp %s", path)
        return None
    return data if isinstance(data, dict) else None


def write_inputs_stamp(path: Path, identity: Dict[str, str]) -> Path:
    """Record *identity* for the output just published."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tmp_path(path)
    tmp.write_text(json.dumps(identity, indent=2, sort_keys=True) + "\n")
    return publish(tmp, path)


def inputs_changed(path: Path, identity: Dict[str, str]) -> bool:
    """True unless the stamp at *path* records exactly *identity*."""
    recorded = read_inputs_stamp(path)
    if recorded != identity:
        logger.debug("%s: recorded inputs differ", path.name)
        return True
    return False
