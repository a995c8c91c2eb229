"""
Shared pytest fixtures for kmod_forge tests.

Provides on-the-fly compilation of small C translation units with gcc,
packed into a static archive with ar, standing in for the Rust component.
cargo itself is replaced by a fake executable that records its invocation
and copies a prebuilt archive to where real cargo would leave it.

Requirements:
  - gcc, ar and ld must be available and produce ELF objects (Linux/WSL).

Toolchain tests are skipped when the requirements are not met.
"""
import json
import os
import shutil
import stat
import subprocess
import sys
import tempfile
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from kmod_forge.config import Settings
from kmod_forge.core.target import BuildPaths, BuildTarget

# ── Component sources (stand-ins for the Rust crate's codegen units) ─────────

LIFECYCLE_C = textwrap.dedent("""\
    extern int bento_register(void *fs);

    static int fs_state;

    int init_module(void) {
        return bento_register(&fs_state);
    }

    void cleanup_module(void) {
        fs_state = 0;
    }
""")

# Referenced by nothing: only whole-archive linking keeps it in the merge,
# and section GC must drop it from the module.
UTIL_C = textwrap.dedent("""\
    int unused_helper(int x) {
        return x * 41 + 1;
    }
""")

LIFECYCLE_MISSING_REF_C = textwrap.dedent("""\
    extern int bento_register(void *fs);
    extern int bento_missing(void);

    static int fs_state;

    int init_module(void) {
        return bento_register(&fs_state) + bento_missing();
    }

    void cleanup_module(void) {
        fs_state = 0;
    }
""")

LIFECYCLE_UNREGISTER_C = textwrap.dedent("""\
    extern int bento_unregister(void *fs);

    static int fs_state;

    int init_module(void) {
        return bento_unregister(&fs_state);
    }

    void cleanup_module(void) {
        fs_state = 0;
    }
""")

# Only dead code references bento_missing; section GC drops the reference.
DEAD_REF_C = textwrap.dedent("""\
    extern int bento_missing(int x);

    int dead_caller(int x) {
        return bento_missing(x) + 1;
    }
""")

LIFECYCLE_NO_CLEANUP_C = textwrap.dedent("""\
    extern int bento_register(void *fs);

    static int fs_state;

    int init_module(void) {
        return bento_register(&fs_state);
    }
""")

CONFLICT_A_C = "int X(void) { return 1; }\n"
CONFLICT_B_C = "int X(void) { return 2; }\n"
WEAK_X_C = "__attribute__((weak)) int X(void) { return 3; }\n"

SHIM_C = textwrap.dedent("""\
    /* native shim: kernel-facing glue around the embedded component */
    const char shim_license[] = "GPL";

    int shim_version(void) {
        return 1;
    }
""")

BENTO_SYMVERS = (
    "0x1a2b3c4d\tbento_register\tfs/bento/bento\tEXPORT_SYMBOL_GPL\t\n"
    "0x5e6f7081\tbento_unregister\tfs/bento/bento\tEXPORT_SYMBOL_GPL\t\n"
)

CFLAGS = [
    "-O2",
    "-ffunction-sections",
    "-fdata-sections",
    "-fno-pie",
    "-fno-stack-protector",
    "-fno-asynchronous-unwind-tables",
    "-fno-unwind-tables",
]

CRATE = "xv6fs"
TRIPLE = "x86_64-unknown-none"


# ── Toolchain detection ──────────────────────────────────────────────────────

def _tools_available() -> bool:
    return all(shutil.which(t) is not None for t in ("gcc", "ar", "ld"))


def _gcc_produces_elf() -> bool:
    """Test if gcc produces ELF objects (Linux/WSL) rather than PE/COFF."""
    if not _tools_available():
        return False
    with tempfile.TemporaryDirectory() as tmpdir:
        src = Path(tmpdir) / "elfcheck.c"
        obj = Path(tmpdir) / "elfcheck.o"
        src.write_text("int elfcheck(void) { return 0; }\n")
        try:
            subprocess.run(
                ["gcc", "-c", str(src), "-o", str(obj)],
                check=True,
                capture_output=True,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return obj.exists() and obj.read_bytes()[:4] == b"\x7fELF"


@pytest.fixture(scope="session")
def toolchain_ok():
    """Skip tests if gcc/ar/ld are missing or gcc does not produce ELF."""
    if not _tools_available():
        pytest.skip("gcc, ar and ld are required for toolchain tests")
    if not _gcc_produces_elf():
        pytest.skip("gcc does not produce ELF objects (run under Linux/WSL)")


# ── Object / archive helpers ─────────────────────────────────────────────────

def compile_object(source: str, output: Path) -> Path:
    """Compile a C translation unit to a relocatable object."""
    src = output.with_suffix(".c")
    src.write_text(source)
    subprocess.run(
        ["gcc", *CFLAGS, "-c", str(src), "-o", str(output)],
        check=True,
        capture_output=True,
        timeout=30,
    )
    return output


def make_archive(units: Dict[str, str], archive: Path) -> Path:
    """Compile each {member_stem: source} and pack the objects with ar."""
    work = archive.parent / (archive.stem + "_objs")
    if work.exists():
        shutil.rmtree(work)
    work.mkdir(parents=True)
    objects = [compile_object(src, work / f"{stem}.o") for stem, src in units.items()]
    archive.parent.mkdir(parents=True, exist_ok=True)
    if archive.exists():
        archive.unlink()
    subprocess.run(
        ["ar", "rcs", str(archive), *[str(o) for o in objects]],
        check=True,
        capture_output=True,
        timeout=30,
    )
    return archive


def _ar_header(name: str, size: int) -> bytes:
    return (
        name.ljust(16).encode()
        + b"0".ljust(12)
        + b"0".ljust(6)
        + b"0".ljust(6)
        + b"644".ljust(8)
        + str(size).encode().ljust(10)
        + b"`\n"
    )


def ar_bytes(members: List[Tuple[str, bytes]], flavor: str = "gnu") -> bytes:
    """Hand-build an ar archive (GNU or BSD member naming)."""
    out = bytearray(b"!<arch>\n")

    def emit(name: str, data: bytes) -> None:
        out.extend(_ar_header(name, len(data)))
        out.extend(data)
        if len(data) % 2:
            out.extend(b"\n")

    if flavor == "gnu":
        emit("/", b"\x00\x00\x00\x00")
        long_table = bytearray()
        names: List[str] = []
        for name, _ in members:
            if len(name) > 15:
                names.append(f"/{len(long_table)}")
                long_table.extend(f"{name}/\n".encode())
            else:
                names.append(f"{name}/")
        if long_table:
            emit("//", bytes(long_table))
        for header_name, (_, data) in zip(names, members):
            emit(header_name, data)
    else:
        for name, data in members:
            raw = name.encode()
            emit(f"#1/{len(raw)}", raw + data)
    return bytes(out)


# ── Fake cargo ───────────────────────────────────────────────────────────────

FAKE_CARGO = """\
#!{python}
import json
import os
import shutil
import sys
from pathlib import Path

LOG = Path({log!r})
ARCHIVE = Path({archive!r})
FAIL_FLAG = Path({fail_flag!r})
NOOP_FLAG = Path({noop_flag!r})

args = sys.argv[1:]
if args[:1] == ["--version"]:
    print("cargo 1.83.0-nightly (fake)")
    sys.exit(0)

with LOG.open("a") as f:
    f.write(json.dumps({{
        "argv": args,
        "cwd": os.getcwd(),
        "env": {{k: os.environ.get(k) for k in
                ("MAKEFLAGS", "MFLAGS", "MAKELEVEL", "MAKE", "RUSTFLAGS", "KEEP_ME")}},
    }}) + "\\n")

if FAIL_FLAG.exists():
    print("error[E0425]: cannot find value `oops` in this scope", file=sys.stderr)
    sys.exit(101)

target_dir = Path(args[args.index("--target-dir") + 1])
triple = args[args.index("--target") + 1]
profile = "release" if "--release" in args else "debug"
out = target_dir / triple / profile / ARCHIVE.name
if NOOP_FLAG.exists() and out.exists():
    # nothing the library depends on changed
    sys.exit(0)
out.parent.mkdir(parents=True, exist_ok=True)
shutil.copyfile(ARCHIVE, out)
"""


@dataclass
class KmodProject:
    """A throwaway module tree wired to the fake cargo."""

    root: Path
    target: BuildTarget
    build_root: Path
    settings: Settings
    cargo_log: Path
    archive_fixture: Path
    fail_flag: Path
    noop_flag: Path

    @property
    def paths(self) -> BuildPaths:
        return BuildPaths.for_target(self.build_root, self.target)

    def cargo_calls(self) -> List[dict]:
        if not self.cargo_log.exists():
            return []
        return [json.loads(line) for line in self.cargo_log.read_text().splitlines()]

    def set_component(self, units: Dict[str, str]) -> None:
        """Replace what the fake cargo will 'compile' next time it runs."""
        make_archive(units, self.archive_fixture)

    def touch_sources(self, mtime: float) -> None:
        for p in self.target.source_root.rglob("*"):
            if p.is_file():
                os.utime(p, (mtime, mtime))


def write_fake_cargo(path: Path, log: Path, archive: Path, fail_flag: Path, noop_flag: Path) -> Path:
    path.write_text(FAKE_CARGO.format(
        python=sys.executable,
        log=str(log),
        archive=str(archive),
        fail_flag=str(fail_flag),
        noop_flag=str(noop_flag),
    ))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_project(root: Path, units: Dict[str, str]) -> KmodProject:
    """Lay out crate, shim, sibling symbol table and fake toolchain under *root*."""
    crate = root / "xv6fs" / "rust"
    (crate / "src").mkdir(parents=True)
    (crate / "Cargo.toml").write_text(
        '[package]\nname = "xv6fs"\nversion = "0.1.0"\n\n[lib]\ncrate-type = ["staticlib"]\n'
    )
    (crate / "src" / "lib.rs").write_text("#![no_std]\n")

    symvers = root / "bento" / "Module.symvers"
    symvers.parent.mkdir(parents=True)
    symvers.write_text(BENTO_SYMVERS)

    shim = compile_object(SHIM_C, root / "xv6fs" / "module.o")

    fixtures = root / "fixtures"
    archive_fixture = make_archive(units, fixtures / f"lib{CRATE}.a")
    cargo_log = fixtures / "cargo_calls.jsonl"
    fail_flag = fixtures / "cargo_fail"
    noop_flag = fixtures / "cargo_noop"
    fake_cargo = write_fake_cargo(
        fixtures / "cargo", cargo_log, archive_fixture, fail_flag, noop_flag)

    target = BuildTarget(
        name="xv6fs",
        crate_name=CRATE,
        target_triple=TRIPLE,
        source_root=crate,
        shim=shim,
        output_path=root / "xv6fs" / "xv6fs.ko",
        toolchain=str(fake_cargo),
        symbol_tables=(symvers,),
    )
    settings = Settings(CARGO=str(fake_cargo), LD="ld", CC="gcc", PHASE_TIMEOUT=60)
    return KmodProject(
        root=root,
        target=target,
        build_root=root / "build",
        settings=settings,
        cargo_log=cargo_log,
        archive_fixture=archive_fixture,
        fail_flag=fail_flag,
        noop_flag=noop_flag,
    )


@pytest.fixture
def kmod_project(tmp_path, toolchain_ok) -> KmodProject:
    """Module whose component references only bento_register."""
    return make_project(tmp_path, {"lifecycle": LIFECYCLE_C, "util": UTIL_C})


@pytest.fixture
def ar_builder():
    return ar_bytes


@pytest.fixture
def object_compiler(toolchain_ok):
    return compile_object


@pytest.fixture
def archive_maker(toolchain_ok):
    return make_archive
