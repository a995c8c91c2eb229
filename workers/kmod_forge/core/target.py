"""
Target — what one module build compiles and where its outputs live.

Every module build owns a private directory keyed by module name and target
triple, so independent modules can be built by concurrent processes without
sharing any output file.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from kmod_forge.policy.profile import OptProfile


@dataclass(frozen=True)
class BuildTarget:
    """The embedded component of one module and the module it ends up in."""

    name: str                 # module name
    crate_name: str           # cargo library name (lib<crate>.a)
    target_triple: str
    source_root: Path         # directory holding Cargo.toml
    shim: Path                # native shim, .o or .c
    output_path: Path         # final loadable module (.ko)
    toolchain: str = "cargo"
    profile: OptProfile = OptProfile.RELEASE
    rustflags: Tuple[str, ...] = ()
    shim_cflags: Tuple[str, ...] = ()
    symbol_tables: Tuple[Path, ...] = field(default_factory=tuple)
    kernel_symvers: Optional[Path] = None

    @property
    def manifest_path(self) -> Path:
        return self.source_root / "Cargo.toml"


@dataclass(frozen=True)
class BuildPaths:
    """Deterministic layout of one module's private build directory."""

    build_dir: Path

    @classmethod
    def for_target(cls, build_root: Path, target: BuildTarget) -> "BuildPaths":
        return cls(build_dir=build_root / target.name / target.target_triple)

    @property
    def target_dir(self) -> Path:
        """cargo --target-dir"""
        return self.build_dir / "target"

    @property
    def logs_dir(self) -> Path:
        return self.build_dir / "logs"

    @property
    def receipt_path(self) -> Path:
        return self.build_dir / "build_receipt.json"

    def archive_path(self, target: BuildTarget) -> Path:
        """Where cargo leaves the static archive for (triple, profile)."""
        return (
            self.target_dir
            / target.target_triple
            / target.profile.value
            / f"lib{target.crate_name}.a"
        )

    def shim_object(self, target: BuildTarget) -> Path:
        """Shim object: the given .o, or the compiled form of a .c shim."""
        if target.shim.suffix == ".c":
            return self.build_dir / f"{target.shim.stem}.shim.o"
        return target.shim

    def merged_path(self, target: BuildTarget) -> Path:
        """Merged object, keyed by profile like the archive it comes from."""
        return self.build_dir / f"{target.name}.{target.profile.value}.merged.o"

    def compile_stamp(self, target: BuildTarget) -> Path:
        """Touched after every successful cargo run for the target's profile."""
        return self.build_dir / f"compile.{target.profile.value}.stamp"

    def inputs_stamp(self, output: Path) -> Path:
        """Record of which inputs *output* was last built from."""
        return self.build_dir / f"{output.name}.inputs"

    def ensure(self) -> None:
        self.build_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(exist_ok=True)
