"""
Profile — the fixed conventions a module build must follow.

The profile holds every convention the host kernel or the invoking build
system imposes (lifecycle symbol names, runtime crates to rebuild, build
variables to hide from cargo) so that core stages contain no hard-coded
policy.  Changing a convention is a profile change, not a code change.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class OptProfile(str, Enum):
    """Cargo optimization profile (value is the target/ subdirectory name)."""
    RELEASE = "release"
    DEV = "debug"

    def cargo_flags(self) -> Tuple[str, ...]:
        """Flags selecting this profile on the cargo command line."""
        return ("--release",) if self is OptProfile.RELEASE else ()


@dataclass(frozen=True)
class BuildProfile:
    """Conventions shared by every module build."""

    profile_id: str

    # Lifecycle roots the kernel loader looks up by name
    init_symbol: str
    exit_symbol: str

    # Runtime crates rebuilt from source (no prebuilt std for the triple)
    build_std: Tuple[str, ...]

    # Make's recursion/jobserver variables; cargo must not inherit them
    scrub_env: Tuple[str, ...]

    @classmethod
    def v0(cls) -> "BuildProfile":
        """The default profile: Linux loadable module, no_std Rust component."""
        return cls(
            profile_id="linux-kmod-rust-nostd-v0",
            init_symbol="init_module",
            exit_symbol="cleanup_module",
            build_std=("core", "alloc"),
            scrub_env=(
                "MAKEFLAGS",
                "MFLAGS",
                "MAKELEVEL",
                "MAKE",
                "MAKEOVERRIDES",
                "GNUMAKEFLAGS",
                "MAKE_TERMOUT",
                "MAKE_TERMERR",
            ),
        )

    @property
    def pinned_symbols(self) -> Tuple[str, str]:
        return (self.init_symbol, self.exit_symbol)
