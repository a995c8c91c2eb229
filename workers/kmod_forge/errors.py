"""
Errors — every failure that aborts a module build.

None of these are retried: the toolchain is deterministic, so re-running a
failed stage with unchanged inputs cannot succeed.
"""
from typing import Iterable, Optional


class KmodBuildError(Exception):
    """Base class for all fatal module build errors."""


class ToolchainError(KmodBuildError):
    """The foreign cross-compiler could not be run or exited non-zero."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class LinkError(KmodBuildError):
    """Archive members could not be merged into one relocatable object."""


class ArchiveFormatError(LinkError):
    """The static archive is not a readable ``ar`` archive."""


class AssemblyError(KmodBuildError):
    """The merged object cannot be turned into a loadable module."""


class UnresolvedSymbolError(AssemblyError):
    """A reference is satisfied neither locally nor by an exported-symbol table."""

    def __init__(self, symbols: Iterable[str], message: Optional[str] = None):
        self.symbols = tuple(sorted(set(symbols)))
        if message is None:
            message = "unresolved symbols: " + ", ".join(self.symbols)
        super().__init__(message)


class StateTransitionError(KmodBuildError):
    """A build stage was attempted out of order."""


class ManifestError(KmodBuildError):
    """The module manifest is missing, malformed or inconsistent."""
