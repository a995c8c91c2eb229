"""
Build state machine — one linear path per module build.

    NOT_BUILT → COMPONENT_COMPILED → MERGED → ASSEMBLED → LOADABLE

No stage may be skipped and there is no way back: a source change simply
starts a new build from NOT_BUILT.
"""
import logging
from enum import Enum, unique
from typing import List, Optional

from kmod_forge.errors import StateTransitionError

logger = logging.getLogger(__name__)


@unique
class BuildState(str, Enum):
    NOT_BUILT = "NOT_BUILT"
    COMPONENT_COMPILED = "COMPONENT_COMPILED"
    MERGED = "MERGED"
    ASSEMBLED = "ASSEMBLED"
    LOADABLE = "LOADABLE"


_ORDER: List[BuildState] = list(BuildState)


def next_state(state: BuildState) -> Optional[BuildState]:
    """The only state reachable from *state*, or None at the end."""
    idx = _ORDER.index(state)
    if idx + 1 < len(_ORDER):
        return _ORDER[idx + 1]
    return None


class BuildStateMachine:
    """Tracks where a single module build is and refuses out-of-order moves."""

    def __init__(self, module: str):
        self.module = module
        self.state = BuildState.NOT_BUILT
        self.history: List[BuildState] = [BuildState.NOT_BUILT]

    def advance(self, to: BuildState, resolver_ok: bool = False) -> BuildState:
        """
        Move to *to*.

        ``MERGED → ASSEMBLED`` additionally requires *resolver_ok*, i.e. a
        successful Symbol Resolver check on the section-pruned object.
        """
        expected = next_state(self.state)
        if to != expected:
            raise StateTransitionError(
                f"{self.module}: cannot move from {self.state.value} to {to.value}"
            )
        if to == BuildState.ASSEMBLED and not resolver_ok:
            raise StateTransitionError(
                f"{self.module}: assembly requires a passing symbol check"
            )
        logger.debug("%s: %s -> %s", self.module, self.state.value, to.value)
        self.state = to
        self.history.append(to)
        return to

    @property
    def is_loadable(self) -> bool:
        return self.state == BuildState.LOADABLE
