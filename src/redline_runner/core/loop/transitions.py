from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .models import LoopCommand, LoopState


class LoopTrigger(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    REBOOT = "reboot"
    REBOOT_DONE = "reboot_done"
    COMPLETE = "complete"
    FAIL = "fail"


class InvalidTransitionError(Exception):
    def __init__(
        self,
        state: LoopState,
        trigger: str,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(message or f"Cannot {trigger} while {state.value}")
        self.state = state
        self.trigger = trigger


_NON_TERMINAL = frozenset(
    {LoopState.IDLE, LoopState.RUNNING, LoopState.PAUSED, LoopState.REBOOTING}
)
_FINISHABLE = frozenset({LoopState.RUNNING, LoopState.PAUSED, LoopState.REBOOTING})

_TABLE: Dict[LoopTrigger, tuple[FrozenSet[LoopState], LoopState]] = {
    LoopTrigger.START: (
        frozenset({LoopState.IDLE, LoopState.STOPPED, LoopState.ERROR}),
        LoopState.RUNNING,
    ),
    LoopTrigger.PAUSE: (frozenset({LoopState.RUNNING}), LoopState.PAUSED),
    LoopTrigger.RESUME: (frozenset({LoopState.PAUSED}), LoopState.RUNNING),
    LoopTrigger.STOP: (_NON_TERMINAL, LoopState.STOPPED),
    LoopTrigger.REBOOT: (frozenset({LoopState.RUNNING}), LoopState.REBOOTING),
    LoopTrigger.REBOOT_DONE: (frozenset({LoopState.REBOOTING}), LoopState.RUNNING),
    LoopTrigger.COMPLETE: (_FINISHABLE, LoopState.COMPLETED),
    LoopTrigger.FAIL: (_FINISHABLE, LoopState.ERROR),
}

# States in which each command may be queued.
_COMMAND_STATES: Dict[LoopCommand, FrozenSet[LoopState]] = {
    LoopCommand.PAUSE: frozenset({LoopState.RUNNING, LoopState.REBOOTING}),
    LoopCommand.RESUME: frozenset({LoopState.PAUSED}),
    LoopCommand.STOP: _NON_TERMINAL,
    LoopCommand.FORCE_REBOOT: frozenset({LoopState.RUNNING}),
    LoopCommand.SKIP_ITERATION: frozenset({LoopState.RUNNING, LoopState.PAUSED}),
}


def next_state(state: LoopState, trigger: LoopTrigger) -> LoopState:
    """Target state for `trigger`; raises InvalidTransitionError when illegal."""
    allowed, target = _TABLE[trigger]
    if state not in allowed:
        raise InvalidTransitionError(state, trigger.value)
    return target


def is_allowed(state: LoopState, trigger: LoopTrigger) -> bool:
    return state in _TABLE[trigger][0]


def validate_command(state: LoopState, command: LoopCommand) -> None:
    if state not in _COMMAND_STATES[command]:
        raise InvalidTransitionError(state, command.value)


def transition_table() -> Dict[LoopTrigger, tuple[FrozenSet[LoopState], LoopState]]:
    return dict(_TABLE)
