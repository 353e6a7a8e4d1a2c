"""Run state machine and control loop."""

from .events import EventBroadcaster, EventSubscription
from .models import (
    LoopCommand,
    LoopEvent,
    LoopEventType,
    LoopSnapshot,
    LoopState,
    LoopStats,
)
from .prompt import PromptBuildError, PromptBuilder, build_prompt, prompt_builder
from .runner import LoopRunner
from .transitions import (
    InvalidTransitionError,
    LoopTrigger,
    is_allowed,
    next_state,
    transition_table,
    validate_command,
)

__all__ = [
    "EventBroadcaster",
    "EventSubscription",
    "InvalidTransitionError",
    "LoopCommand",
    "LoopEvent",
    "LoopEventType",
    "LoopRunner",
    "LoopSnapshot",
    "LoopState",
    "LoopStats",
    "LoopTrigger",
    "PromptBuildError",
    "PromptBuilder",
    "build_prompt",
    "is_allowed",
    "next_state",
    "prompt_builder",
    "transition_table",
    "validate_command",
]
