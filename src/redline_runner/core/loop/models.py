from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    REBOOTING = "rebooting"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"

    def is_terminal(self) -> bool:
        return self in {LoopState.COMPLETED, LoopState.ERROR, LoopState.STOPPED}

    def can_start(self) -> bool:
        return self in {LoopState.IDLE, LoopState.STOPPED, LoopState.ERROR}

    def is_active(self) -> bool:
        return self in {LoopState.RUNNING, LoopState.PAUSED, LoopState.REBOOTING}


class LoopCommand(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    FORCE_REBOOT = "force_reboot"
    SKIP_ITERATION = "skip_iteration"


class LoopEventType(str, Enum):
    STATE_CHANGED = "state_changed"
    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"
    ITERATION_STARTED = "iteration_started"
    ITERATION_SUCCEEDED = "iteration_succeeded"
    ITERATION_FAILED = "iteration_failed"
    ITERATION_SKIPPED = "iteration_skipped"
    REDLINE_CHECKED = "redline_checked"
    REBOOT_STARTED = "reboot_started"
    REBOOT_FINISHED = "reboot_finished"
    STOP_EVALUATED = "stop_evaluated"
    COMMAND_ACCEPTED = "command_accepted"
    COMMAND_REJECTED = "command_rejected"
    HOOK_VETO = "hook_veto"


class LoopEvent(BaseModel):
    seq: int
    run_id: Optional[str] = None
    event_type: LoopEventType
    timestamp: str
    data: Dict[str, Any] = Field(default_factory=dict)


class LoopStats(BaseModel):
    iterations: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    consecutive_failures: int = 0
    no_progress_streak: int = 0
    reboots: int = 0
    busy_seconds: float = 0.0
    started_at: Optional[str] = None
    last_iteration_at: Optional[str] = None


class LoopSnapshot(BaseModel):
    """Persistable view of a run; `LoopRunner.restore` accepts the same shape."""

    state: LoopState = LoopState.IDLE
    run_id: Optional[str] = None
    iteration: int = 0
    session_id: Optional[str] = None
    stats: LoopStats = Field(default_factory=LoopStats)
    condition_progress: float = 0.0
    stop_reason: Optional[str] = None
    last_output: Optional[str] = None
    updated_at: Optional[str] = None
