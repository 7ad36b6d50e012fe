from flow_engine.runtime.state import (
    DelayTaskSpec,
    ExecutionState,
    ExecutionStatus,
    NotificationRequest,
    Transition,
)
from flow_engine.runtime.transitions import (
    advance_after_delay,
    cancel_execution,
    complete_step,
    start_execution,
)

__all__ = [
    "DelayTaskSpec",
    "ExecutionState",
    "ExecutionStatus",
    "NotificationRequest",
    "Transition",
    "advance_after_delay",
    "cancel_execution",
    "complete_step",
    "start_execution",
]
