"""
Execution records and the outcome of a state transition.

``ExecutionState`` is the engine's view of one ``flow_executions`` row.
Transition functions never mutate the state they receive; they hand back a
``Transition`` with a new state plus the side effects the caller must apply
(persist a delay task, send notifications).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flow_engine.conditions.evaluator import Bindings, ConditionMatch


class ExecutionStatus(str, Enum):
    pending = "pending"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"


ACTIVE_STATUSES = frozenset({ExecutionStatus.pending, ExecutionStatus.in_progress})


class StepSnapshot(BaseModel):
    """What the patient-facing UI shows for the node being awaited."""

    node_id: str
    type: str
    title: str
    available_at: Optional[datetime] = None


class ExecutionState(BaseModel):
    id: str
    flow_id: str
    patient_id: str
    status: ExecutionStatus = ExecutionStatus.pending
    current_node: str
    current_step: Optional[StepSnapshot] = None
    progress: int = 0
    total_steps: int = 0
    completed_steps: int = 0
    next_step_available_at: Optional[datetime] = None
    calculator_results: Dict[str, float] = Field(default_factory=dict)
    question_responses: Dict[str, Any] = Field(default_factory=dict)
    last_calculator_result: Optional[float] = None
    version: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_parked(self) -> bool:
        return self.next_step_available_at is not None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def bindings(self) -> Bindings:
        return Bindings(
            calculator_results=dict(self.calculator_results),
            question_responses=dict(self.question_responses),
            last_calculator_result=self.last_calculator_result,
        )


@dataclass(frozen=True)
class DelayTaskSpec:
    """A delay task the caller must persist so the scheduler can resume the run."""

    execution_id: str
    patient_id: str
    trigger_at: datetime
    delay_node_id: str
    next_node_id: Optional[str]
    next_node_type: Optional[str]
    form_name: Optional[str] = None


@dataclass(frozen=True)
class NotificationRequest:
    """An outbound message triggered by entering a form hand-off node."""

    event: str
    node_id: str
    patient_id: str
    execution_id: str
    form_name: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "patientId": self.patient_id,
            "formName": self.form_name,
            "executionId": self.execution_id,
        }


@dataclass
class Transition:
    execution: ExecutionState
    changed: bool = True
    delay_task: Optional[DelayTaskSpec] = None
    notifications: List[NotificationRequest] = field(default_factory=list)
    match: Optional[ConditionMatch] = None
    completed_node: Optional[str] = None


__all__ = [
    "ACTIVE_STATUSES",
    "DelayTaskSpec",
    "ExecutionState",
    "ExecutionStatus",
    "NotificationRequest",
    "StepSnapshot",
    "Transition",
]
