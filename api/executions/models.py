from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flow_engine.runtime.state import ExecutionState, ExecutionStatus, StepSnapshot


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str


class ExecutionStartRequest(BaseModel):
    flow_id: str = Field(min_length=1)
    patient_id: str = Field(min_length=1)


class StepCompleteRequest(BaseModel):
    response: Any = None
    expected_node: Optional[str] = Field(
        default=None,
        description="Node the client believes is current; rejected with 409 when the execution moved on.",
    )


class ConditionMatchResponse(BaseModel):
    index: int
    kind: str
    label: str
    id: Optional[str] = None
    handle: Optional[str] = None


class ExecutionResponse(BaseModel):
    id: str
    flow_id: str
    patient_id: str
    status: ExecutionStatus
    current_node: str
    current_step: Optional[StepSnapshot] = None
    progress: int
    total_steps: int
    completed_steps: int
    next_step_available_at: Optional[datetime] = None
    calculator_results: Dict[str, float] = Field(default_factory=dict)
    question_responses: Dict[str, Any] = Field(default_factory=dict)
    version: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: ExecutionState) -> "ExecutionResponse":
        return cls.model_validate(state.model_dump(exclude={"last_calculator_result"}))


class StepResultResponse(BaseModel):
    execution: ExecutionResponse
    completed_node: Optional[str] = None
    match: Optional[ConditionMatchResponse] = None
    delay_scheduled_at: Optional[datetime] = None


class DelayProcessResponse(BaseModel):
    claimed: int
    advanced: int
    failed: int
    task_ids: List[int] = Field(default_factory=list)
