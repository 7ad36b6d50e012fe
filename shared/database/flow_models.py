from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tortoise import fields, models

from flow_engine import parse_flow_definition
from flow_engine.runtime.state import (
    DelayTaskSpec,
    ExecutionState,
    ExecutionStatus,
    StepSnapshot,
)
from flow_engine.schema.models import FlowDefinition


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FlowRecord(models.Model):
    """Flow authored in the visual builder; ``definition`` holds its nodes and edges."""

    id = fields.CharField(max_length=64, primary_key=True)
    name = fields.CharField(max_length=255)
    description = fields.TextField(null=True)
    definition = fields.JSONField()
    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "flows"
        ordering = ("-updated_at", "id")

    def __str__(self) -> str:
        return f"FlowRecord<{self.id}:{self.name}>"

    def to_definition(self) -> FlowDefinition:
        definition = self.definition or {}
        return parse_flow_definition(
            {
                "id": self.id,
                "name": self.name,
                "nodes": definition.get("nodes", []),
                "edges": definition.get("edges", []),
                "is_active": self.is_active,
            }
        )


class FlowExecution(models.Model):
    """One patient's run through a flow. ``version`` guards concurrent writers."""

    id = fields.CharField(max_length=64, primary_key=True)
    flow = fields.ForeignKeyField("models.FlowRecord", related_name="executions")
    patient_id = fields.CharField(max_length=64, db_index=True)
    status = fields.CharEnumField(ExecutionStatus, max_length=20, default=ExecutionStatus.pending)
    current_node = fields.CharField(max_length=255)
    current_step = fields.JSONField(null=True)
    progress = fields.IntField(default=0)
    total_steps = fields.IntField(default=0)
    completed_steps = fields.IntField(default=0)
    next_step_available_at = fields.DatetimeField(null=True)
    calculator_results = fields.JSONField(default=dict)
    question_responses = fields.JSONField(default=dict)
    last_calculator_result = fields.FloatField(null=True)
    version = fields.IntField(default=0)
    started_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "flow_executions"
        ordering = ("-created_at", "id")
        indexes = (("patient_id", "status"),)

    def __str__(self) -> str:
        return f"FlowExecution<{self.id}:{self.status}>"

    def to_state(self) -> ExecutionState:
        return ExecutionState(
            id=self.id,
            flow_id=self.flow_id,
            patient_id=self.patient_id,
            status=self.status,
            current_node=self.current_node,
            current_step=StepSnapshot.model_validate(self.current_step) if self.current_step else None,
            progress=self.progress,
            total_steps=self.total_steps,
            completed_steps=self.completed_steps,
            next_step_available_at=_aware(self.next_step_available_at),
            calculator_results=dict(self.calculator_results or {}),
            question_responses=dict(self.question_responses or {}),
            last_calculator_result=self.last_calculator_result,
            version=self.version,
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
        )

    @staticmethod
    def state_fields(state: ExecutionState) -> Dict[str, Any]:
        """Column values for ``state``, excluding identity and ``version``."""
        return {
            "status": state.status,
            "current_node": state.current_node,
            "current_step": state.current_step.model_dump(mode="json") if state.current_step else None,
            "progress": state.progress,
            "total_steps": state.total_steps,
            "completed_steps": state.completed_steps,
            "next_step_available_at": state.next_step_available_at,
            "calculator_results": state.calculator_results,
            "question_responses": state.question_responses,
            "last_calculator_result": state.last_calculator_result,
            "started_at": state.started_at,
            "completed_at": state.completed_at,
        }


class DelayTask(models.Model):
    """Pending resume of an execution parked on a delay node."""

    id = fields.IntField(primary_key=True)
    execution = fields.ForeignKeyField("models.FlowExecution", related_name="delay_tasks")
    patient_id = fields.CharField(max_length=64)
    delay_node_id = fields.CharField(max_length=255)
    next_node_id = fields.CharField(max_length=255, null=True)
    next_node_type = fields.CharField(max_length=50, null=True)
    form_name = fields.CharField(max_length=255, null=True)
    trigger_at = fields.DatetimeField()
    processed = fields.BooleanField(default=False)
    processed_at = fields.DatetimeField(null=True)
    processing_instance_id = fields.CharField(max_length=64, null=True)
    error = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "delay_tasks"
        ordering = ("trigger_at", "id")
        indexes = (("processed", "trigger_at"),)

    def __str__(self) -> str:
        return f"DelayTask<{self.id}:{self.execution_id}@{self.trigger_at}>"

    @classmethod
    def fields_from_spec(cls, spec: DelayTaskSpec) -> Dict[str, Any]:
        return {
            "execution_id": spec.execution_id,
            "patient_id": spec.patient_id,
            "delay_node_id": spec.delay_node_id,
            "next_node_id": spec.next_node_id,
            "next_node_type": spec.next_node_type,
            "form_name": spec.form_name,
            "trigger_at": spec.trigger_at,
        }


__all__ = ["DelayTask", "FlowExecution", "FlowRecord"]
