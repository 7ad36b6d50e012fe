"""
Public entrypoint for loading clinic flow definitions.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from flow_engine.errors import FlowDefinitionError
from flow_engine.schema.models import FlowDefinition


def parse_flow_definition(payload: Any) -> FlowDefinition:
    """
    Validate a builder payload (nodes + edges) into a ``FlowDefinition``.

    Pydantic validation failures are re-raised as ``FlowDefinitionError`` so
    callers only deal with the engine's own error hierarchy.
    """

    if isinstance(payload, FlowDefinition):
        return payload
    try:
        return FlowDefinition.model_validate(payload)
    except ValidationError as exc:
        raise FlowDefinitionError(str(exc)) from exc


__all__ = ["FlowDefinition", "parse_flow_definition"]
