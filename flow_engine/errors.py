"""
Shared exception hierarchy for the flow execution engine.
"""


class FlowEngineError(Exception):
    """Base class for all engine related errors."""


class FlowDefinitionError(FlowEngineError):
    """Raised when a flow graph fails structural checks."""


class MissingEdgeError(FlowEngineError):
    """Raised when an edge points at a node that does not exist in the flow."""


class AmbiguousEdgeError(FlowEngineError):
    """Raised when a non-branching node has more than one outgoing edge."""


class EvaluationError(FlowEngineError):
    """Raised when a formula cannot be evaluated (missing value, bad syntax, non-finite result)."""


class InvalidResponseError(FlowEngineError):
    """Raised when the response submitted for a step does not fit the node."""


class ConditionUnresolvedError(FlowEngineError):
    """Raised in strict mode when a branching node matches no rule and has no default edge."""


class InvalidTransitionError(FlowEngineError):
    """Raised when an operation is not allowed from the execution's current status."""


class ExecutionParkedError(InvalidTransitionError):
    """Raised when a live step completion targets an execution waiting on a delay."""


class FlowInactiveError(FlowEngineError):
    """Raised when starting an execution for a flow that is switched off."""


class StaleExecutionError(FlowEngineError):
    """Raised when the execution moved since it was read; reload and retry."""
