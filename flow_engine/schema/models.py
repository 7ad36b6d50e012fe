"""
Pydantic models describing a clinic flow graph.

Flows are authored in the visual builder and stored as the builder's JSON, so
payload fields accept the builder's keys (``nomenclatura``, ``operacao``,
``condicoesEspeciais``...) as aliases while exposing snake_case attributes to
the engine. Unknown UI keys (positions, selection state) are ignored.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from flow_engine.errors import AmbiguousEdgeError, FlowDefinitionError


class FlowModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )


class NodeType(str, Enum):
    start = "start"
    end = "end"
    number = "number"
    question = "question"
    calculator = "calculator"
    simple_calculator = "simpleCalculator"
    conditions = "conditions"
    special_conditions = "specialConditions"
    delay = "delay"
    form_start = "formStart"
    form_end = "formEnd"


BRANCHING_NODE_TYPES = frozenset(
    {NodeType.conditions.value, NodeType.special_conditions.value, NodeType.question.value}
)


# -----------------------------
# Node payloads
# -----------------------------
class NodeData(FlowModel):
    label: Optional[str] = None
    title: Optional[str] = Field(default=None, alias="titulo")
    description: Optional[str] = Field(default=None, alias="descricao")


class NumberType(str, Enum):
    integer = "inteiro"
    decimal = "decimal"


class NumberData(NodeData):
    name: str = Field(min_length=1, alias="nomenclatura")
    number_type: NumberType = Field(default=NumberType.decimal, alias="tipoNumero")
    prompt: Optional[str] = Field(default=None, alias="pergunta")
    prefix: Optional[str] = Field(default=None, alias="prefixo")
    suffix: Optional[str] = Field(default=None, alias="sufixo")

    @field_validator("number_type", mode="before")
    @classmethod
    def _accept_english_names(cls, value: Any) -> Any:
        if value == "integer":
            return NumberType.integer
        return value


class CalculatorField(FlowModel):
    id: Optional[str] = None
    name: str = Field(min_length=1, alias="nomenclatura")
    prompt: Optional[str] = Field(default=None, alias="pergunta")
    kind: str = Field(default="decimal", alias="tipo")


class CalculatorData(NodeData):
    operation: str = Field(min_length=1, validation_alias=AliasChoices("operacao", "formula", "operation"))
    referenced_fields: List[str] = Field(default_factory=list, alias="camposReferenciados")
    result_label: Optional[str] = Field(default=None, alias="resultLabel")
    name: Optional[str] = Field(default=None, alias="nomenclatura")
    input_fields: List[CalculatorField] = Field(default_factory=list, alias="calculatorFields")


class AnswerType(str, Enum):
    single = "escolha-unica"
    multiple = "multipla-escolha"


class QuestionData(NodeData):
    prompt: Optional[str] = Field(default=None, alias="pergunta")
    options: List[str] = Field(default_factory=list, alias="opcoes")
    answer_type: AnswerType = Field(default=AnswerType.single, alias="tipoResposta")
    name: Optional[str] = Field(default=None, alias="nomenclatura")


class LegacyOperator(str, Enum):
    equal = "igual"
    greater = "maior"
    less = "menor"
    greater_equal = "maior_igual"
    less_equal = "menor_igual"
    not_equal = "diferente"
    between = "entre"


class LegacyCondition(FlowModel):
    id: Optional[str] = None
    field: Optional[str] = Field(default=None, alias="campo")
    operator: LegacyOperator = Field(alias="operador")
    value: Any = Field(default=None, alias="valor")
    value_end: Any = Field(default=None, alias="valorFinal")
    label: str = ""


class SourceType(str, Enum):
    calculation = "calculation"
    question = "question"


class RuleOperator(str, Enum):
    equal = "equal"
    not_equal = "not_equal"
    greater = "greater"
    less = "less"
    greater_equal = "greater_equal"
    less_equal = "less_equal"
    between = "between"
    contains = "contains"
    in_ = "in"


_RULE_OPERATOR_ALIASES = {
    "eq": "equal",
    "ne": "not_equal",
    "gt": "greater",
    "lt": "less",
    "gte": "greater_equal",
    "lte": "less_equal",
}


class CompositeRule(FlowModel):
    id: Optional[str] = None
    source_type: SourceType = Field(alias="sourceType")
    source_field: str = Field(min_length=1, alias="sourceField")
    operator: RuleOperator
    value: Any = None
    value_end: Any = Field(default=None, alias="valueEnd")

    @field_validator("operator", mode="before")
    @classmethod
    def _expand_short_operators(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _RULE_OPERATOR_ALIASES.get(value, value)
        return value


class LogicOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class CompositeCondition(FlowModel):
    id: Optional[str] = None
    label: str = ""
    logic: LogicOperator = LogicOperator.AND
    rules: List[CompositeRule] = Field(default_factory=list)

    @field_validator("logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value


class ConditionsData(NodeData):
    conditions: List[LegacyCondition] = Field(default_factory=list)
    composite_conditions: List[CompositeCondition] = Field(default_factory=list, alias="compositeConditions")


class SpecialKind(str, Enum):
    numeric = "numerico"
    question = "pergunta"


class SpecialOperator(str, Enum):
    equal = "igual"
    greater = "maior"
    less = "menor"
    greater_equal = "maior_igual"
    less_equal = "menor_igual"
    not_equal = "diferente"
    between = "entre"
    contains = "contem"


class SpecialCondition(FlowModel):
    id: Optional[str] = None
    kind: SpecialKind = Field(alias="tipo")
    field: str = Field(alias="campo")
    operator: SpecialOperator = Field(alias="operador")
    value: Any = Field(default=None, alias="valor")
    value_end: Any = Field(default=None, alias="valorFinal")
    label: str = ""


class SpecialConditionsData(NodeData):
    conditions: List[SpecialCondition] = Field(default_factory=list, alias="condicoesEspeciais")


class DelayUnit(str, Enum):
    minutes = "minutos"
    hours = "horas"
    days = "dias"


class DelayData(NodeData):
    amount: int = Field(default=1, alias="quantidade")
    unit: DelayUnit = Field(default=DelayUnit.days, alias="tipoIntervalo")

    @field_validator("amount", mode="before")
    @classmethod
    def _default_amount(cls, value: Any) -> Any:
        # The builder stores an empty field as 0/None; both mean one unit.
        if not value:
            return 1
        try:
            amount = int(value)
        except (TypeError, ValueError):
            return value
        return max(amount, 1)

    def duration(self) -> timedelta:
        if self.unit == DelayUnit.minutes:
            return timedelta(minutes=self.amount)
        if self.unit == DelayUnit.hours:
            return timedelta(hours=self.amount)
        return timedelta(days=self.amount)


class FormData(NodeData):
    form_id: Optional[str] = Field(default=None, alias="formId")
    form_name: Optional[str] = Field(default=None, alias="formName")


# -----------------------------
# Nodes
# -----------------------------
class NodeBase(FlowModel):
    id: str = Field(min_length=1)
    type: str

    def display_title(self) -> str:
        data = getattr(self, "data", None)
        for candidate in (
            getattr(data, "title", None),
            getattr(data, "label", None),
            getattr(data, "prompt", None),
        ):
            if candidate:
                return candidate
        return self.type


class StartNode(NodeBase):
    type: Literal["start"] = "start"
    data: NodeData = Field(default_factory=NodeData)


class EndNode(NodeBase):
    type: Literal["end"] = "end"
    data: NodeData = Field(default_factory=NodeData)


class NumberNode(NodeBase):
    type: Literal["number"] = "number"
    data: NumberData


class QuestionNode(NodeBase):
    type: Literal["question"] = "question"
    data: QuestionData = Field(default_factory=QuestionData)

    @property
    def response_key(self) -> str:
        return self.data.name or self.id


class CalculatorNode(NodeBase):
    type: Literal["calculator", "simpleCalculator"] = "simpleCalculator"
    data: CalculatorData

    @property
    def result_key(self) -> str:
        return self.data.name or self.data.result_label or self.id


class ConditionsNode(NodeBase):
    type: Literal["conditions"] = "conditions"
    data: ConditionsData = Field(default_factory=ConditionsData)


class SpecialConditionsNode(NodeBase):
    type: Literal["specialConditions"] = "specialConditions"
    data: SpecialConditionsData = Field(default_factory=SpecialConditionsData)


class DelayNode(NodeBase):
    type: Literal["delay"] = "delay"
    data: DelayData = Field(default_factory=DelayData)


class FormStartNode(NodeBase):
    type: Literal["formStart"] = "formStart"
    data: FormData = Field(default_factory=FormData)


class FormEndNode(NodeBase):
    type: Literal["formEnd"] = "formEnd"
    data: FormData = Field(default_factory=FormData)


Node = Annotated[
    Union[
        StartNode,
        EndNode,
        NumberNode,
        QuestionNode,
        CalculatorNode,
        ConditionsNode,
        SpecialConditionsNode,
        DelayNode,
        FormStartNode,
        FormEndNode,
    ],
    Field(discriminator="type"),
]


class Edge(FlowModel):
    id: Optional[str] = None
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    label: Optional[str] = None


# -----------------------------
# Flow
# -----------------------------
class FlowDefinition(FlowModel):
    id: str
    name: str = Field(default="", validation_alias=AliasChoices("name", "nome"))
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive", "ativo"))

    @model_validator(mode="after")
    def _check_structure(self) -> "FlowDefinition":
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise FlowDefinitionError(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        starts = [node for node in self.nodes if node.type == NodeType.start.value]
        if len(starts) != 1:
            raise FlowDefinitionError(f"Flow must have exactly one start node, found {len(starts)}")

        start_id = starts[0].id
        for edge in self.edges:
            if edge.target == start_id:
                raise FlowDefinitionError("The start node cannot be the target of an edge")
        return self

    def node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return next((node for node in self.nodes if node.id == node_id), None)

    def start_node(self) -> StartNode:
        return next(node for node in self.nodes if node.type == NodeType.start.value)

    def step_count(self) -> int:
        """Number of steps a patient walks through (every node but ``start``)."""
        return max(len(self.nodes) - 1, 1)

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def outgoing_edge(self, node_id: str, handle: Optional[str] = None) -> Optional[Edge]:
        """
        Return the edge leaving ``node_id``.

        With ``handle`` the edge carrying that ``sourceHandle`` is returned (or
        None). Without it the node must have at most one outgoing edge.
        """
        edges = self.outgoing_edges(node_id)
        if handle is not None:
            return next((edge for edge in edges if edge.source_handle == handle), None)
        if not edges:
            return None
        if len(edges) > 1:
            raise AmbiguousEdgeError(
                f"Node '{node_id}' has {len(edges)} outgoing edges but is not a branching node"
            )
        return edges[0]

    def default_edge(self, node_id: str) -> Optional[Edge]:
        """Single handle-less edge of a branching node, used when no handle matches."""
        edges = [edge for edge in self.outgoing_edges(node_id) if not edge.source_handle]
        if not edges:
            return None
        if len(edges) > 1:
            raise AmbiguousEdgeError(f"Node '{node_id}' has {len(edges)} default edges")
        return edges[0]


__all__ = [
    "AnswerType",
    "BRANCHING_NODE_TYPES",
    "CalculatorNode",
    "CompositeCondition",
    "CompositeRule",
    "ConditionsNode",
    "DelayNode",
    "DelayUnit",
    "Edge",
    "EndNode",
    "FlowDefinition",
    "FormEndNode",
    "FormStartNode",
    "LegacyCondition",
    "LegacyOperator",
    "LogicOperator",
    "Node",
    "NodeType",
    "NumberNode",
    "NumberType",
    "QuestionNode",
    "RuleOperator",
    "SourceType",
    "SpecialCondition",
    "SpecialConditionsNode",
    "SpecialKind",
    "SpecialOperator",
    "StartNode",
]
