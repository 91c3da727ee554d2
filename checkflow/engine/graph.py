"""
Workflow Definition Models.

A workflow is a directed graph: nodes are steps dispatched to executors by
their ``type``, edges are transitions between nodes that may carry a
condition evaluated against the source node's result.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_validator
from enum import Enum


# Node types treated as entry points even if they have incoming edges
ENTRY_NODE_TYPES = frozenset({"start"})

# Node types whose completion ends the workflow
EXIT_NODE_TYPES = frozenset({"end"})


class ErrorPolicy(str, Enum):
    """What to do once a node has exhausted its retries."""
    FAIL = "fail"          # Fail the whole workflow (the only implemented policy)
    SKIP = "skip"          # Reserved
    FALLBACK = "fallback"  # Reserved


class ConditionType(str, Enum):
    """Supported edge condition types."""
    ALWAYS = "always"
    NEVER = "never"
    EXPRESSION = "expression"
    EQUALS = "equals"
    CONTAINS = "contains"
    EXISTS = "exists"
    BRANCH = "branch"


class NodeExecutionConfig(BaseModel):
    """Timeout and retry envelope for a single node."""

    timeout_ms: Optional[int] = Field(None, ge=0, description="Per-attempt timeout")
    retries: int = Field(0, ge=0, description="Additional attempts after the first")
    retry_delay_ms: int = Field(1000, ge=0, description="Fixed delay between attempts")
    on_error: ErrorPolicy = ErrorPolicy.FAIL


class NodeDefinition(BaseModel):
    """
    A node in the workflow graph.

    Attributes:
        id: Unique identifier within the definition
        type: Dispatch key for the executor registry
        name: Optional display name (plain or localized mapping)
        config: Free-form executor parameters
        execution: Timeout / retry envelope
        timeout_ms: Legacy node-level timeout, used when execution.timeout_ms is unset
    """

    id: str
    type: str
    name: Optional[Union[str, Dict[str, str]]] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    execution: NodeExecutionConfig = Field(default_factory=NodeExecutionConfig)
    timeout_ms: Optional[int] = Field(None, ge=0)

    @field_validator("id", "type")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class EdgeCondition(BaseModel):
    """A condition gating an edge."""

    type: ConditionType = ConditionType.ALWAYS
    value: Any = None
    field: Optional[str] = None


class EdgeDefinition(BaseModel):
    """A directed transition from ``source`` to ``target``."""

    source: str
    target: str
    condition: Optional[EdgeCondition] = None


class WorkflowConfig(BaseModel):
    """Run-wide limits."""

    allow_cycles: bool = False
    max_iterations_per_node: Optional[int] = Field(None, ge=1)
    max_execution_time_ms: Optional[int] = Field(None, ge=1)


class WorkflowDefinition(BaseModel):
    """
    A complete workflow graph.

    Definitions are treated as immutable once a run starts; the engine keeps
    its own copy per execution.
    """

    id: str
    name: Optional[Union[str, Dict[str, str]]] = None
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        """Get a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def incoming_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == node_id]

    def display_name(self, language: str = "en") -> str:
        """Resolve the (possibly localized) workflow name."""
        if isinstance(self.name, str) and self.name:
            return self.name
        if isinstance(self.name, dict) and self.name:
            return self.name.get(language) or self.name.get("en") or next(iter(self.name.values()))
        return self.id

    def __repr__(self) -> str:
        return (
            f"WorkflowDefinition(id='{self.id}', nodes={self.node_ids()}, "
            f"edges={len(self.edges)})"
        )
