"""
Workflow models: the persisted graph definition and run records.

Field names are snake_case in Python and camelCase on the wire (the JSON
files shared with the workflow UI).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


NodeType = Literal["prompt", "code", "condition", "file"]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]
RunStatus = Literal["running", "completed", "failed"]
Number = Union[int, float]

NODE_TYPES: tuple[str, ...] = ("prompt", "code", "condition", "file")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------


class Position(CamelModel):
    x: Number = 0
    y: Number = 0


class PromptNodeData(CamelModel):
    type: Literal["prompt"] = "prompt"
    label: str
    description: str | None = None
    prompt: str
    structured_output: bool | None = None
    output_schema: str | None = None


class CodeNodeData(CamelModel):
    type: Literal["code"] = "code"
    label: str
    description: str | None = None
    code: str


class ConditionNodeData(CamelModel):
    type: Literal["condition"] = "condition"
    label: str
    description: str | None = None
    expression: str
    max_cycles: Number


class FileNodeData(CamelModel):
    type: Literal["file"] = "file"
    label: str
    description: str | None = None
    path: str
    last_modified: Number = 0
    file_size: Number = 0


NodeData = Annotated[
    Union[PromptNodeData, CodeNodeData, ConditionNodeData, FileNodeData],
    Field(discriminator="type"),
]


class WorkflowNode(CamelModel):
    id: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    data: NodeData


class WorkflowEdge(CamelModel):
    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    label: str | None = None


class WorkflowDefinition(CamelModel):
    id: str
    name: str
    description: str | None = None
    version: Literal[1] = 1
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    created: str
    updated: str

    def node_by_id(self) -> dict[str, WorkflowNode]:
        return {n.id: n for n in self.nodes}

    def incoming(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def entry_node_ids(self) -> list[str]:
        targets = {e.target for e in self.edges}
        return [n.id for n in self.nodes if n.id not in targets]


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class StepResult(CamelModel):
    node_id: str
    status: StepStatus
    input: Any = None
    output: Any = None
    error: str | None = None
    start_time: int
    end_time: int | None = None
    cycle_count: int | None = None


class WorkflowRun(CamelModel):
    id: str
    workflow_id: str
    status: RunStatus
    input: Any = None
    output: Any = None
    error: str | None = None
    step_results: list[StepResult] = Field(default_factory=list)
    start_time: int
    end_time: int | None = None
    total_cycles: int = 0


# ---------------------------------------------------------------------------
# Prompt-runner request types
# ---------------------------------------------------------------------------


class FileAttachment(CamelModel):
    path: str
    content: str


class FileTarget(CamelModel):
    node_id: str
    path: str
    label: str


class LabeledOutput(CamelModel):
    node_id: str
    label: str
    output: Any = None


class WorkflowInputContext(CamelModel):
    primary: LabeledOutput | None = None
    context: list[LabeledOutput] = Field(default_factory=list)
    workflow_input: Any = None
    attachments: list[FileAttachment] | None = None


class WorkflowPromptRequest(CamelModel):
    agent_id: str | None = None
    workflow_id: str
    run_id: str
    node_id: str
    step_label: str
    step_description: str | None = None
    input_context: WorkflowInputContext
    task: str
    structured_output: bool | None = None
    output_schema: str | None = None
    file_targets: list[FileTarget] | None = None


@dataclass
class ExecutionContext:
    """Run-scoped state owned by the executor.

    ``step_outputs`` is ordered by recency: re-recording a node's output moves
    it to the end.
    """

    workflow_id: str
    run_id: str
    input: Any = None
    step_outputs: dict[str, Any] = field(default_factory=dict)
    visit_counts: dict[str, int] = field(default_factory=dict)
    total_cycles: int = 0

    def record_output(self, node_id: str, value: Any) -> None:
        self.step_outputs.pop(node_id, None)
        self.step_outputs[node_id] = value

    def recency(self, node_id: str) -> int:
        """Position of a node's output in recency order, -1 if it has none."""
        for idx, key in enumerate(self.step_outputs):
            if key == node_id:
                return idx
        return -1
