"""
Queue and result documents exchanged with the workflow UI through the vault.

Each request is one JSON file in a queue directory; each result is one JSON
file (or, for chat, one JSONL line) in a sibling results directory.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import Field

from spark_engine.models.workflow import CamelModel


GenerateStage = Literal["queued", "generating", "validating", "repairing", "layout", "writing"]
EditStage = Literal["queued", "processing", "validating", "repairing", "layout", "writing"]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class WorkflowGenerateRequest(CamelModel):
    request_id: str
    timestamp: int = 0
    source: str = "workflow-ui"
    target: str = "new-workflow"
    prompt: str
    allow_code: bool = False
    thread_id: str | None = None
    attempt: int | None = None
    clarifications: str | None = None
    model_override: str | None = None


class ChatMessage(CamelModel):
    role: str
    content: str


class WorkflowEditRequest(CamelModel):
    request_id: str
    workflow_id: str
    timestamp: int = 0
    source: str = "workflow-chat"
    # Kept as raw JSON: the model reply is validated, not the request snapshot.
    workflow: dict[str, Any]
    selected_node_id: str | None = None
    recent_runs: list[Any] = Field(default_factory=list)
    message: str
    conversation_history: list[ChatMessage] = Field(default_factory=list)
    thread_id: str | None = None


class WorkflowQueueItem(CamelModel):
    workflow_id: str
    run_id: str
    status: Literal["pending", "processing"] = "pending"
    input: Any = None
    timestamp: int


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ProcessingResult(CamelModel):
    request_id: str
    status: Literal["processing"] = "processing"
    stage: str
    progress: int | None = None
    message: str | None = None
    attempt: int | None = None
    max_attempts: int | None = None
    updated_at: int


class GenerateCompletedResult(CamelModel):
    request_id: str
    status: Literal["completed"] = "completed"
    workflow_id: str
    workflow_name: str | None = None


class EditCompletedResult(CamelModel):
    request_id: str
    status: Literal["completed"] = "completed"
    updated_workflow: dict[str, Any] | None = None
    response_message: str
    changes_description: str | None = None


class ClarificationResult(CamelModel):
    request_id: str
    status: Literal["needs_clarification"] = "needs_clarification"
    questions: list[str]


class FailedResult(CamelModel):
    request_id: str
    status: Literal["failed"] = "failed"
    error: str


QueueResult = Union[
    ProcessingResult,
    GenerateCompletedResult,
    EditCompletedResult,
    ClarificationResult,
    FailedResult,
]


class ChatResult(CamelModel):
    conversation_id: str
    queue_id: str
    timestamp: int
    agent: str
    content: str = ""
    error: str | None = None
    conversation_name: str | None = None
