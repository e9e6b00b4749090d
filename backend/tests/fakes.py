"""
Scripted stand-ins for the AI provider and command executor, plus small
builders for workflow graphs used across the test modules.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from spark_engine.llm.provider import CompletionResult
from spark_engine.models.workflow import WorkflowDefinition, WorkflowPromptRequest

TIMESTAMP = "2026-01-01T00:00:00.000Z"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Returns the scripted replies in order; dicts are sent as JSON text."""

    def __init__(self, replies: list[Any]):
        self.replies = list(replies)
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> CompletionResult:
        self.prompts.append(prompt)
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return CompletionResult(content=reply)


class ScriptedProviderFactory:
    def __init__(self, replies: list[Any]):
        self.provider = ScriptedProvider(replies)
        self.model_overrides: list[Optional[str]] = []

    def create(self, model_override: Optional[str] = None) -> ScriptedProvider:
        self.model_overrides.append(model_override)
        return self.provider


class RecordingCommandExecutor:
    """Answers prompt steps per node id and records every call."""

    def __init__(
        self,
        replies: Optional[dict[str, Union[str, Callable[[WorkflowPromptRequest], str]]]] = None,
        chat_reply: str = "Hello from the agent",
        chat_error: Optional[Exception] = None,
    ):
        self.replies = replies or {}
        self.chat_reply = chat_reply
        self.chat_error = chat_error
        self.requests: list[WorkflowPromptRequest] = []
        self.chat_calls: list[dict[str, Any]] = []

    async def execute_workflow_prompt(self, request: WorkflowPromptRequest) -> dict[str, Any]:
        self.requests.append(request)
        reply = self.replies.get(request.node_id, f"output of {request.node_id}")
        if callable(reply):
            reply = reply(request)
        return {"content": reply}

    async def execute_and_return(self, prompt: str, agent: str, context_path: Optional[str] = None) -> str:
        self.chat_calls.append({"prompt": prompt, "agent": agent, "context_path": context_path})
        if self.chat_error is not None:
            raise self.chat_error
        return self.chat_reply

    def node_ids(self) -> list[str]:
        return [r.node_id for r in self.requests]


# ---------------------------------------------------------------------------
# Graph builders (camelCase wire format)
# ---------------------------------------------------------------------------


def prompt_node(node_id: str, prompt: str = "Do the thing", x: int = 0, y: int = 0, **data: Any) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": "prompt",
        "position": {"x": x, "y": y},
        "data": {"type": "prompt", "label": node_id, "prompt": prompt, **data},
    }


def code_node(node_id: str, code: str, x: int = 0, y: int = 0) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": "code",
        "position": {"x": x, "y": y},
        "data": {"type": "code", "label": node_id, "code": code},
    }


def condition_node(node_id: str, expression: str, max_cycles: int = 10, x: int = 0, y: int = 0) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": "condition",
        "position": {"x": x, "y": y},
        "data": {"type": "condition", "label": node_id, "expression": expression, "maxCycles": max_cycles},
    }


def file_node(node_id: str, path: str, x: int = 0, y: int = 0) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": "file",
        "position": {"x": x, "y": y},
        "data": {"type": "file", "label": node_id, "path": path, "lastModified": 0, "fileSize": 0},
    }


def edge(source: str, target: str, handle: Optional[str] = None, edge_id: Optional[str] = None) -> dict[str, Any]:
    raw: dict[str, Any] = {"id": edge_id or f"e-{source}-{target}", "source": source, "target": target}
    if handle is not None:
        raw["sourceHandle"] = handle
    return raw


def workflow_dict(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    workflow_id: str = "wf_test",
    name: str = "Test workflow",
) -> dict[str, Any]:
    return {
        "id": workflow_id,
        "name": name,
        "version": 1,
        "nodes": nodes,
        "edges": edges,
        "settings": {},
        "created": TIMESTAMP,
        "updated": TIMESTAMP,
    }


def make_workflow(nodes: list[dict[str, Any]], edges: list[dict[str, Any]], **kwargs: Any) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(workflow_dict(nodes, edges, **kwargs))
