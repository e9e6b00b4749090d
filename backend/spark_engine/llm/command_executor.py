"""
Command executor: turns workflow prompt steps and chat messages into
provider completions.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from spark_engine.llm.provider import ProviderFactory, complete_text
from spark_engine.models.workflow import LabeledOutput, WorkflowPromptRequest

logger = logging.getLogger(__name__)


class CommandExecutor(Protocol):
    async def execute_workflow_prompt(self, request: WorkflowPromptRequest) -> dict[str, Any]:
        ...

    async def execute_and_return(self, prompt: str, agent: str, context_path: Optional[str] = None) -> str:
        ...


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str)


def _render_labeled(item: LabeledOutput) -> str:
    return f"### {item.label} ({item.node_id})\n{_render_value(item.output)}"


def build_workflow_step_prompt(request: WorkflowPromptRequest) -> str:
    """Lay a workflow prompt step out as a single completion prompt."""
    ctx = request.input_context
    sections: list[str] = []

    header = f"# Workflow step: {request.step_label}"
    if request.step_description:
        header += f"\n{request.step_description}"
    sections.append(header)

    if ctx.primary is not None:
        sections.append("## Input\n" + _render_labeled(ctx.primary))
    elif ctx.workflow_input is not None:
        sections.append("## Input\n" + _render_value(ctx.workflow_input))

    if ctx.context:
        sections.append("## Context\n" + "\n\n".join(_render_labeled(c) for c in ctx.context))

    if ctx.attachments:
        files = "\n\n".join(f"### {a.path}\n```\n{a.content}\n```" for a in ctx.attachments)
        sections.append("## Attachments\n" + files)

    sections.append("## Task\n" + request.task)

    if request.structured_output:
        fmt = "Respond with JSON only. No commentary, no markdown fences."
        if request.output_schema:
            fmt += f"\n\nRequired Output Format:\n{request.output_schema}"
        sections.append("## Output Format\n" + fmt)

    if request.file_targets:
        targets = "\n".join(f"- {t.path} ({t.label})" for t in request.file_targets)
        sections.append(
            "## Output Destination\n"
            "Your response will be written to these files; format it for the file type:\n" + targets
        )

    return "\n\n".join(sections)


class ProviderCommandExecutor:
    """CommandExecutor that sends every command through the configured provider."""

    def __init__(self, provider_factory: ProviderFactory, vault_path: Path):
        self.provider_factory = provider_factory
        self.vault_path = Path(vault_path).resolve()

    async def execute_workflow_prompt(self, request: WorkflowPromptRequest) -> dict[str, Any]:
        prompt = build_workflow_step_prompt(request)
        logger.info(
            "Executing workflow prompt step %s (workflow=%s, run=%s, agent=%s)",
            request.node_id,
            request.workflow_id,
            request.run_id,
            request.agent_id or "default",
        )
        provider = self.provider_factory.create()
        content = await complete_text(provider, prompt)
        return {"content": content}

    async def execute_and_return(self, prompt: str, agent: str, context_path: Optional[str] = None) -> str:
        full_prompt = f"You are {agent}, an assistant in the user's vault.\n\n{prompt}"
        if context_path:
            note = self._read_context_note(context_path)
            if note is not None:
                full_prompt = f"Active file ({context_path}):\n{note}\n\n{full_prompt}"
        provider = self.provider_factory.create()
        return await complete_text(provider, full_prompt)

    def _read_context_note(self, context_path: str) -> Optional[str]:
        path = (self.vault_path / context_path).resolve()
        if not path.is_relative_to(self.vault_path) or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Could not read context file %s: %s", context_path, e)
            return None
