"""
Prompt step runner.

Builds a WorkflowPromptRequest from the node and its input context and hands
it to the command executor, which owns agent personas and the provider call.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from spark_engine.llm.command_executor import CommandExecutor
from spark_engine.models.workflow import (
    ExecutionContext,
    FileTarget,
    PromptNodeData,
    WorkflowInputContext,
    WorkflowNode,
    WorkflowPromptRequest,
)
from spark_engine.services.json_extraction import parse_structured_output

logger = logging.getLogger(__name__)

# @agent at the start or after whitespace; "@name.ext" style tokens are not agents.
AGENT_MENTION_RE = re.compile(r"(?:^|\s)@([\w-]+)(?![\w-]|\.\w)")


def extract_agent(prompt: str) -> tuple[Optional[str], str]:
    """Return the first @agent mention and the prompt with it removed."""
    match = AGENT_MENTION_RE.search(prompt)
    if not match:
        return None, prompt
    clean = (prompt[: match.start()] + " " + prompt[match.end():]).strip()
    return match.group(1), clean


def format_output(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    return json.dumps(value, indent=2, default=str)


class PromptRunner:
    def __init__(self, command_executor: CommandExecutor):
        self.command_executor = command_executor

    async def run(
        self,
        node: WorkflowNode,
        input_context: WorkflowInputContext,
        context: ExecutionContext,
        file_targets: Optional[list[FileTarget]] = None,
    ) -> Any:
        data = node.data
        assert isinstance(data, PromptNodeData)

        agent_id, task = extract_agent(data.prompt)
        logger.debug(
            "Running prompt step %s (agent=%s, structured=%s, context=%d)",
            node.id,
            agent_id or "none",
            bool(data.structured_output),
            len(input_context.context),
        )

        request = WorkflowPromptRequest(
            agent_id=agent_id,
            workflow_id=context.workflow_id,
            run_id=context.run_id,
            node_id=node.id,
            step_label=data.label or "Unnamed step",
            step_description=data.description,
            input_context=input_context,
            task=task,
            structured_output=data.structured_output,
            output_schema=data.output_schema,
            file_targets=file_targets or None,
        )

        result = await self.command_executor.execute_workflow_prompt(request)

        if data.structured_output and result:
            return parse_structured_output(result)
        return result
