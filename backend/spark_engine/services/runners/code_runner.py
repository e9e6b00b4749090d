"""Code step runner: executes Python code nodes in the process sandbox."""

from __future__ import annotations

import logging
from typing import Any, Optional

from spark_engine.errors import CodeExecutionError, SandboxError
from spark_engine.models.workflow import CodeNodeData, ExecutionContext, FileAttachment, WorkflowNode
from spark_engine.services.sandbox import SandboxConfig, run_sandboxed

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"log": logging.DEBUG, "warn": logging.WARNING, "error": logging.ERROR}


class CodeRunner:
    def __init__(self, config: Optional[SandboxConfig] = None):
        self.config = config or SandboxConfig()

    async def run(
        self,
        node: WorkflowNode,
        input: Any,
        context: ExecutionContext,
        attachments: Optional[list[FileAttachment]] = None,
    ) -> Any:
        """
        Run a code node and return its result.

        Raises:
            CodeExecutionError: If the code is rejected, raises or times out
        """
        data = node.data
        assert isinstance(data, CodeNodeData)

        bindings = {
            "input": input,
            "attachments": [a.to_json_dict() for a in attachments or []],
            "context": {
                "workflowId": context.workflow_id,
                "runId": context.run_id,
                "totalCycles": context.total_cycles,
                "stepOutputs": dict(context.step_outputs),
            },
        }

        logger.debug(
            "Running code step %s (%d chars, %d attachments)",
            node.id,
            len(data.code),
            len(bindings["attachments"]),
        )
        try:
            outcome = await run_sandboxed(data.code, bindings, self.config)
        except SandboxError as e:
            for entry in e.context.get("logs", []):
                self._forward_log(node.id, entry)
            logger.error("Code execution failed for %s: %s", node.id, e.message)
            raise CodeExecutionError(node.id, f"Code execution failed: {e.message}") from e

        for entry in outcome.logs:
            self._forward_log(node.id, entry)
        return outcome.result

    @staticmethod
    def _forward_log(node_id: str, entry: dict[str, str]) -> None:
        level = _LOG_LEVELS.get(entry.get("level", "log"), logging.DEBUG)
        logger.log(level, "Code console [%s]: %s", node_id, entry.get("message", ""))
