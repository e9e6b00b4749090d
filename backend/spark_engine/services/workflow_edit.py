"""
Workflow edit queue handler.

Answers chat messages about an existing workflow. A reply may be a plain
answer, a clarification request, or a complete updated workflow, which is
validated (with repair attempts), laid out and saved.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

from spark_engine.llm.provider import AIProvider, ProviderFactory, complete_text
from spark_engine.models.queue import (
    ClarificationResult,
    EditCompletedResult,
    EditStage,
    FailedResult,
    ProcessingResult,
    QueueResult,
    WorkflowEditRequest,
)
from spark_engine.models.workflow import WorkflowDefinition
from spark_engine.services.json_extraction import safe_json_parse
from spark_engine.services.prompt_packs import build_edit_repair_prompt, build_workflow_edit_prompt
from spark_engine.services.workflow_layout import layout_workflow
from spark_engine.services.workflow_storage import (
    WORKFLOW_EDIT_QUEUE_DIR,
    WORKFLOW_EDIT_RESULTS_DIR,
    delete_file_best_effort,
    list_queue_files,
    read_json,
    request_id_from_path,
    save_workflow,
    write_json,
)
from spark_engine.services.workflow_validator import ValidationErr, validate_workflow_definition

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 4

INVALID_RESPONSE_ERROR = "AI returned invalid response format."


def _is_edit_response(value: Any) -> bool:
    return isinstance(value, dict) and value.get("status") in ("completed", "needs_clarification")


def _clarification_questions(value: dict[str, Any]) -> Optional[list[str]]:
    questions = value.get("questions")
    if value.get("status") != "needs_clarification" or not isinstance(questions, list):
        return None
    if not all(isinstance(q, str) for q in questions):
        return None
    return questions


class WorkflowEditHandler:
    """Processes workflow edit requests from the workflow chat panel."""

    def __init__(
        self,
        vault_path: Path,
        provider_factory: ProviderFactory,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.vault_path = Path(vault_path)
        self.provider_factory = provider_factory
        self.max_attempts = max_attempts
        self._processing: set[str] = set()

    def is_queue_file(self, relative_path: str) -> bool:
        return relative_path.startswith(WORKFLOW_EDIT_QUEUE_DIR) and relative_path.endswith(".json")

    def result_path(self, request_id: str) -> Path:
        return self.vault_path / WORKFLOW_EDIT_RESULTS_DIR / f"{request_id}.json"

    def _write_result(self, result: QueueResult) -> None:
        write_json(self.result_path(result.request_id), result.to_json_dict())

    def _write_progress(self, request_id: str, stage: EditStage, message: str) -> None:
        logger.debug("Edit %s stage=%s", request_id, stage)
        self._write_result(
            ProcessingResult(
                request_id=request_id,
                stage=stage,
                message=message,
                updated_at=int(time.time() * 1000),
            )
        )

    async def scan_queue(self) -> None:
        for relative_path in list_queue_files(self.vault_path, WORKFLOW_EDIT_QUEUE_DIR):
            await self.process_queue_file(relative_path)

    async def process_queue_file(self, relative_path: str) -> None:
        if relative_path in self._processing:
            return
        self._processing.add(relative_path)

        full_path = self.vault_path / relative_path
        if not full_path.exists():
            self._processing.discard(relative_path)
            return

        try:
            request = WorkflowEditRequest.model_validate(read_json(full_path))
            await self._process_request(request)
        except Exception as e:
            logger.error("Failed to process workflow edit queue file %s: %s", relative_path, e)
            self._write_result(FailedResult(request_id=request_id_from_path(relative_path), error=str(e)))
        finally:
            delete_file_best_effort(full_path)
            self._processing.discard(relative_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ask(self, provider: AIProvider, prompt: str) -> tuple[Any, str]:
        content = await complete_text(provider, prompt)
        parsed = safe_json_parse(content)
        return parsed, json.dumps(parsed, indent=2)

    async def _validate_and_repair(
        self, request_id: str, candidate: Any, provider: AIProvider
    ) -> tuple[Optional[WorkflowDefinition], list[str]]:
        last_json = json.dumps(candidate, indent=2)
        errors: list[str] = []

        for attempt in range(1, self.max_attempts + 1):
            if not isinstance(candidate, dict):
                errors = ["Workflow must be an object."]
            else:
                result = validate_workflow_definition(candidate, allow_code=True)
                if not isinstance(result, ValidationErr):
                    return result.workflow, []
                errors = result.errors

            logger.debug("Edit %s attempt %d failed validation: %s", request_id, attempt, errors)
            if attempt >= self.max_attempts:
                break

            self._write_progress(
                request_id,
                "repairing",
                f"Fixing validation issues (attempt {attempt + 1}/{self.max_attempts})...",
            )
            candidate, last_json = await self._ask(provider, build_edit_repair_prompt(errors, last_json))

        return None, errors

    # ------------------------------------------------------------------
    # Request flow
    # ------------------------------------------------------------------

    async def _process_request(self, request: WorkflowEditRequest) -> None:
        request_id = request.request_id
        logger.info(
            "Processing workflow edit request %s for workflow %s: %s",
            request_id,
            request.workflow_id,
            request.message[:100],
        )
        self._write_progress(request_id, "queued", "Picked up request...")

        provider = self.provider_factory.create()

        self._write_progress(request_id, "processing", "Analyzing workflow...")
        prompt = build_workflow_edit_prompt(
            workflow=request.workflow,
            message=request.message,
            selected_node_id=request.selected_node_id,
            recent_runs=request.recent_runs,
            conversation_history=request.conversation_history,
        )
        reply, _ = await self._ask(provider, prompt)

        if not _is_edit_response(reply):
            self._write_result(FailedResult(request_id=request_id, error=INVALID_RESPONSE_ERROR))
            return

        if reply["status"] == "needs_clarification":
            questions = _clarification_questions(reply)
            if questions is None:
                self._write_result(FailedResult(request_id=request_id, error=INVALID_RESPONSE_ERROR))
            else:
                self._write_result(ClarificationResult(request_id=request_id, questions=questions))
            return

        changes = reply.get("changesDescription")
        changes = changes if isinstance(changes, str) else None
        response_message = reply.get("responseMessage")
        response_message = response_message if isinstance(response_message, str) else ""

        if not reply.get("updatedWorkflow"):
            self._write_result(
                EditCompletedResult(
                    request_id=request_id,
                    response_message=response_message or "Done.",
                    changes_description=changes,
                )
            )
            return

        self._write_progress(request_id, "validating", "Validating changes...")
        workflow, errors = await self._validate_and_repair(request_id, reply["updatedWorkflow"], provider)
        if workflow is None:
            message = f"Workflow validation failed after {self.max_attempts} attempts:\n" + "\n".join(
                f"- {e}" for e in errors
            )
            logger.warning("Workflow edit %s failed: %s", request_id, message[:300])
            self._write_result(FailedResult(request_id=request_id, error=message))
            return

        self._write_progress(request_id, "layout", "Organizing nodes...")
        laid_out = layout_workflow(workflow, force=False)

        self._write_progress(request_id, "writing", "Saving changes...")
        save_workflow(self.vault_path, laid_out)
        self._write_result(
            EditCompletedResult(
                request_id=request_id,
                response_message=response_message or "Changes applied.",
                changes_description=changes,
                updated_workflow=laid_out.to_json_dict(),
            )
        )
        logger.info("Applied edit %s to workflow %s", request_id, laid_out.id)
