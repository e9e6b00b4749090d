"""
Workflow generation queue handler.

Turns a natural-language request from ``.spark/workflow-generate-queue`` into
a validated, laid-out workflow file, reporting progress through
``.spark/workflow-generate-results/<requestId>.json``.
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
    FailedResult,
    GenerateCompletedResult,
    GenerateStage,
    ProcessingResult,
    QueueResult,
    WorkflowGenerateRequest,
)
from spark_engine.services.json_extraction import safe_json_parse
from spark_engine.services.prompt_packs import build_generation_prompt, build_generation_repair_prompt
from spark_engine.services.workflow_layout import layout_workflow
from spark_engine.services.workflow_storage import (
    WORKFLOW_GENERATE_QUEUE_DIR,
    WORKFLOW_GENERATE_RESULTS_DIR,
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

STAGE_PROGRESS: dict[str, int] = {
    "queued": 0,
    "generating": 20,
    "validating": 50,
    "repairing": 65,
    "layout": 85,
    "writing": 95,
}


def is_clarification_response(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("status") == "needs_clarification"
        and isinstance(value.get("questions"), list)
        and all(isinstance(q, str) and q.strip() for q in value["questions"])
    )


def format_validation_failure(errors: list[str]) -> str:
    return "Workflow generation failed validation:\n" + "\n".join(f"- {e}" for e in errors)


class WorkflowGenerateHandler:
    """Processes workflow generation requests one queue file at a time."""

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

    # ------------------------------------------------------------------
    # Queue plumbing
    # ------------------------------------------------------------------

    def is_queue_file(self, relative_path: str) -> bool:
        return relative_path.startswith(WORKFLOW_GENERATE_QUEUE_DIR) and relative_path.endswith(".json")

    def result_path(self, request_id: str) -> Path:
        return self.vault_path / WORKFLOW_GENERATE_RESULTS_DIR / f"{request_id}.json"

    def _write_result(self, result: QueueResult) -> None:
        write_json(self.result_path(result.request_id), result.to_json_dict())

    def _write_progress(
        self,
        request_id: str,
        stage: GenerateStage,
        message: str,
        attempt: Optional[int] = None,
    ) -> None:
        logger.debug("Generate %s stage=%s attempt=%s", request_id, stage, attempt)
        self._write_result(
            ProcessingResult(
                request_id=request_id,
                stage=stage,
                progress=STAGE_PROGRESS[stage],
                message=message,
                attempt=attempt,
                max_attempts=self.max_attempts,
                updated_at=int(time.time() * 1000),
            )
        )

    async def scan_queue(self) -> None:
        for relative_path in list_queue_files(self.vault_path, WORKFLOW_GENERATE_QUEUE_DIR):
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
            request = WorkflowGenerateRequest.model_validate(read_json(full_path))
            await self._process_request(request)
        except Exception as e:
            logger.error("Failed to process workflow generation queue file %s: %s", relative_path, e)
            self._write_result(FailedResult(request_id=request_id_from_path(relative_path), error=str(e)))
        finally:
            delete_file_best_effort(full_path)
            self._processing.discard(relative_path)

    # ------------------------------------------------------------------
    # Generate -> validate -> repair loop
    # ------------------------------------------------------------------

    async def _ask(self, provider: AIProvider, prompt: str) -> tuple[Any, str]:
        content = await complete_text(provider, prompt)
        parsed = safe_json_parse(content)
        return parsed, json.dumps(parsed, indent=2)

    def _try_clarification(self, request_id: str, parsed: Any) -> bool:
        if not is_clarification_response(parsed):
            return False
        logger.info("Generate %s needs clarification", request_id)
        self._write_result(ClarificationResult(request_id=request_id, questions=parsed["questions"]))
        return True

    def _try_accept(self, request: WorkflowGenerateRequest, parsed: Any) -> list[str]:
        """Validate, lay out and save. Returns validation errors, empty on success."""
        if not isinstance(parsed, dict):
            return ["Workflow JSON must be an object."]

        self._write_progress(request.request_id, "validating", "Validating workflow…")
        result = validate_workflow_definition(parsed, allow_code=request.allow_code)
        if isinstance(result, ValidationErr):
            return result.errors

        for warning in result.warnings:
            logger.debug("Generate %s validation warning: %s", request.request_id, warning)

        self._write_progress(request.request_id, "layout", "Organizing nodes…")
        workflow = layout_workflow(result.workflow, force=True)

        self._write_progress(request.request_id, "writing", "Saving workflow…")
        save_workflow(self.vault_path, workflow)
        self._write_result(
            GenerateCompletedResult(
                request_id=request.request_id,
                workflow_id=workflow.id,
                workflow_name=workflow.name,
            )
        )
        logger.info("Generated workflow %s (%s) for request %s", workflow.id, workflow.name, request.request_id)
        return []

    async def _process_request(self, request: WorkflowGenerateRequest) -> None:
        request_id = request.request_id
        logger.info(
            "Processing workflow generation request %s (allowCode=%s): %s",
            request_id,
            request.allow_code,
            request.prompt[:120],
        )
        self._write_progress(request_id, "queued", "Picked up request…")

        provider = self.provider_factory.create(request.model_override)

        self._write_progress(request_id, "generating", "Generating workflow…", attempt=1)
        prompt = build_generation_prompt(
            request.prompt, allow_code=request.allow_code, clarifications=request.clarifications
        )
        parsed, last_json = await self._ask(provider, prompt)
        if self._try_clarification(request_id, parsed):
            return

        errors: list[str] = []
        for attempt in range(1, self.max_attempts + 1):
            errors = self._try_accept(request, parsed)
            if not errors:
                return
            logger.debug("Generate %s attempt %d failed validation: %s", request_id, attempt, errors)
            if attempt >= self.max_attempts:
                break

            self._write_progress(
                request_id,
                "repairing",
                f"Fixing validation issues (attempt {attempt + 1}/{self.max_attempts})…",
                attempt=attempt + 1,
            )
            parsed, last_json = await self._ask(provider, build_generation_repair_prompt(errors, last_json))
            if self._try_clarification(request_id, parsed):
                return

        message = format_validation_failure(errors)
        logger.warning("Workflow generation %s failed: %s", request_id, message[:300])
        self._write_result(FailedResult(request_id=request_id, error=message))
