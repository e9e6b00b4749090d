"""
Vault storage.

Every engine document lives under ``<vault>/.spark``. Documents are written
as whole files; readers retry when they catch a file mid-write.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from spark_engine.models.workflow import WorkflowDefinition, WorkflowRun

logger = logging.getLogger(__name__)

WORKFLOWS_DIR = ".spark/workflows"
WORKFLOW_RUNS_DIR = ".spark/workflow-runs"
WORKFLOW_QUEUE_DIR = ".spark/workflow-queue"
WORKFLOW_GENERATE_QUEUE_DIR = ".spark/workflow-generate-queue"
WORKFLOW_GENERATE_RESULTS_DIR = ".spark/workflow-generate-results"
WORKFLOW_EDIT_QUEUE_DIR = ".spark/workflow-edit-queue"
WORKFLOW_EDIT_RESULTS_DIR = ".spark/workflow-edit-results"
CHAT_QUEUE_DIR = ".spark/chat-queue"
CHAT_RESULTS_DIR = ".spark/chat-results"

RUNS_INDEX_FILENAME = "index.json"

READ_RETRIES = 3
READ_RETRY_DELAY_SECONDS = 0.05


# ---------------------------------------------------------------------------
# Generic file helpers
# ---------------------------------------------------------------------------


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def write_json_atomic(path: Path, data: Any) -> None:
    """Write through a sibling temp file and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp_path, path)


def read_json(path: Path, retries: int = READ_RETRIES) -> Any:
    """
    Read a JSON document, re-reading when a concurrent writer left it partial.

    Raises:
        FileNotFoundError: If the file does not exist
        json.JSONDecodeError: If the file is still unparseable after retries
    """
    for attempt in range(retries):
        raw = path.read_text(encoding="utf-8")
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            if attempt == retries - 1:
                raise
            time.sleep(READ_RETRY_DELAY_SECONDS)
    raise AssertionError("unreachable")


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(record, ensure_ascii=False) + "\n")


def delete_file_best_effort(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to delete %s: %s", path, exc)


def list_queue_files(vault_path: Path, queue_dir: str, suffix: str = ".json") -> list[str]:
    """Vault-relative paths of queue files, sorted by file name."""
    directory = vault_path / queue_dir
    if not directory.is_dir():
        return []
    return [
        f"{queue_dir}/{entry.name}"
        for entry in sorted(directory.iterdir(), key=lambda p: p.name)
        if entry.is_file() and entry.name.endswith(suffix)
    ]


def request_id_from_path(relative_path: str, suffix: str = ".json") -> str:
    name = relative_path.rsplit("/", 1)[-1]
    return name[: -len(suffix)] if name.endswith(suffix) else name


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


def workflow_path(vault_path: Path, workflow_id: str) -> Path:
    return vault_path / WORKFLOWS_DIR / f"{workflow_id}.json"


def save_workflow(vault_path: Path, workflow: WorkflowDefinition) -> Path:
    path = workflow_path(vault_path, workflow.id)
    write_json(path, workflow.to_json_dict())
    return path


def load_workflow(vault_path: Path, workflow_id: str) -> WorkflowDefinition | None:
    path = workflow_path(vault_path, workflow_id)
    if not path.is_file():
        return None
    try:
        return WorkflowDefinition.model_validate(read_json(path))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.error("Failed to load workflow %s: %s", workflow_id, exc)
        return None


def list_workflows(vault_path: Path) -> list[WorkflowDefinition]:
    directory = vault_path / WORKFLOWS_DIR
    if not directory.is_dir():
        return []
    workflows = []
    for path in sorted(directory.glob("*.json")):
        workflow = load_workflow(vault_path, path.stem)
        if workflow is not None:
            workflows.append(workflow)
    return workflows


# ---------------------------------------------------------------------------
# Runs + last-run index
# ---------------------------------------------------------------------------


def run_path(vault_path: Path, workflow_id: str, run_id: str) -> Path:
    return vault_path / WORKFLOW_RUNS_DIR / workflow_id / f"{run_id}.json"


def save_run(vault_path: Path, run: WorkflowRun) -> None:
    write_json(run_path(vault_path, run.workflow_id, run.id), run.to_json_dict())
    try:
        update_runs_index_from_run(vault_path, run)
    except OSError as exc:
        logger.warning(
            "Failed to update workflow runs index: %s",
            exc,
            extra={"workflowId": run.workflow_id, "runId": run.id},
        )


def load_run(vault_path: Path, workflow_id: str, run_id: str) -> WorkflowRun | None:
    path = run_path(vault_path, workflow_id, run_id)
    if not path.is_file():
        return None
    return WorkflowRun.model_validate(read_json(path))


def list_runs(vault_path: Path, workflow_id: str) -> list[WorkflowRun]:
    """Runs for a workflow, newest first."""
    directory = vault_path / WORKFLOW_RUNS_DIR / workflow_id
    if not directory.is_dir():
        return []
    runs = []
    for path in directory.glob("*.json"):
        try:
            runs.append(WorkflowRun.model_validate(read_json(path)))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Skipping unreadable run file %s: %s", path, exc)
    runs.sort(key=lambda r: r.start_time, reverse=True)
    return runs


def runs_index_path(vault_path: Path) -> Path:
    return vault_path / WORKFLOW_RUNS_DIR / RUNS_INDEX_FILENAME


def _empty_index() -> dict[str, Any]:
    return {"version": 1, "updatedAt": int(time.time() * 1000), "workflows": {}}


def load_runs_index(vault_path: Path) -> dict[str, Any]:
    """The last-run index; a missing or corrupt index reads as empty."""
    path = runs_index_path(vault_path)
    if not path.is_file():
        return _empty_index()
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return _empty_index()
    if (
        not isinstance(parsed, dict)
        or parsed.get("version") != 1
        or not isinstance(parsed.get("updatedAt"), (int, float))
        or not isinstance(parsed.get("workflows"), dict)
    ):
        return _empty_index()
    return parsed


def update_runs_index_from_run(vault_path: Path, run: WorkflowRun) -> None:
    index = load_runs_index(vault_path)
    existing = index["workflows"].get(run.workflow_id)

    should_update = (
        not isinstance(existing, dict)
        or existing.get("lastRunId") == run.id
        or (
            isinstance(existing.get("startTime"), (int, float))
            and run.start_time >= existing["startTime"]
        )
    )
    if not should_update:
        return

    summary: dict[str, Any] = {
        "lastRunId": run.id,
        "status": run.status,
        "startTime": run.start_time,
    }
    if run.end_time is not None:
        summary["endTime"] = run.end_time
    if run.error is not None:
        summary["error"] = run.error

    index["workflows"][run.workflow_id] = summary
    index["updatedAt"] = int(time.time() * 1000)
    write_json_atomic(runs_index_path(vault_path), index)
