"""
Tests for the workflow API endpoints.

The client is used without a context manager so the lifespan (and with it the
queue poller) never starts; queued requests are checked as files in the vault.
"""

import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from spark_engine.config import Settings
from spark_engine.main import create_app
from spark_engine.models.workflow import WorkflowRun
from spark_engine.services.workflow_storage import (
    WORKFLOW_EDIT_QUEUE_DIR,
    WORKFLOW_GENERATE_QUEUE_DIR,
    WORKFLOW_GENERATE_RESULTS_DIR,
    WORKFLOW_QUEUE_DIR,
    load_workflow,
    save_run,
    save_workflow,
    write_json,
)

from fakes import edge, make_workflow, prompt_node, workflow_dict


@pytest.fixture
def vault(tmp_path):
    return tmp_path


@pytest.fixture
def client(vault):
    app = create_app(Settings(vault_path=str(vault), enable_poller=False))
    return TestClient(app)


def _store_workflow(vault: Path, workflow_id: str = "wf_api"):
    workflow = make_workflow(
        [prompt_node("a", x=0, y=0), prompt_node("b", x=0, y=0)],
        [edge("a", "b")],
        workflow_id=workflow_id,
        name="API workflow",
    )
    save_workflow(vault, workflow)
    return workflow


def _queued(vault: Path, queue_dir: str) -> list[dict]:
    return [json.loads(p.read_text(encoding="utf-8")) for p in sorted((vault / queue_dir).glob("*.json"))]


class TestDefinitions:
    def test_root(self, client):
        response = client.get("/api/")
        assert response.status_code == 200
        assert response.json() == {"message": "Spark engine is running"}

    def test_list_empty(self, client):
        response = client.get("/api/v1/workflows")
        assert response.status_code == 200
        assert response.json() == []

    def test_list_with_last_run(self, client, vault):
        _store_workflow(vault)
        save_run(
            vault,
            WorkflowRun(id="run_1", workflow_id="wf_api", status="completed", start_time=10, end_time=20),
        )

        summaries = client.get("/api/v1/workflows").json()

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary["id"] == "wf_api"
        assert summary["nodeCount"] == 2
        assert summary["edgeCount"] == 1
        assert summary["lastRun"]["lastRunId"] == "run_1"
        assert summary["lastRun"]["status"] == "completed"

    def test_get_workflow(self, client, vault):
        _store_workflow(vault)
        body = client.get("/api/v1/workflows/wf_api").json()
        assert body["id"] == "wf_api"
        assert [n["id"] for n in body["nodes"]] == ["a", "b"]

    def test_get_workflow_not_found(self, client):
        response = client.get("/api/v1/workflows/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Workflow not found"

    def test_validate_reports_errors(self, client):
        raw = workflow_dict([prompt_node("a")], [edge("a", "ghost")])
        response = client.post("/api/v1/workflows/validate", json=raw)
        assert response.status_code == 400
        assert "Edge e-a-ghost target references missing node: ghost" in response.json()["detail"]["errors"]

    def test_validate_normalizes(self, client, vault):
        raw = workflow_dict([prompt_node("a"), prompt_node("b")], [edge("a", "b")])
        response = client.post("/api/v1/workflows/validate", json=raw)
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["workflow"]["id"] == "wf_test"
        assert [e["target"] for e in body["workflow"]["edges"]] == ["b"]
        assert isinstance(body["warnings"], list)
        assert not list(vault.glob(".spark/workflows/*.json"))

    def test_layout_rewrites_positions(self, client, vault):
        _store_workflow(vault)

        response = client.post("/api/v1/workflows/wf_api/layout")

        assert response.status_code == 200
        saved = load_workflow(vault, "wf_api")
        positions = {n.id: (n.position.x, n.position.y) for n in saved.nodes}
        assert positions["a"][0] < positions["b"][0]


class TestQueuedWork:
    def test_queue_run(self, client, vault):
        _store_workflow(vault)

        response = client.post("/api/v1/workflows/wf_api/runs", json={"input": {"topic": "news"}})

        assert response.status_code == 202
        run_id = response.json()["runId"]
        assert run_id.startswith("run_")
        queued = json.loads((vault / WORKFLOW_QUEUE_DIR / f"{run_id}.json").read_text(encoding="utf-8"))
        assert queued["workflowId"] == "wf_api"
        assert queued["status"] == "pending"
        assert queued["input"] == {"topic": "news"}

    def test_queue_run_unknown_workflow(self, client, vault):
        response = client.post("/api/v1/workflows/missing/runs", json={})
        assert response.status_code == 404
        assert not (vault / WORKFLOW_QUEUE_DIR).exists()

    def test_get_run_not_found(self, client, vault):
        _store_workflow(vault)
        assert client.get("/api/v1/workflows/wf_api/runs/run_nope").status_code == 404

    def test_get_run(self, client, vault):
        _store_workflow(vault)
        save_run(vault, WorkflowRun(id="run_2", workflow_id="wf_api", status="failed", start_time=5, error="boom"))

        body = client.get("/api/v1/workflows/wf_api/runs/run_2").json()

        assert body["status"] == "failed"
        assert body["error"] == "boom"
        assert body["workflowId"] == "wf_api"

    def test_queue_generation(self, client, vault):
        response = client.post(
            "/api/v1/workflows/generate",
            json={"prompt": "Summarize my inbox", "allowCode": True},
        )

        assert response.status_code == 202
        request_id = response.json()["requestId"]
        assert request_id.startswith("wfgen_")
        (queued,) = _queued(vault, WORKFLOW_GENERATE_QUEUE_DIR)
        assert queued["requestId"] == request_id
        assert queued["prompt"] == "Summarize my inbox"
        assert queued["allowCode"] is True

    def test_empty_prompt_is_rejected(self, client, vault):
        response = client.post("/api/v1/workflows/generate", json={"prompt": "   "})
        assert response.status_code == 400
        assert not (vault / WORKFLOW_GENERATE_QUEUE_DIR).exists()

    def test_generation_result(self, client, vault):
        assert client.get("/api/v1/workflows/generate/wfgen_x").status_code == 404

        result = {"requestId": "wfgen_x", "status": "completed", "workflowId": "wf_new"}
        write_json(vault / WORKFLOW_GENERATE_RESULTS_DIR / "wfgen_x.json", result)

        response = client.get("/api/v1/workflows/generate/wfgen_x")
        assert response.status_code == 200
        assert response.json() == result

    def test_queue_edit_includes_recent_runs(self, client, vault):
        _store_workflow(vault)
        save_run(vault, WorkflowRun(id="run_3", workflow_id="wf_api", status="completed", start_time=1, end_time=2))

        response = client.post(
            "/api/v1/workflows/wf_api/edit",
            json={"message": "Add a review step", "selectedNodeId": "b"},
        )

        assert response.status_code == 202
        (queued,) = _queued(vault, WORKFLOW_EDIT_QUEUE_DIR)
        assert queued["requestId"] == response.json()["requestId"]
        assert queued["workflowId"] == "wf_api"
        assert queued["selectedNodeId"] == "b"
        assert queued["workflow"]["id"] == "wf_api"
        assert [r["id"] for r in queued["recentRuns"]] == ["run_3"]

    def test_edit_requires_message(self, client, vault):
        _store_workflow(vault)
        assert client.post("/api/v1/workflows/wf_api/edit", json={"message": ""}).status_code == 400

    def test_edit_result_not_found(self, client):
        assert client.get("/api/v1/workflows/edit/wfedit_nope").status_code == 404
