"""
Tests for workflow validation and normalization.
"""

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from spark_engine.services.workflow_validator import (
    ValidationErr,
    ValidationOk,
    generate_id,
    validate_workflow_definition,
)

from fakes import code_node, condition_node, edge, file_node, prompt_node, workflow_dict


def _errors(raw, allow_code=False):
    result = validate_workflow_definition(raw, allow_code=allow_code)
    assert isinstance(result, ValidationErr), f"expected errors, got {result}"
    return result.errors


def _ok(raw, allow_code=False):
    result = validate_workflow_definition(raw, allow_code=allow_code)
    assert isinstance(result, ValidationOk), f"expected ok, got {getattr(result, 'errors', None)}"
    return result


class TestStructuralErrors:
    """Structural defects are reported, all of them, naming the offender."""

    def test_non_object_input(self):
        assert _errors([1, 2, 3]) == ["Workflow JSON must be an object."]

    def test_nodes_and_edges_must_be_arrays(self):
        raw = workflow_dict([], [])
        raw["nodes"] = {}
        raw["edges"] = "nope"
        errors = _errors(raw)
        assert "workflow.nodes must be an array." in errors
        assert "workflow.edges must be an array." in errors

    def test_wrong_version(self):
        raw = workflow_dict([prompt_node("p1")], [])
        raw["version"] = 2
        assert "workflow.version must be 1." in _errors(raw)

    def test_unknown_node_type(self):
        raw = workflow_dict([{"id": "x1", "type": "webhook", "data": {"type": "webhook"}}], [])
        errors = _errors(raw)
        assert any("x1" in e and "Invalid node.type" in e for e in errors)

    def test_duplicate_ids(self):
        raw = workflow_dict(
            [prompt_node("p1"), prompt_node("p1"), prompt_node("p2")],
            [edge("p1", "p2", edge_id="e1"), edge("p1", "p2", edge_id="e1")],
        )
        errors = _errors(raw)
        assert "Duplicate node id: p1" in errors
        assert "Duplicate edge id: e1" in errors

    def test_data_type_must_match_node_type(self):
        node = prompt_node("p1")
        node["data"]["type"] = "code"
        errors = _errors(workflow_dict([node], []))
        assert any("p1" in e and "data.type must equal node.type" in e for e in errors)

    def test_missing_required_fields_per_type(self):
        prompt = prompt_node("p1")
        del prompt["data"]["prompt"]
        cond = condition_node("c1", "true")
        cond["data"]["maxCycles"] = "many"
        files = file_node("f1", "   ")
        errors = _errors(workflow_dict([prompt, cond, files], []))
        assert "Prompt node p1 missing data.prompt." in errors
        assert "Condition node c1 data.maxCycles must be a number." in errors
        assert "File node f1 missing data.path." in errors

    def test_edge_to_missing_node(self):
        errors = _errors(workflow_dict([prompt_node("p1")], [edge("p1", "ghost", edge_id="e1")]))
        assert "Edge e1 target references missing node: ghost" in errors

    def test_requires_an_entry_node(self):
        raw = workflow_dict(
            [prompt_node("a"), prompt_node("b")],
            [edge("a", "b"), edge("b", "a")],
        )
        assert "Workflow must have an entry node (a node with no incoming edges)." in _errors(raw)

    def test_collects_errors_across_nodes_and_edges(self):
        bad_prompt = prompt_node("p1")
        del bad_prompt["data"]["prompt"]
        raw = workflow_dict(
            [bad_prompt, code_node("k1", "return 1")],
            [edge("p1", "nowhere", edge_id="e9")],
        )
        errors = _errors(raw)
        assert len(errors) >= 3


class TestConditionRouting:
    def test_missing_false_branch_names_the_node(self):
        raw = workflow_dict(
            [prompt_node("start"), condition_node("check", "true"), prompt_node("yes")],
            [edge("start", "check"), edge("check", "yes", handle="true")],
        )
        errors = _errors(raw)
        assert any("check" in e and '"false"' in e for e in errors)

    def test_edge_without_boolean_handle(self):
        raw = workflow_dict(
            [condition_node("check", "true"), prompt_node("a"), prompt_node("b")],
            [edge("check", "a", handle="true"), edge("check", "b", edge_id="e-plain")],
        )
        errors = _errors(raw)
        assert any("e-plain" in e and "sourceHandle" in e for e in errors)

    def test_more_than_two_outgoing_edges(self):
        raw = workflow_dict(
            [condition_node("check", "true"), prompt_node("a"), prompt_node("b"), prompt_node("c")],
            [
                edge("check", "a", handle="true"),
                edge("check", "b", handle="false"),
                edge("check", "c", handle="false", edge_id="e-extra"),
            ],
        )
        errors = _errors(raw)
        assert any("check" in e and "3 outgoing edges" in e for e in errors)

    def test_handle_inferred_from_label(self):
        raw = workflow_dict(
            [condition_node("check", "true"), prompt_node("a"), prompt_node("b")],
            [
                {"id": "e1", "source": "check", "target": "a", "label": "True"},
                {"id": "e2", "source": "check", "target": "b", "sourceHandle": "false"},
            ],
        )
        result = _ok(raw)
        edges = {e.id: e for e in result.workflow.edges}
        assert edges["e1"].source_handle == "true"
        assert edges["e2"].label == "false"

    def test_mixed_case_handles_are_canonicalized(self):
        raw = workflow_dict(
            [condition_node("check", "false"), prompt_node("yes"), prompt_node("no")],
            [
                {"id": "e1", "source": "check", "target": "yes", "sourceHandle": "TRUE"},
                {"id": "e2", "source": "check", "target": "no", "sourceHandle": " False "},
            ],
        )
        result = _ok(raw)
        edges = {e.id: e for e in result.workflow.edges}
        assert edges["e1"].source_handle == "true"
        assert edges["e2"].source_handle == "false"
        assert edges["e1"].label == "true"
        assert any("e1" in w and "normalized to true" in w for w in result.warnings)
        assert any("e2" in w and "normalized to false" in w for w in result.warnings)

        again = _ok(result.workflow.to_json_dict())
        assert not any("normalized to" in w for w in again.warnings)

    def test_valid_outputs_satisfy_routing_invariants(self):
        raw = workflow_dict(
            [prompt_node("start"), condition_node("check", 'input == "ok"'), prompt_node("yes"), prompt_node("no")],
            [edge("start", "check"), edge("check", "yes", handle="true"), edge("check", "no", handle="false")],
        )
        workflow = _ok(raw).workflow
        ids = {n.id for n in workflow.nodes}
        assert all(e.source in ids and e.target in ids for e in workflow.edges)
        assert workflow.entry_node_ids()
        handles = sorted(e.source_handle for e in workflow.outgoing("check"))
        assert handles == ["false", "true"]


class TestCodeAndStructuredOutput:
    def test_code_nodes_rejected_without_allow_code(self):
        raw = workflow_dict([code_node("k1", "return input")], [])
        assert "Code nodes are not allowed (node k1)." in _errors(raw, allow_code=False)
        _ok(raw, allow_code=True)

    def test_structured_output_requires_schema(self):
        raw = workflow_dict([prompt_node("p1", structuredOutput=True)], [])
        errors = _errors(raw)
        assert any("p1" in e and "outputSchema" in e for e in errors)

    def test_structured_output_schema_must_be_json(self):
        raw = workflow_dict([prompt_node("p1", structuredOutput=True, outputSchema="{not json")], [])
        assert any("must be valid JSON" in e for e in _errors(raw))

    def test_object_schema_is_stored_as_text(self):
        raw = workflow_dict([prompt_node("p1", structuredOutput=True, outputSchema={"title": "string"})], [])
        data = _ok(raw).workflow.nodes[0].data
        assert data.structured_output is True
        assert '"title"' in data.output_schema


class TestNormalization:
    """Cosmetic defects are repaired with warnings."""

    def test_fills_missing_metadata(self):
        raw = {"version": 1, "nodes": [prompt_node("p1")], "edges": []}
        result = _ok(raw)
        assert result.workflow.id.startswith("wf_")
        assert result.workflow.name == "Untitled Workflow"
        assert result.workflow.created and result.workflow.updated
        assert "Missing workflow id; generated one." in result.warnings

    def test_settings_normalized_to_empty(self):
        raw = workflow_dict([prompt_node("p1")], [])
        raw["settings"] = {"theme": "dark"}
        result = _ok(raw)
        assert result.workflow.settings == {}
        assert any("settings" in w for w in result.warnings)

    def test_missing_position_and_label_defaulted(self):
        node = prompt_node("p1")
        del node["position"]
        del node["data"]["label"]
        result = _ok(workflow_dict([node], []))
        normalized = result.workflow.nodes[0]
        assert (normalized.position.x, normalized.position.y) == (0, 0)
        assert normalized.data.label == "prompt"
        assert any("position.x" in w for w in result.warnings)

    def test_file_display_numbers_defaulted(self):
        node = file_node("f1", " notes/today.md ")
        del node["data"]["fileSize"]
        result = _ok(workflow_dict([node], []))
        assert result.workflow.nodes[0].data.path == "notes/today.md"
        assert result.workflow.nodes[0].data.file_size == 0

    def test_dual_role_file_node_warns(self):
        raw = workflow_dict(
            [prompt_node("p1"), file_node("f1", "out.md"), prompt_node("p2")],
            [edge("p1", "f1"), edge("f1", "p2")],
        )
        result = _ok(raw)
        assert any("f1" in w and "both incoming and outgoing" in w for w in result.warnings)

    def test_revalidation_is_idempotent(self):
        raw = workflow_dict(
            [prompt_node("start"), condition_node("check", "true"), prompt_node("yes"), prompt_node("no")],
            [edge("start", "check"), edge("check", "yes", handle="true"), edge("check", "no", handle="false")],
        )
        first = _ok(raw).workflow.to_json_dict()
        second = _ok(first).workflow.to_json_dict()
        assert second == first


def test_generate_id_format():
    generated = generate_id("node")
    prefix, rest = generated.split("_", 1)
    assert prefix == "node"
    assert len(rest) > 7
    assert rest.isalnum() and rest == rest.lower()
