"""
Workflow validator: turns untrusted JSON into a normalized WorkflowDefinition.

Pipeline: Meta → Nodes → Edges → Entry point → Condition routing

Cosmetic problems (missing ids, labels, timestamps, positions) are fixed and
reported as warnings. Structural problems are collected as errors; every
error is reported, never just the first, because the full list is handed to
the AI repair prompt.
"""

from __future__ import annotations

import json
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from spark_engine.models.workflow import (
    CodeNodeData,
    ConditionNodeData,
    FileNodeData,
    Position,
    PromptNodeData,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)

_BASE36 = string.digits + string.ascii_lowercase


@dataclass
class ValidationOk:
    workflow: WorkflowDefinition
    warnings: list[str] = field(default_factory=list)
    ok: bool = True


@dataclass
class ValidationErr:
    errors: list[str]
    ok: bool = False


ValidationResult = Union[ValidationOk, ValidationErr]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """``<prefix>_<base36 millis><7 random base36 chars>``"""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"{prefix}_{_to_base36(int(time.time() * 1000))}{suffix}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_iso_timestamp(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _clean_str(value: Any) -> str | None:
    """Non-blank strings pass through untouched; anything else is None."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def branch_handle(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    return lowered if lowered in ("true", "false") else None


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------


def _normalize_meta(raw: dict[str, Any], errors: list[str], warnings: list[str]) -> dict[str, Any]:
    now = now_iso()

    wf_id = _clean_str(raw.get("id"))
    if wf_id is None:
        wf_id = generate_id("wf")
        warnings.append("Missing workflow id; generated one.")

    name = _clean_str(raw.get("name"))
    if name is None:
        name = "Untitled Workflow"
        warnings.append("Missing workflow name; defaulted.")

    version = raw.get("version")
    if not (is_finite_number(version) and version == 1):
        errors.append("workflow.version must be 1.")

    stamps: dict[str, str] = {}
    for key in ("created", "updated"):
        value = raw.get(key)
        if value is None:
            warnings.append(f"Missing workflow.{key}; filled.")
            stamps[key] = now
        elif not _is_iso_timestamp(value):
            warnings.append(f"Invalid workflow.{key}; normalized.")
            stamps[key] = now
        else:
            stamps[key] = value

    settings = raw.get("settings")
    if not isinstance(settings, dict):
        warnings.append("Missing/invalid workflow.settings; normalized to {}.")
    elif settings:
        warnings.append("workflow.settings must be {}; normalized to {}.")

    return {
        "id": wf_id,
        "name": name,
        "description": _clean_str(raw.get("description")),
        "created": stamps["created"],
        "updated": stamps["updated"],
    }


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def _normalize_position(raw: Any, node_id: str, warnings: list[str]) -> Position:
    pos = raw if isinstance(raw, dict) else {}
    coords = {}
    for axis in ("x", "y"):
        value = pos.get(axis)
        if is_finite_number(value):
            coords[axis] = value
        else:
            warnings.append(f"Node {node_id} missing/invalid position.{axis}; normalized.")
            coords[axis] = 0
    return Position(**coords)


def _normalize_prompt_data(node_id: str, data: dict[str, Any], base: dict[str, Any], errors: list[str]):
    prompt = _clean_str(data.get("prompt"))
    if prompt is None:
        errors.append(f"Prompt node {node_id} missing data.prompt.")
        return None

    structured = data.get("structuredOutput") is True
    schema_raw = data.get("outputSchema")
    output_schema = _clean_str(schema_raw)
    # Object/array schemas are accepted and stored as JSON text.
    if output_schema is None and isinstance(schema_raw, (dict, list)):
        output_schema = json.dumps(schema_raw, indent=2)

    if structured:
        if output_schema is None:
            errors.append(
                f"Prompt node {node_id} has structuredOutput=true but is missing data.outputSchema."
            )
            return None
        try:
            json.loads(output_schema)
        except ValueError:
            errors.append(
                f"Prompt node {node_id} data.outputSchema must be valid JSON "
                "(an example object/array or JSON Schema)."
            )
            return None

    return PromptNodeData(
        **base,
        prompt=prompt,
        structured_output=True if structured else None,
        output_schema=output_schema,
    )


def _normalize_code_data(node_id: str, data: dict[str, Any], base: dict[str, Any], errors: list[str]):
    code = _clean_str(data.get("code"))
    if code is None:
        errors.append(f"Code node {node_id} missing data.code.")
        return None
    return CodeNodeData(**base, code=code)


def _normalize_condition_data(node_id: str, data: dict[str, Any], base: dict[str, Any], errors: list[str]):
    expression = _clean_str(data.get("expression"))
    max_cycles = data.get("maxCycles")
    if expression is None:
        errors.append(f"Condition node {node_id} missing data.expression.")
        return None
    if not is_finite_number(max_cycles):
        errors.append(f"Condition node {node_id} data.maxCycles must be a number.")
        return None
    return ConditionNodeData(**base, expression=expression, max_cycles=max_cycles)


def _normalize_file_data(
    node_id: str,
    data: dict[str, Any],
    base: dict[str, Any],
    errors: list[str],
    warnings: list[str],
):
    path = _clean_str(data.get("path"))
    if path is None:
        errors.append(f"File node {node_id} missing data.path.")
        return None

    display: dict[str, Any] = {}
    for key, attr in (("lastModified", "last_modified"), ("fileSize", "file_size")):
        value = data.get(key)
        if is_finite_number(value):
            display[attr] = value
        else:
            warnings.append(f"File node {node_id} missing/invalid data.{key}; defaulted to 0.")
            display[attr] = 0
    return FileNodeData(**base, path=path.strip(), **display)


def _normalize_node(
    raw: dict[str, Any],
    *,
    allow_code: bool,
    node_ids: set[str],
    errors: list[str],
    warnings: list[str],
) -> WorkflowNode | None:
    node_id = _clean_str(raw.get("id"))
    if node_id is None:
        node_id = generate_id("node")
        warnings.append("Node missing id; generated one.")
    if node_id in node_ids:
        errors.append(f"Duplicate node id: {node_id}")
        return None

    node_type = _clean_str(raw.get("type"))
    if node_type not in ("prompt", "code", "condition", "file"):
        errors.append(f"Invalid node.type for node {node_id}: {raw.get('type')}")
        return None

    if node_type == "code" and not allow_code:
        errors.append(f"Code nodes are not allowed (node {node_id}).")
        return None

    position = _normalize_position(raw.get("position"), node_id, warnings)

    data = raw.get("data")
    if not isinstance(data, dict):
        errors.append(f"Node {node_id} missing data.")
        return None

    if _clean_str(data.get("type")) != node_type:
        errors.append(f"Node {node_id} data.type must equal node.type ({node_type}).")
        return None

    label = _clean_str(data.get("label"))
    if label is None:
        warnings.append(f"Node {node_id} missing label; defaulted.")
    base = {
        "label": label.strip() if label else node_type,
        "description": _clean_str(data.get("description")),
    }

    # The id is reserved before per-type checks so edges still resolve.
    node_ids.add(node_id)

    if node_type == "prompt":
        node_data = _normalize_prompt_data(node_id, data, base, errors)
    elif node_type == "code":
        node_data = _normalize_code_data(node_id, data, base, errors)
    elif node_type == "condition":
        node_data = _normalize_condition_data(node_id, data, base, errors)
    else:
        node_data = _normalize_file_data(node_id, data, base, errors, warnings)

    if node_data is None:
        return None
    return WorkflowNode(id=node_id, type=node_type, position=position, data=node_data)


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


def _normalize_edge(
    raw: dict[str, Any],
    *,
    node_ids: set[str],
    edge_ids: set[str],
    errors: list[str],
    warnings: list[str],
) -> WorkflowEdge | None:
    edge_id = _clean_str(raw.get("id"))
    if edge_id is None:
        edge_id = generate_id("edge")
        warnings.append("Edge missing id; generated one.")
    if edge_id in edge_ids:
        errors.append(f"Duplicate edge id: {edge_id}")
        return None

    source = _clean_str(raw.get("source"))
    target = _clean_str(raw.get("target"))
    if source is None or target is None:
        errors.append(f"Edge {edge_id} missing source/target.")
        return None

    if source not in node_ids:
        errors.append(f"Edge {edge_id} source references missing node: {source}")
    if target not in node_ids:
        errors.append(f"Edge {edge_id} target references missing node: {target}")

    label = _clean_str(raw.get("label"))
    source_handle = _clean_str(raw.get("sourceHandle"))
    canonical = branch_handle(source_handle)
    if canonical is not None and canonical != source_handle:
        warnings.append(f"Edge {edge_id} sourceHandle {source_handle!r} normalized to {canonical}.")
        source_handle = canonical
    if source_handle is None and branch_handle(label):
        source_handle = branch_handle(label)
        warnings.append(f"Edge {edge_id} missing sourceHandle; inferred from label ({source_handle}).")
    if label is None and branch_handle(source_handle):
        label = branch_handle(source_handle)

    edge_ids.add(edge_id)
    return WorkflowEdge(
        id=edge_id,
        source=source,
        target=target,
        source_handle=source_handle,
        target_handle=_clean_str(raw.get("targetHandle")),
        label=label,
    )


# ---------------------------------------------------------------------------
# Graph rules
# ---------------------------------------------------------------------------


def _check_entry_point(nodes: list[WorkflowNode], edges: list[WorkflowEdge], errors: list[str]) -> None:
    if not nodes:
        return
    targets = {e.target for e in edges}
    if all(n.id in targets for n in nodes):
        errors.append("Workflow must have an entry node (a node with no incoming edges).")


def _check_condition_routing(
    nodes: list[WorkflowNode], edges: list[WorkflowEdge], errors: list[str]
) -> None:
    for node in nodes:
        if node.type != "condition":
            continue
        outgoing = [e for e in edges if e.source == node.id]
        if len(outgoing) > 2:
            errors.append(
                f"Condition node {node.id} has {len(outgoing)} outgoing edges. "
                "Condition nodes support at most 2 outgoing edges (true/false)."
            )
            continue

        handles = set()
        for edge in outgoing:
            handle = branch_handle(edge.source_handle)
            if handle is None:
                errors.append(
                    f'Condition node {node.id} outgoing edge {edge.id} must set sourceHandle to "true" or "false".'
                )
                continue
            handles.add(handle)

        if outgoing and handles != {"true", "false"}:
            errors.append(
                f'Condition node {node.id} must include both a "true" and a "false" outgoing edge (sourceHandle).'
            )


def _warn_dual_role_files(nodes: list[WorkflowNode], edges: list[WorkflowEdge], warnings: list[str]) -> None:
    for node in nodes:
        if node.type != "file":
            continue
        has_in = any(e.target == node.id for e in edges)
        has_out = any(e.source == node.id for e in edges)
        if has_in and has_out:
            warnings.append(
                f"File node {node.id} has both incoming and outgoing edges; it will be written to, not read."
            )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_workflow_definition(raw: Any, *, allow_code: bool) -> ValidationResult:
    """
    Validate and normalize a workflow definition.

    Returns ValidationOk with the normalized workflow and warnings, or
    ValidationErr with every structural error found.
    """
    if not isinstance(raw, dict):
        return ValidationErr(errors=["Workflow JSON must be an object."])

    errors: list[str] = []
    warnings: list[str] = []

    raw_nodes = raw.get("nodes")
    raw_edges = raw.get("edges")
    if not isinstance(raw_nodes, list):
        errors.append("workflow.nodes must be an array.")
        raw_nodes = []
    if not isinstance(raw_edges, list):
        errors.append("workflow.edges must be an array.")
        raw_edges = []

    meta = _normalize_meta(raw, errors, warnings)

    nodes: list[WorkflowNode] = []
    node_ids: set[str] = set()
    for raw_node in raw_nodes:
        if not isinstance(raw_node, dict):
            errors.append("workflow.nodes entries must be objects.")
            continue
        node = _normalize_node(
            raw_node, allow_code=allow_code, node_ids=node_ids, errors=errors, warnings=warnings
        )
        if node is not None:
            nodes.append(node)

    edges: list[WorkflowEdge] = []
    edge_ids: set[str] = set()
    for raw_edge in raw_edges:
        if not isinstance(raw_edge, dict):
            errors.append("workflow.edges entries must be objects.")
            continue
        edge = _normalize_edge(
            raw_edge, node_ids=node_ids, edge_ids=edge_ids, errors=errors, warnings=warnings
        )
        if edge is not None:
            edges.append(edge)

    _check_entry_point(nodes, edges, errors)
    _check_condition_routing(nodes, edges, errors)

    if errors:
        return ValidationErr(errors=errors)

    _warn_dual_role_files(nodes, edges, warnings)

    workflow = WorkflowDefinition(
        id=meta["id"],
        name=meta["name"],
        description=meta["description"],
        version=1,
        nodes=nodes,
        edges=edges,
        settings={},
        created=meta["created"],
        updated=meta["updated"],
    )
    return ValidationOk(workflow=workflow, warnings=warnings)
