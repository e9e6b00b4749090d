"""
Deterministic workflow layout.

Nodes are arranged in columns by graph depth (shortest distance from an
entry node), stacked within a column by the average height of their
predecessors, nudged down until no two boxes overlap, and finally every
edge gets routing handles. Ties are always broken by node id so the same
graph always produces the same picture.
"""

from __future__ import annotations

import logging
import math
from collections import deque

from spark_engine.models.workflow import Position, WorkflowDefinition, WorkflowEdge, WorkflowNode
from spark_engine.services.workflow_validator import branch_handle, is_finite_number, now_iso

logger = logging.getLogger(__name__)

NODE_W = 240
NODE_H = 80
COL_X = 300
ROW_Y = 160
GRID = 40
COLLISION_STEP = 40
MAX_COLLISION_RETRIES = 200

Rect = tuple[float, float, float, float]


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


def _rect(x: float, y: float) -> Rect:
    return (x, y, NODE_W, NODE_H)


def _overlaps(a: Rect, b: Rect) -> bool:
    ax, ay, aw, ah = a
    bx, by, bw, bh = b
    return not (ax + aw <= bx or bx + bw <= ax or ay + ah <= by or by + bh <= ay)


def _snap(value: float) -> int:
    # Half-up rounding to the grid; negative values clamp to the top row.
    return max(0, int(math.floor(value / GRID + 0.5)) * GRID)


def has_invalid_positions(workflow: WorkflowDefinition) -> bool:
    return any(
        n.position is None
        or not is_finite_number(n.position.x)
        or not is_finite_number(n.position.y)
        for n in workflow.nodes
    )


def has_overlaps(workflow: WorkflowDefinition) -> bool:
    rects = [_rect(n.position.x, n.position.y) for n in workflow.nodes]
    for i in range(len(rects)):
        for j in range(i + 1, len(rects)):
            if _overlaps(rects[i], rects[j]):
                return True
    return False


# ---------------------------------------------------------------------------
# Depth
# ---------------------------------------------------------------------------


def compute_depths(workflow: WorkflowDefinition) -> dict[str, int]:
    """Shortest-path depth from the entry nodes; unreached nodes sit at 0."""
    sorted_ids = sorted(n.id for n in workflow.nodes)
    successors: dict[str, list[str]] = {node_id: [] for node_id in sorted_ids}
    for edge in workflow.edges:
        if edge.source in successors:
            successors[edge.source].append(edge.target)
    for targets in successors.values():
        targets.sort()

    depth: dict[str, int] = {}
    queue: deque[str] = deque()
    entries = sorted(workflow.entry_node_ids())
    if not entries and sorted_ids:
        # Cycle-only graph: start from the lowest id.
        entries = [sorted_ids[0]]
    for node_id in entries:
        depth[node_id] = 0
        queue.append(node_id)

    while queue:
        current = queue.popleft()
        next_depth = depth[current] + 1
        for nxt in successors.get(current, []):
            if nxt not in depth or next_depth < depth[nxt]:
                depth[nxt] = next_depth
                queue.append(nxt)

    for node_id in sorted_ids:
        depth.setdefault(node_id, 0)
    return depth


def is_back_edge(depths: dict[str, int], edge: WorkflowEdge) -> bool:
    return depths.get(edge.target, 0) <= depths.get(edge.source, 0)


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------


def _desired_y(
    workflow: WorkflowDefinition,
    node_id: str,
    depth: int,
    fallback_idx: int,
    depths: dict[str, int],
    y_by_id: dict[str, int],
    nodes: dict[str, WorkflowNode],
) -> float:
    ys: list[float] = []
    for edge in workflow.incoming(node_id):
        # Same-depth and back edges do not pull a node up or down.
        if depths.get(edge.source, 0) >= depth:
            continue
        src_y = y_by_id.get(edge.source)
        if src_y is None:
            continue
        source = nodes.get(edge.source)
        handle = branch_handle(edge.source_handle)
        if source is not None and source.type == "condition" and handle is not None:
            src_y += -ROW_Y / 2 if handle == "true" else ROW_Y / 2
        ys.append(src_y)

    if not ys:
        return fallback_idx * ROW_Y
    return sum(ys) / len(ys)


def _collision_pass(ordered: list[tuple[str, int, int]]) -> dict[str, tuple[int, int]]:
    placed: list[Rect] = []
    final: dict[str, tuple[int, int]] = {}
    for node_id, x, y in ordered:
        rect = _rect(x, y)
        retries = 0
        while any(_overlaps(p, rect) for p in placed) and retries < MAX_COLLISION_RETRIES:
            y += COLLISION_STEP
            rect = _rect(x, y)
            retries += 1
        placed.append(rect)
        final[node_id] = (x, y)
    return final


def _place_nodes(workflow: WorkflowDefinition) -> WorkflowDefinition:
    depths = compute_depths(workflow)
    nodes = workflow.node_by_id()

    columns: dict[int, list[str]] = {}
    for node in workflow.nodes:
        columns.setdefault(depths[node.id], []).append(node.id)

    y_by_id: dict[str, int] = {}
    ordered: list[tuple[str, int, int]] = []
    for depth in sorted(columns):
        scored = [
            (_desired_y(workflow, node_id, depth, idx, depths, y_by_id, nodes), node_id)
            for idx, node_id in enumerate(columns[depth])
        ]
        scored.sort()
        for desired, node_id in scored:
            y = _snap(desired)
            y_by_id[node_id] = y
            ordered.append((node_id, depth * COL_X, y))

    final = _collision_pass(ordered)

    placed = workflow.model_copy(deep=True)
    for node in placed.nodes:
        x, y = final[node.id]
        node.position = Position(x=x, y=y)
    placed.updated = now_iso()
    return placed


# ---------------------------------------------------------------------------
# Edge handles
# ---------------------------------------------------------------------------


def _directional_handles(source: WorkflowNode, target: WorkflowNode) -> tuple[str, str]:
    dx = target.position.x - source.position.x
    dy = target.position.y - source.position.y
    if abs(dx) >= abs(dy):
        return ("right-out", "left-in") if dx >= 0 else ("left-out", "right-in")
    return ("bottom-out", "top-in") if dy >= 0 else ("top-out", "bottom-in")


def _vertical_handles(source: WorkflowNode, target: WorkflowNode) -> tuple[str, str]:
    dy = target.position.y - source.position.y
    return ("bottom-out", "top-in") if dy >= 0 else ("top-out", "bottom-in")


def _fit_target_handle(target: WorkflowNode, handle: str) -> str:
    # The right side of a condition node holds its true/false outputs.
    if target.type == "condition" and handle == "right-in":
        return "left-in"
    return handle


def apply_edge_handles(workflow: WorkflowDefinition) -> WorkflowDefinition:
    """Fill missing edge handles. Existing handles are never overwritten."""
    routed = workflow.model_copy(deep=True)
    nodes = routed.node_by_id()
    depths = compute_depths(routed)

    for edge in routed.edges:
        source = nodes.get(edge.source)
        target = nodes.get(edge.target)
        if source is None or target is None:
            continue

        if source.type == "condition":
            # sourceHandle is the true/false routing key; only the target side is inferred.
            if not edge.target_handle:
                _, target_handle = _directional_handles(source, target)
                edge.target_handle = _fit_target_handle(target, target_handle)
            continue

        if is_back_edge(depths, edge):
            source_handle, target_handle = _vertical_handles(source, target)
        else:
            source_handle, _ = _directional_handles(source, target)
            target_handle = "left-in"

        if not edge.source_handle:
            edge.source_handle = source_handle
        if not edge.target_handle:
            edge.target_handle = _fit_target_handle(target, target_handle)

    return routed


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def layout_workflow(workflow: WorkflowDefinition, *, force: bool = False) -> WorkflowDefinition:
    """
    Lay out a workflow.

    With ``force`` the graph is always re-placed. Otherwise positions are kept
    unless some are invalid or boxes overlap, and only edge handles are filled.
    """
    if force or has_invalid_positions(workflow) or has_overlaps(workflow):
        logger.debug("Laying out workflow %s (force=%s)", workflow.id, force)
        return apply_edge_handles(_place_nodes(workflow))
    return apply_edge_handles(workflow)
