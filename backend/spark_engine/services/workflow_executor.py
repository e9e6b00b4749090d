"""
Workflow execution engine.

Picks run requests off ``.spark/workflow-queue``, walks the workflow graph and
persists a WorkflowRun after every state change so the UI can follow along.

Key concepts:
- Traversal is a ready-set worklist: a node runs once every reachable forward
  upstream has run. Ready nodes run in id order.
- Back edges (found by DFS from the entry nodes) do not count as forward
  dependencies. When a node finishes and points at an already-executed node,
  the loop section between them is re-armed for another pass.
- Condition nodes route by marking the untaken branch unreachable. A node
  only becomes unreachable when all of its upstreams are, so branches that
  reconverge still run.
- A condition's ``maxCycles`` bounds its loop: back edges into it stop
  re-arming once it has been visited ``maxCycles`` times, and a visit beyond
  the ceiling takes the false branch without evaluating the expression.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from spark_engine.config import Settings, get_settings
from spark_engine.llm.command_executor import CommandExecutor
from spark_engine.models.queue import WorkflowQueueItem
from spark_engine.models.workflow import (
    ConditionNodeData,
    ExecutionContext,
    FileAttachment,
    FileNodeData,
    FileTarget,
    LabeledOutput,
    StepResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowInputContext,
    WorkflowNode,
    WorkflowRun,
)
from spark_engine.services.runners.code_runner import CodeRunner
from spark_engine.services.runners.condition_runner import ConditionRunner
from spark_engine.services.runners.prompt_runner import PromptRunner, format_output
from spark_engine.services.sandbox import SandboxConfig
from spark_engine.services.workflow_storage import (
    WORKFLOW_QUEUE_DIR,
    delete_file_best_effort,
    list_queue_files,
    load_workflow,
    read_json,
    save_run,
    write_json,
)
from spark_engine.services.workflow_validator import branch_handle

logger = logging.getLogger(__name__)

STUCK_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_MAX_TOTAL_CYCLES = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Graph analysis
# ---------------------------------------------------------------------------


def identify_back_edges(workflow: WorkflowDefinition) -> set[str]:
    """Ids of edges that close a cycle, found by iterative DFS from the entry nodes."""
    outgoing: dict[str, list[WorkflowEdge]] = {n.id: [] for n in workflow.nodes}
    for edge in workflow.edges:
        outgoing.setdefault(edge.source, []).append(edge)

    roots = workflow.entry_node_ids()
    if not roots and workflow.nodes:
        roots = [workflow.nodes[0].id]
    roots += [n.id for n in workflow.nodes]

    visited: set[str] = set()
    on_stack: set[str] = set()
    back_edges: set[str] = set()

    for root in roots:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        stack = [(root, iter(outgoing.get(root, [])))]
        while stack:
            node_id, edges = stack[-1]
            edge = next(edges, None)
            if edge is None:
                stack.pop()
                on_stack.discard(node_id)
                continue
            if edge.target in on_stack:
                back_edges.add(edge.id)
            elif edge.target not in visited:
                visited.add(edge.target)
                on_stack.add(edge.target)
                stack.append((edge.target, iter(outgoing.get(edge.target, []))))

    return back_edges


def build_forward_upstream_map(workflow: WorkflowDefinition, back_edges: set[str]) -> dict[str, set[str]]:
    upstream: dict[str, set[str]] = {n.id: set() for n in workflow.nodes}
    for edge in workflow.edges:
        if edge.id in back_edges:
            continue
        if edge.target in upstream:
            upstream[edge.target].add(edge.source)
    return upstream


@dataclass
class TraversalState:
    pending: set[str]
    reachable: set[str]
    executed: set[str] = field(default_factory=set)

    @classmethod
    def for_workflow(cls, workflow: WorkflowDefinition) -> "TraversalState":
        ids = {n.id for n in workflow.nodes}
        return cls(pending=set(ids), reachable=set(ids))

    def find_ready(self, upstream: dict[str, set[str]]) -> list[str]:
        ready = []
        for node_id in self.pending:
            if node_id not in self.reachable:
                continue
            blocked = any(
                up in self.reachable and up not in self.executed
                for up in upstream.get(node_id, ())
            )
            if not blocked:
                ready.append(node_id)
        return sorted(ready)

    def mark_branch_reachable(self, workflow: WorkflowDefinition, start_id: str) -> None:
        queue: deque[str] = deque([start_id])
        visited: set[str] = set()
        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)
            if node_id in self.pending:
                self.reachable.add(node_id)
            for edge in workflow.outgoing(node_id):
                if edge.target not in visited and edge.target in self.pending:
                    queue.append(edge.target)

    def mark_branch_unreachable(self, workflow: WorkflowDefinition, start_id: str) -> None:
        if start_id in self.pending:
            self.reachable.discard(start_id)

        changed = True
        while changed:
            changed = False
            for node in workflow.nodes:
                if node.id not in self.reachable or node.id not in self.pending:
                    continue
                upstream_ids = [e.source for e in workflow.incoming(node.id)]
                # Entry nodes stay reachable.
                if not upstream_ids:
                    continue
                if all(up not in self.reachable for up in upstream_ids):
                    self.reachable.discard(node.id)
                    changed = True

    def reset_loop_section(self, workflow: WorkflowDefinition, loop_start: str, loop_end: str) -> None:
        for node_id in find_loop_nodes(workflow, loop_start, loop_end):
            if node_id in self.executed:
                self.executed.discard(node_id)
                self.pending.add(node_id)
                self.reachable.add(node_id)


def find_loop_nodes(workflow: WorkflowDefinition, start_id: str, end_id: str) -> set[str]:
    """Nodes reachable from ``start_id`` without expanding past ``end_id``."""
    loop_nodes: set[str] = set()
    queue: deque[str] = deque([start_id])
    while queue:
        node_id = queue.popleft()
        if node_id in loop_nodes:
            continue
        loop_nodes.add(node_id)
        if node_id == end_id:
            continue
        for edge in workflow.outgoing(node_id):
            if edge.target not in loop_nodes:
                queue.append(edge.target)
    return loop_nodes


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


StepHandler = Callable[[WorkflowDefinition, WorkflowNode, Any, ExecutionContext], Awaitable[Any]]


class WorkflowExecutor:
    def __init__(
        self,
        vault_path: Path,
        command_executor: CommandExecutor,
        settings: Optional[Settings] = None,
        max_total_cycles: int = DEFAULT_MAX_TOTAL_CYCLES,
    ):
        settings = settings or get_settings()
        self.vault_path = Path(vault_path)
        self.max_total_cycles = max_total_cycles
        self.prompt_runner = PromptRunner(command_executor)
        self.code_runner = CodeRunner(
            SandboxConfig(
                timeout_seconds=settings.code_timeout_seconds,
                memory_mb=settings.code_memory_mb,
            )
        )
        self.condition_runner = ConditionRunner()
        self._processing_runs: set[str] = set()
        self._step_handlers: dict[str, StepHandler] = {
            "prompt": self._execute_prompt_node,
            "code": self._execute_code_node,
            "condition": self._execute_condition_node,
            "file": self._execute_file_node,
        }

    # ------------------------------------------------------------------
    # Run queue
    # ------------------------------------------------------------------

    def is_queue_file(self, relative_path: str) -> bool:
        return relative_path.startswith(WORKFLOW_QUEUE_DIR) and relative_path.endswith(".json")

    async def scan_queue(self) -> None:
        files = list_queue_files(self.vault_path, WORKFLOW_QUEUE_DIR)
        if files:
            logger.info("Found %d pending workflow queue item(s)", len(files))
        for relative_path in files:
            await self.process_queue_file(relative_path)

    async def process_queue_file(self, relative_path: str) -> None:
        full_path = self.vault_path / relative_path
        if not full_path.exists():
            return

        try:
            item = WorkflowQueueItem.model_validate(read_json(full_path))

            # A processing item nobody owns is left over from a crashed engine.
            age_ms = _now_ms() - item.timestamp
            if item.status == "processing" and item.run_id not in self._processing_runs and age_ms > STUCK_TIMEOUT_MS:
                logger.warning(
                    "Resetting stuck workflow queue item %s (workflow %s, stuck for %d ms)",
                    item.run_id,
                    item.workflow_id,
                    age_ms,
                )
                item.status = "pending"
                item.timestamp = _now_ms()
                write_json(full_path, item.to_json_dict())

            if item.status != "pending" or item.run_id in self._processing_runs:
                return

            logger.info("Processing workflow queue item %s (workflow %s)", item.run_id, item.workflow_id)
            self._processing_runs.add(item.run_id)
            item.status = "processing"
            write_json(full_path, item.to_json_dict())

            await self.execute_workflow(item)
            delete_file_best_effort(full_path)
        except (ValueError, ValidationError) as e:
            # Malformed items never become valid; drop them so the poller moves on.
            logger.error("Invalid workflow queue file %s, removing it: %s", relative_path, e)
            delete_file_best_effort(full_path)
        except OSError as e:
            logger.error("Failed to process workflow queue file %s: %s", relative_path, e)

    async def execute_workflow(self, item: WorkflowQueueItem) -> Optional[WorkflowRun]:
        """Load the queued workflow and run it. Returns None if the workflow is missing."""
        try:
            workflow = load_workflow(self.vault_path, item.workflow_id)
            if workflow is None:
                logger.error("Workflow not found: %s (run %s)", item.workflow_id, item.run_id)
                return None
            return await self.run_workflow(workflow, item.run_id, item.input)
        finally:
            self._processing_runs.discard(item.run_id)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _save_run(self, run: WorkflowRun) -> None:
        save_run(self.vault_path, run)

    async def run_workflow(self, workflow: WorkflowDefinition, run_id: str, input: Any = None) -> WorkflowRun:
        run = WorkflowRun(
            id=run_id,
            workflow_id=workflow.id,
            status="running",
            input=input,
            start_time=_now_ms(),
        )
        context = ExecutionContext(workflow_id=workflow.id, run_id=run_id, input=input)
        self._save_run(run)

        try:
            await self._run_topological(workflow, context, run)
            run.status = "completed"
            run.end_time = _now_ms()
            run.total_cycles = context.total_cycles
            completed = [r for r in run.step_results if r.status == "completed"]
            run.output = completed[-1].output if completed else None
            logger.info(
                "Workflow %s run %s completed in %d ms (%d cycles)",
                workflow.id,
                run_id,
                run.end_time - run.start_time,
                run.total_cycles,
            )
        except Exception as e:
            run.status = "failed"
            run.error = str(e)
            run.end_time = _now_ms()
            run.total_cycles = context.total_cycles
            logger.error("Workflow %s run %s failed: %s", workflow.id, run_id, run.error)
        finally:
            self._save_run(run)

        return run

    async def _run_topological(self, workflow: WorkflowDefinition, context: ExecutionContext, run: WorkflowRun) -> None:
        back_edges = identify_back_edges(workflow)
        upstream = build_forward_upstream_map(workflow, back_edges)
        state = TraversalState.for_workflow(workflow)
        nodes = workflow.node_by_id()

        while state.pending:
            ready = state.find_ready(upstream)
            if not ready:
                # Everything left sits on an untaken branch.
                break
            for node_id in ready:
                await self._execute_ready_node(workflow, nodes[node_id], context, run, state)

    async def _execute_ready_node(
        self,
        workflow: WorkflowDefinition,
        node: WorkflowNode,
        context: ExecutionContext,
        run: WorkflowRun,
        state: TraversalState,
    ) -> None:
        if context.total_cycles >= self.max_total_cycles:
            raise RuntimeError(f"Run exceeded the maximum of {self.max_total_cycles} steps")

        result = await self._execute_node(workflow, node, context, run)

        state.pending.discard(node.id)
        state.executed.add(node.id)

        if result.status == "failed":
            raise RuntimeError(f"Step {node.id} failed: {result.error}")

        if node.type == "condition":
            taken = "true" if result.output else "false"
            untaken = "false" if result.output else "true"
            outgoing = workflow.outgoing(node.id)
            for edge in outgoing:
                if branch_handle(edge.source_handle) == taken:
                    state.mark_branch_reachable(workflow, edge.target)
            for edge in outgoing:
                if branch_handle(edge.source_handle) == untaken:
                    state.mark_branch_unreachable(workflow, edge.target)

        self._rearm_loops(workflow, node.id, context, state)

    def _rearm_loops(
        self, workflow: WorkflowDefinition, node_id: str, context: ExecutionContext, state: TraversalState
    ) -> None:
        nodes = workflow.node_by_id()
        for edge in workflow.outgoing(node_id):
            if edge.target not in state.executed:
                continue
            target = nodes.get(edge.target)
            if target is None:
                continue
            if isinstance(target.data, ConditionNodeData):
                if context.visit_counts.get(target.id, 0) >= target.data.max_cycles:
                    continue
            state.reset_loop_section(workflow, edge.target, node_id)

    # ------------------------------------------------------------------
    # Single node
    # ------------------------------------------------------------------

    async def _execute_node(
        self, workflow: WorkflowDefinition, node: WorkflowNode, context: ExecutionContext, run: WorkflowRun
    ) -> StepResult:
        visit_count = context.visit_counts.get(node.id, 0) + 1
        context.visit_counts[node.id] = visit_count

        if isinstance(node.data, ConditionNodeData) and visit_count > node.data.max_cycles:
            logger.warning(
                "Condition %s exceeded maxCycles (%s); taking the false branch",
                node.id,
                node.data.max_cycles,
            )
            passthrough = self._resolve_input(workflow, node, context)
            now = _now_ms()
            ceiling = StepResult(
                node_id=node.id,
                status="completed",
                input=passthrough,
                output=False,
                start_time=now,
                end_time=now,
                cycle_count=visit_count,
            )
            run.step_results.append(ceiling)
            context.record_output(node.id, passthrough)
            self._save_run(run)
            return ceiling

        context.total_cycles += 1
        run.total_cycles = context.total_cycles
        node_input = self._resolve_input(workflow, node, context)

        running = StepResult(
            node_id=node.id,
            status="running",
            input=node_input,
            start_time=_now_ms(),
            cycle_count=visit_count,
        )
        slot = len(run.step_results)
        run.step_results.append(running)
        self._save_run(run)

        result = await self._execute_step(workflow, node, node_input, context)
        result.cycle_count = visit_count
        run.step_results[slot] = result
        self._save_run(run)

        if result.status == "completed":
            if node.type == "condition":
                # Conditions route; the payload passed on is their input.
                context.record_output(node.id, node_input)
            elif result.output is not None:
                context.record_output(node.id, result.output)

        return result

    async def _execute_step(
        self, workflow: WorkflowDefinition, node: WorkflowNode, node_input: Any, context: ExecutionContext
    ) -> StepResult:
        result = StepResult(node_id=node.id, status="running", input=node_input, start_time=_now_ms())
        try:
            handler = self._step_handlers.get(node.type)
            if handler is None:
                raise ValueError(f"Unknown step type: {node.type}")
            result.output = await handler(workflow, node, node_input, context)
            result.status = "completed"
        except Exception as e:
            logger.debug("Step %s failed", node.id, exc_info=True)
            result.status = "failed"
            result.error = str(e)
        result.end_time = _now_ms()
        return result

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    async def _execute_prompt_node(
        self, workflow: WorkflowDefinition, node: WorkflowNode, node_input: Any, context: ExecutionContext
    ) -> Any:
        targets = self._downstream_file_targets(workflow, node.id)
        input_context = self._build_input_context(workflow, node.id, context)
        output = await self.prompt_runner.run(node, input_context, context, targets)
        self._write_file_targets(output, targets)
        return output

    async def _execute_code_node(
        self, workflow: WorkflowDefinition, node: WorkflowNode, node_input: Any, context: ExecutionContext
    ) -> Any:
        targets = self._downstream_file_targets(workflow, node.id)
        attachments = self._collect_attachments(workflow, node.id, context)
        output = await self.code_runner.run(node, node_input, context, attachments)
        self._write_file_targets(output, targets)
        return output

    async def _execute_condition_node(
        self, workflow: WorkflowDefinition, node: WorkflowNode, node_input: Any, context: ExecutionContext
    ) -> bool:
        attachments = self._collect_attachments(workflow, node.id, context)
        return self.condition_runner.run(node, node_input, context, attachments)

    async def _execute_file_node(
        self, workflow: WorkflowDefinition, node: WorkflowNode, node_input: Any, context: ExecutionContext
    ) -> Optional[dict[str, str]]:
        data = node.data
        assert isinstance(data, FileNodeData)

        nodes = workflow.node_by_id()
        write_mode = any(
            edge.source in nodes and nodes[edge.source].type != "file"
            for edge in workflow.incoming(node.id)
        )
        logger.debug("Executing file node %s (%s, write_mode=%s)", node.id, data.path, write_mode)
        if write_mode:
            # Upstream prompt/code nodes already wrote the file.
            return None

        path = self._vault_file(data.path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {data.path}")
        return FileAttachment(path=data.path, content=path.read_text(encoding="utf-8")).to_json_dict()

    # ------------------------------------------------------------------
    # Inputs and file plumbing
    # ------------------------------------------------------------------

    def _resolve_input(self, workflow: WorkflowDefinition, node: WorkflowNode, context: ExecutionContext) -> Any:
        incoming = workflow.incoming(node.id)
        if not incoming:
            return context.input
        if len(incoming) == 1:
            return context.step_outputs.get(incoming[0].source)

        if node.type in ("condition", "code"):
            # Loops feed these from several edges; they see the latest value only.
            best = max(incoming, key=lambda e: context.recency(e.source))
            value = context.step_outputs.get(best.source)
            return value if value is not None else context.input

        return {
            edge.source: context.step_outputs[edge.source]
            for edge in incoming
            if context.step_outputs.get(edge.source) is not None
        }

    def _collect_attachments(
        self, workflow: WorkflowDefinition, node_id: str, context: ExecutionContext
    ) -> list[FileAttachment]:
        nodes = workflow.node_by_id()
        attachments = []
        for edge in workflow.incoming(node_id):
            source = nodes.get(edge.source)
            if source is None or source.type != "file":
                continue
            output = context.step_outputs.get(edge.source)
            if isinstance(output, dict) and "path" in output and "content" in output:
                attachments.append(FileAttachment(path=output["path"], content=output["content"]))
        return attachments

    def _build_input_context(
        self, workflow: WorkflowDefinition, node_id: str, context: ExecutionContext
    ) -> WorkflowInputContext:
        nodes = workflow.node_by_id()
        attachments = self._collect_attachments(workflow, node_id, context) or None
        incoming = workflow.incoming(node_id)

        if not incoming:
            return WorkflowInputContext(
                primary=None,
                context=[],
                workflow_input=context.input,
                attachments=attachments,
            )

        inputs: list[LabeledOutput] = []
        for edge in incoming:
            source = nodes.get(edge.source)
            if source is not None and source.type == "file":
                continue
            output = context.step_outputs.get(edge.source)
            if output is None:
                continue
            label = source.data.label if source is not None and source.data.label else edge.source
            inputs.append(LabeledOutput(node_id=edge.source, label=label, output=output))

        primary = max(inputs, key=lambda i: context.recency(i.node_id)) if inputs else None
        return WorkflowInputContext(
            primary=primary,
            context=[i for i in inputs if i is not primary],
            workflow_input=context.input,
            attachments=attachments,
        )

    def _downstream_file_targets(self, workflow: WorkflowDefinition, node_id: str) -> list[FileTarget]:
        nodes = workflow.node_by_id()
        targets = []
        for edge in workflow.outgoing(node_id):
            target = nodes.get(edge.target)
            if target is not None and isinstance(target.data, FileNodeData):
                targets.append(FileTarget(node_id=target.id, path=target.data.path, label=target.data.label))
        return targets

    def _vault_file(self, relative_path: str) -> Path:
        root = self.vault_path.resolve()
        path = (root / relative_path).resolve()
        if not path.is_relative_to(root):
            raise ValueError(f"File path escapes the vault: {relative_path}")
        return path

    def _write_file_targets(self, output: Any, targets: list[FileTarget]) -> None:
        if not targets or output is None:
            return
        content = format_output(output)
        for target in targets:
            path = self._vault_file(target.path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            logger.debug("Wrote %d chars to file node %s (%s)", len(content), target.node_id, target.path)
