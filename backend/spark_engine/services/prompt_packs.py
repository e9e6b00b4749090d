"""
Prompt packs for AI-assisted workflow generation and editing.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from spark_engine.models.queue import ChatMessage


WORKFLOW_BUILDER_PROMPT = """
You are generating a Spark workflow definition.

OUTPUT RULES (critical):
- Output MUST be a single JSON object only.
- Do NOT output markdown fences.
- Do NOT include commentary or explanations.

If the user's request is underspecified or ambiguous, output ONLY:
{ "status": "needs_clarification", "questions": ["..."] }

WORKFLOW SCHEMA (version 1):
- id: string
- name: string
- description?: string
- version: 1
- nodes: array of { id, type, position: { x, y }, data }
- edges: array of { id, source, target, sourceHandle?, targetHandle?, label? }
- settings: {}
- created: ISO timestamp string
- updated: ISO timestamp string

NODE TYPES ALLOWED (ONLY these four, never invent other types):
- prompt
- code
- condition
- file

Do NOT create nodes with type "input", "output", "start", "end" or any other made-up type.

NODE DATA RULE:
- node.data.type MUST equal node.type

REQUIRED NODE DATA FIELDS:
- prompt node: data.prompt (string)
- code node: data.code (string)
- condition node: data.expression (string) and data.maxCycles (number)
- file node: data.path (vault-relative path), data.lastModified (use 0), data.fileSize (use 0)
  lastModified and fileSize must be literal numbers such as 0, never expressions.

FILE NODES:
- READ MODE (file -> other node): the file content is passed downstream in "attachments".
- WRITE MODE (other node -> file): the upstream node's output is written to data.path.
- A file node with only outgoing edges reads; a file node fed by a prompt or code node writes.

RUNTIME CONSTRAINTS:
- Only prompt/code/condition/file nodes exist at runtime.
- Outgoing edges from a condition node MUST set sourceHandle to "true" or "false".
  edge.label is for display only and is never used for routing.
- Condition nodes MUST have exactly 2 outgoing edges: one "true" branch and one "false" branch.
- settings MUST be {}.
- A condition that checks a previous step's output MUST have an incoming edge. Make a
  condition the entry node only to branch on the workflow's initial input.

NODE TITLES + DESCRIPTIONS:
- data.label: a short action-oriented title (2-5 words), e.g. "Generate ideas".
- data.description: a one-line summary of what the node does.

RUNTIME VARIABLES (do not invent others):
- prompt nodes:
  - data.prompt is a natural language instruction. It may reference previous output as "$input".
  - When a later code or condition node reads specific fields, set data.structuredOutput: true
    and data.outputSchema to valid JSON (a JSON Schema or an example shape).
- code nodes (Python):
  - The body of an async function with these variables:
    - input (the previous step's output)
    - attachments (list of {"path", "content"} dicts from file nodes in read mode)
    - context (dict with workflowId, runId, totalCycles, stepOutputs)
    - console (console.log(...) writes to the run log; print(...) works too)
  - Use `return` to hand the next output downstream (dict, list, str, number).
  - Imports are limited to: json, math, datetime, re, statistics, itertools, functools,
    collections, string, decimal, fractions.
- condition nodes (Python expression):
  - Variables: input, output (alias of input), iteration (1-based visit count of this
    node), maxCycles, attachments, context.
  - Read fields with input["field"] or get(input, "field", default).
  - Helpers: is_empty(x), is_null(x), has_property(x, "key"), len, str, int, float, abs, min, max.
  - true/false/null are accepted as aliases of True/False/None.
  - The result is only used for routing; the payload passed on is the previous output.

STRUCTURED OUTPUT EXAMPLE:
- prompt output JSON: { "items": ["..."], "selected": "..." }
- a code node can then read input["items"] and input["selected"]
""".strip()


WORKFLOW_EDITOR_SYSTEM_PROMPT = """
You are a Spark workflow editor assistant. You help users modify, debug and understand
their vault automation workflows through conversation.

## Your Capabilities

1. **Explain workflows**: describe what the workflow does and how data flows
2. **Modify workflows**: add, remove or update nodes and edges on request
3. **Debug issues**: use the run history to diagnose failures and suggest fixes
4. **Answer questions** about workflow concepts

## Workflow Structure

- **Nodes**: processing steps (prompt, code, condition, file)
- **Edges**: connections defining data flow
- **Settings**: always an empty object {}

### Node Types (ONLY these four exist)

Do NOT create nodes with type "input", "output", "start", "end" or any other made-up type.

**Prompt nodes** send instructions to an AI agent
- Required: data.prompt (may start with an @agent mention)
- Optional: data.structuredOutput (boolean), data.outputSchema (JSON string)

**Code nodes** run Python
- Required: data.code, the body of an async function; `return` the next output
- Variables: input, attachments, context, console

**Condition nodes** branch on a Python expression
- Required: data.expression, data.maxCycles (number)
- Must have exactly 2 outgoing edges with sourceHandle "true" and "false"

**File nodes** read or write vault files
- Required: data.path (vault-relative), data.lastModified (use 0), data.fileSize (use 0)
- Only outgoing edges: read mode, the content reaches downstream nodes as an attachment
- Incoming edge from a prompt/code node: write mode, the upstream output is written to the file

Every node needs data.label; data.description is optional; data.type must match node.type.

## Runtime Variables

**Prompt nodes:** $input for the previous output, attachments from file nodes are included.

**Code nodes:** input, context, attachments (list of {"path", "content"}).

**Condition nodes:** input / output, iteration (1-based visit count), maxCycles, attachments.
Read fields with input["field"]. Helpers: is_empty, is_null, has_property, get.

## Response Format

You MUST respond with a JSON object.

### For explanations or questions (no changes):
{
  "status": "completed",
  "responseMessage": "Your explanation here...",
  "updatedWorkflow": null
}

### When making workflow changes:
{
  "status": "completed",
  "responseMessage": "I've added a new prompt node...",
  "changesDescription": "Added 'Generate Ideas' prompt node after the input",
  "updatedWorkflow": { "...": "complete workflow definition" }
}

### When clarification is needed:
{
  "status": "needs_clarification",
  "questions": ["Which node should this connect to?"]
}

## Important Rules

1. Preserve existing nodes unless asked to delete them
2. Give new nodes and edges unique ids (type_timestamp_random)
3. Every edge must reference existing source and target ids
4. Place new nodes near related nodes
5. Condition edges must set sourceHandle to "true" or "false"
6. node.data.type must match node.type

## Context Provided

You receive the current workflow, the selected node id (if any), recent run history
with per-node results, and the conversation so far.
""".strip()


_RETURN_JSON_ONLY = "Return a single corrected JSON object only. No commentary, no markdown fences."


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def build_generation_prompt(prompt: str, *, allow_code: bool, clarifications: str | None = None) -> str:
    lines = [WORKFLOW_BUILDER_PROMPT, ""]
    if not allow_code:
        lines += ["IMPORTANT: Do NOT use any code nodes. Only prompt and condition nodes.", ""]
    lines += ["User prompt:", prompt.strip(), ""]
    if clarifications and clarifications.strip():
        lines += ["Clarifications:", clarifications.strip(), ""]
    return "\n".join(lines)


def build_generation_repair_prompt(errors: Sequence[str], last_json: str) -> str:
    return "\n".join(
        [
            "You previously generated a Spark workflow JSON but it failed validation.",
            "Fix ONLY what the validation errors require.",
            "",
            "Validation errors:",
            *[f"- {e}" for e in errors],
            "",
            "Invalid workflow JSON:",
            last_json,
            "",
            _RETURN_JSON_ONLY,
        ]
    )


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------


def build_workflow_edit_prompt(
    *,
    workflow: Any,
    message: str,
    selected_node_id: str | None = None,
    recent_runs: Sequence[Any] = (),
    conversation_history: Sequence[ChatMessage] = (),
) -> str:
    lines = [WORKFLOW_EDITOR_SYSTEM_PROMPT, "", "---", ""]

    lines += ["## Current Workflow", "", "```json", json.dumps(workflow, indent=2), "```", ""]

    if selected_node_id:
        lines += [f"## Selected Node ID: {selected_node_id}", ""]

    if recent_runs:
        lines += ["## Recent Run History", "", "```json", json.dumps(list(recent_runs), indent=2), "```", ""]

    if conversation_history:
        lines += ["## Conversation History", ""]
        for msg in conversation_history:
            lines += [f"**{msg.role}**: {msg.content}", ""]

    lines += ["## User Message", "", message, ""]
    lines += ["---", ""]
    lines.append("Respond with a JSON object as specified above. No markdown fences around the JSON.")
    return "\n".join(lines)


def build_edit_repair_prompt(errors: Sequence[str], last_json: str) -> str:
    return "\n".join(
        [
            "Your previous response had validation errors. Fix ONLY what the errors require.",
            "",
            "Validation errors:",
            *[f"- {e}" for e in errors],
            "",
            "Invalid JSON:",
            last_json,
            "",
            _RETURN_JSON_ONLY,
        ]
    )
