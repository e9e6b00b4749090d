"""
Error taxonomy for the engine and the user-facing chat error formatter.
"""

from __future__ import annotations

import re
from typing import Any


class SparkError(Exception):
    """Base error carrying a machine-readable code and optional context."""

    def __init__(self, message: str, code: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context or {}


class ConfigError(SparkError):
    def __init__(self, message: str, code: str = "INVALID_CONFIG", context: dict[str, Any] | None = None):
        super().__init__(message, code, context)


class ProviderError(SparkError):
    """Raised when the AI completion provider call fails."""

    def __init__(self, message: str, code: str = "PROVIDER_CALL_FAILED", context: dict[str, Any] | None = None):
        super().__init__(message, code, context)


class WorkflowExecutionError(SparkError):
    """A workflow step failed; always tagged with the offending node id."""

    code_name = "WORKFLOW_STEP_FAILED"

    def __init__(self, node_id: str, message: str):
        super().__init__(message, self.code_name, {"nodeId": node_id})
        self.node_id = node_id


class CodeExecutionError(WorkflowExecutionError):
    code_name = "CODE_EXECUTION_FAILED"


class ConditionEvaluationError(WorkflowExecutionError):
    code_name = "CONDITION_EVALUATION_FAILED"


class SandboxError(SparkError):
    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "SANDBOX_VIOLATION", context)


# ---------------------------------------------------------------------------
# Chat error formatting
# ---------------------------------------------------------------------------

_SUGGESTIONS: dict[str, list[str]] = {
    "AI_ERROR": [
        "Check your AI provider configuration",
        "Try again in a moment",
    ],
    "PROVIDER_CALL_FAILED": [
        "Check your network connection",
        "Verify the model name is available for your API key",
        "Try again in a moment",
    ],
    "PROVIDER_NOT_CONFIGURED": [
        "Set GEMINI_API_KEY in your environment or .env file",
        "Restart the engine after updating the configuration",
    ],
    "INVALID_CONFIG": [
        "Review the SPARK_* environment variables",
        "Restart the engine after updating the configuration",
    ],
    "RESULT_WRITE_ERROR": [
        "Check that the vault directory is writable",
        "Make sure the disk is not full",
    ],
    "CODE_EXECUTION_FAILED": [
        "Check the code node for syntax errors",
        "Keep code nodes under the execution time limit",
    ],
    "CONDITION_EVALUATION_FAILED": [
        "Check the condition expression syntax",
        "Use input[\"field\"] to read fields from the previous step",
    ],
}

_EMBEDDED_MESSAGE_RE = re.compile(r'\{.*?"message"\s*:\s*"([^"]+)"')
_PROVIDER_PREFIX_RE = re.compile(r"^(?:Gemini|Claude) (?:Agent SDK|API) error:\s*(?:\d+\s*)?")


def get_suggestions(code: str | None) -> list[str]:
    if not code:
        return []
    return list(_SUGGESTIONS.get(code, []))


def format_error_for_chat(error: BaseException | str) -> str:
    """
    Turn an exception into a message suitable for showing in the chat UI.

    Nested provider payloads are reduced to their inner ``message``; provider
    prefixes are stripped; known error codes get numbered suggestions.
    """
    message = str(error)

    match = _EMBEDDED_MESSAGE_RE.search(message)
    if match:
        message = match.group(1)
    else:
        message = _PROVIDER_PREFIX_RE.sub("", message)

    code = getattr(error, "code", None)
    suggestions = get_suggestions(code if isinstance(code, str) else None)
    if suggestions:
        numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(suggestions, start=1))
        message += f"\n\n💡 **Suggestions:**\n{numbered}"

    return message or "An unexpected error occurred"
