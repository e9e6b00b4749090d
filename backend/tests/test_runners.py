"""
Tests for the step runners: condition expressions, sandboxed code and prompt
agent extraction.
"""

import sys
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from spark_engine.errors import CodeExecutionError, ConditionEvaluationError, SandboxError
from spark_engine.models.workflow import ExecutionContext, FileAttachment, WorkflowNode
from spark_engine.services.runners.code_runner import CodeRunner
from spark_engine.services.runners.condition_runner import ConditionRunner, safe_eval_expr
from spark_engine.services.runners.prompt_runner import PromptRunner, extract_agent, format_output
from spark_engine.services.sandbox import SandboxConfig, check_code
from spark_engine.models.workflow import WorkflowInputContext

from fakes import RecordingCommandExecutor, code_node, condition_node, prompt_node


def _context(**kwargs):
    return ExecutionContext(workflow_id="wf_test", run_id="run_1", **kwargs)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class TestConditionExpressions:
    def test_comparisons_and_boolean_logic(self):
        names = {"input": {"score": 7, "tags": ["a", "b"]}}
        assert safe_eval_expr('input["score"] > 5 and "a" in input["tags"]', names) is True
        assert safe_eval_expr('not (input["score"] >= 10 or len(input["tags"]) > 2)', names) is True

    def test_helpers(self):
        names = {"input": {"items": [], "title": None}}
        assert safe_eval_expr('is_empty(input["items"])', names) is True
        assert safe_eval_expr('isNull(input["title"])', names) is True
        assert safe_eval_expr('has_property(input, "items")', names) is True
        assert safe_eval_expr('get(input, "missing", 3) + 1', names) == 4

    def test_json_style_literals(self):
        assert safe_eval_expr("true and not false", {}) is True
        assert safe_eval_expr("null", {}) is None

    def test_attribute_access_is_rejected(self):
        with pytest.raises(ValueError, match=r'use input\["score"\]'):
            safe_eval_expr("input.score > 1", {"input": {"score": 2}})

    def test_unknown_functions_are_rejected(self):
        with pytest.raises(ValueError, match="not permitted"):
            safe_eval_expr('open("/etc/passwd")', {})

    def test_unknown_names_are_rejected(self):
        with pytest.raises(ValueError, match="unknown name"):
            safe_eval_expr("secret == 1", {})


class TestConditionRunner:
    def test_binds_iteration_and_max_cycles(self):
        node = WorkflowNode.model_validate(condition_node("loop", "iteration < maxCycles", max_cycles=3))
        context = _context(visit_counts={"loop": 2})
        assert ConditionRunner().run(node, {}, context) is True
        context.visit_counts["loop"] = 3
        assert ConditionRunner().run(node, {}, context) is False

    def test_reads_attachments(self):
        node = WorkflowNode.model_validate(condition_node("c", 'len(attachments) == 1 and "draft" in attachments[0]["content"]'))
        attachments = [FileAttachment(path="notes/a.md", content="a draft")]
        assert ConditionRunner().run(node, None, _context(), attachments) is True

    def test_failure_is_tagged_with_node_id(self):
        node = WorkflowNode.model_validate(condition_node("gate", 'input["missing"] > 1'))
        with pytest.raises(ConditionEvaluationError) as exc_info:
            ConditionRunner().run(node, {}, _context())
        assert exc_info.value.node_id == "gate"
        assert "Condition evaluation failed" in str(exc_info.value)


# ---------------------------------------------------------------------------
# Code sandbox
# ---------------------------------------------------------------------------


class TestSandboxChecks:
    @pytest.mark.parametrize(
        "code",
        [
            "import os\nreturn 1",
            "from subprocess import run\nreturn 1",
            "return ().__class__",
            "return __builtins__",
            'return "{0.__class__}".format(1)',
            "import socket",
        ],
    )
    def test_rejects_escape_hatches(self, code):
        with pytest.raises(SandboxError):
            check_code(code)

    def test_syntax_errors_are_reported(self):
        with pytest.raises(SandboxError, match="SyntaxError"):
            check_code("return (")

    def test_allowed_imports_pass(self):
        check_code("import json\nimport math\nfrom collections import Counter\nreturn 1")


class TestCodeRunner:
    @pytest.mark.asyncio
    async def test_bare_return_with_bindings(self):
        node = WorkflowNode.model_validate(
            code_node("k1", 'return {"doubled": input["n"] * 2, "run": context["runId"]}')
        )
        result = await CodeRunner().run(node, {"n": 21}, _context())
        assert result == {"doubled": 42, "run": "run_1"}

    @pytest.mark.asyncio
    async def test_allowed_modules_and_attachments(self):
        code = (
            "import json\n"
            "import math\n"
            'data = json.loads(attachments[0]["content"])\n'
            'return math.floor(data["value"])'
        )
        node = WorkflowNode.model_validate(code_node("k1", code))
        attachments = [FileAttachment(path="data.json", content='{"value": 3.7}')]
        assert await CodeRunner().run(node, None, _context(), attachments) == 3

    @pytest.mark.asyncio
    async def test_await_inside_code(self):
        code = "async def later():\n    return 5\nreturn await later()"
        node = WorkflowNode.model_validate(code_node("k1", code))
        assert await CodeRunner().run(node, None, _context()) == 5

    @pytest.mark.asyncio
    async def test_console_output_is_forwarded(self, caplog):
        code = 'console.log("working", 1)\nprint("printed")\nreturn "done"'
        node = WorkflowNode.model_validate(code_node("k1", code))
        with caplog.at_level("DEBUG", logger="spark_engine.services.runners.code_runner"):
            assert await CodeRunner().run(node, None, _context()) == "done"
        assert "working 1" in caplog.text
        assert "printed" in caplog.text

    @pytest.mark.asyncio
    async def test_exception_becomes_code_execution_error(self):
        node = WorkflowNode.model_validate(code_node("broken", 'raise ValueError("bad input")'))
        with pytest.raises(CodeExecutionError) as exc_info:
            await CodeRunner().run(node, None, _context())
        assert exc_info.value.node_id == "broken"
        assert "ValueError: bad input" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_blocked_import_at_runtime(self):
        node = WorkflowNode.model_validate(code_node("net", "import urllib\nreturn 1"))
        with pytest.raises(CodeExecutionError, match="not allowed"):
            await CodeRunner().run(node, None, _context())

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self):
        node = WorkflowNode.model_validate(code_node("spin", "while True:\n    pass"))
        runner = CodeRunner(SandboxConfig(timeout_seconds=1))
        with pytest.raises(CodeExecutionError) as exc_info:
            await runner.run(node, None, _context())
        assert exc_info.value.node_id == "spin"
        assert "timed out" in str(exc_info.value)


# ---------------------------------------------------------------------------
# Prompt steps
# ---------------------------------------------------------------------------


class TestPromptRunner:
    def test_extract_agent(self):
        assert extract_agent("@writer draft the post") == ("writer", "draft the post")
        assert extract_agent("Summarize @notes.md please") == (None, "Summarize @notes.md please")
        assert extract_agent("no agent here") == (None, "no agent here")

    def test_format_output(self):
        assert format_output("plain") == "plain"
        assert format_output({"content": "wrapped"}) == "wrapped"
        assert format_output({"a": 1}) == '{\n  "a": 1\n}'

    @pytest.mark.asyncio
    async def test_builds_request_for_executor(self):
        executor = RecordingCommandExecutor(replies={"p1": "drafted"})
        node = WorkflowNode.model_validate(prompt_node("p1", "@editor tighten this"))
        result = await PromptRunner(executor).run(node, WorkflowInputContext(workflow_input="text"), _context())

        assert result == {"content": "drafted"}
        request = executor.requests[0]
        assert request.agent_id == "editor"
        assert request.task == "tighten this"
        assert request.step_label == "p1"
        assert request.run_id == "run_1"

    @pytest.mark.asyncio
    async def test_structured_output_is_parsed(self):
        executor = RecordingCommandExecutor(replies={"p1": '```json\n{"score": 9}\n```'})
        node = WorkflowNode.model_validate(
            prompt_node("p1", "Score it", structuredOutput=True, outputSchema='{"score": 0}')
        )
        result = await PromptRunner(executor).run(node, WorkflowInputContext(), _context())
        assert result == {"score": 9}
