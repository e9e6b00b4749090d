"""
Condition step runner.

Expressions are Python expressions evaluated by walking a restricted AST:
literals, names, boolean logic, comparisons, arithmetic, subscripts,
conditional expressions and calls to a fixed set of helpers. Attribute
access is rejected outright, so expressions cannot reach object internals.
"""

from __future__ import annotations

import ast
import logging
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from spark_engine.errors import ConditionEvaluationError
from spark_engine.models.workflow import ConditionNodeData, ExecutionContext, FileAttachment, WorkflowNode

logger = logging.getLogger(__name__)

_MAX_RECURSION_DEPTH = 100
_MAX_POWER_EXPONENT = 1000
_MAX_REPEAT_LENGTH = 100_000


def _safe_pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > _MAX_POWER_EXPONENT:
        raise ValueError("exponent too large")
    return operator.pow(base, exponent)


def _safe_mul(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if len(seq) * count > _MAX_REPEAT_LENGTH:
                raise ValueError("repetition result too large")
    return operator.mul(left, right)


_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _safe_mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: _safe_pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_LITERAL_ALIASES = {"true": True, "false": False, "null": None, "None": None, "True": True, "False": False}


# ---------------------------------------------------------------------------
# Helpers exposed to expressions
# ---------------------------------------------------------------------------


def is_null(value: Any) -> bool:
    return value is None


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def has_property(obj: Any, key: Any) -> bool:
    return isinstance(obj, Mapping) and key in obj


def get(obj: Any, key: Any, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    if isinstance(obj, Sequence) and not isinstance(obj, str) and isinstance(key, int):
        return obj[key] if -len(obj) <= key < len(obj) else default
    return default


EXPRESSION_HELPERS: dict[str, Callable[..., Any]] = {
    "is_null": is_null,
    "is_empty": is_empty,
    "has_property": has_property,
    "isNull": is_null,
    "isEmpty": is_empty,
    "hasProperty": has_property,
    "get": get,
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sum": sum,
    "any": any,
    "all": all,
    "sorted": sorted,
}


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Callable[..., Any]],
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")

    def ev(child: ast.AST) -> Any:
        return _eval_node(child, names, allowed_callables, _depth + 1)

    if isinstance(node, ast.Expression):
        return ev(node.body)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in _LITERAL_ALIASES:
            return _LITERAL_ALIASES[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = ev(value)
                if not result:
                    break
            return result
        result = False
        for value in node.values:
            result = ev(value)
            if result:
                break
        return result

    if isinstance(node, ast.UnaryOp):
        operand = ev(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        return op(ev(node.left), ev(node.right))

    if isinstance(node, ast.Compare):
        left = ev(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = ev(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        return ev(node.body) if ev(node.test) else ev(node.orelse)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ValueError("callable references must be simple names")
        func = allowed_callables.get(node.func.id)
        if func is None:
            raise ValueError(f"function {node.func.id} is not permitted")
        for kw in node.keywords:
            if kw.arg is None:
                raise ValueError("keyword unpacking (**kwargs) not permitted")
        if any(isinstance(arg, ast.Starred) for arg in node.args):
            raise ValueError("argument unpacking (*args) not permitted")
        args = [ev(arg) for arg in node.args]
        kwargs = {kw.arg: ev(kw.value) for kw in node.keywords}
        return func(*args, **kwargs)

    if isinstance(node, ast.Subscript):
        target = ev(node.value)
        if isinstance(node.slice, ast.Slice):
            index: Any = slice(
                ev(node.slice.lower) if node.slice.lower else None,
                ev(node.slice.upper) if node.slice.upper else None,
                ev(node.slice.step) if node.slice.step else None,
            )
        else:
            index = ev(node.slice)
        if not isinstance(target, (Mapping, Sequence)):
            raise ValueError(f"cannot index into {type(target).__name__}")
        return target[index]

    if isinstance(node, ast.Tuple):
        return tuple(ev(elt) for elt in node.elts)

    if isinstance(node, ast.List):
        return [ev(elt) for elt in node.elts]

    if isinstance(node, ast.Dict):
        if any(k is None for k in node.keys):
            raise ValueError("dict unpacking not permitted")
        return {ev(k): ev(v) for k, v in zip(node.keys, node.values)}

    if isinstance(node, ast.Attribute):
        raise ValueError(f'attribute access is not allowed; use input["{node.attr}"] instead')

    raise ValueError(f"unsupported expression: {type(node).__name__}")


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Callable[..., Any]] = EXPRESSION_HELPERS,
) -> Any:
    """Evaluate a Python expression with a constrained AST allowlist."""
    try:
        parsed = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"invalid expression: {exc.msg}") from exc
    return _eval_node(parsed, names, allowed_callables)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ConditionRunner:
    def run(
        self,
        node: WorkflowNode,
        input: Any,
        context: ExecutionContext,
        attachments: list[FileAttachment] | None = None,
    ) -> bool:
        """
        Evaluate a condition node's expression against its input.

        Raises:
            ConditionEvaluationError: If the expression is invalid or fails
        """
        data = node.data
        assert isinstance(data, ConditionNodeData)

        names = {
            "input": input,
            "output": input,
            "context": {
                "workflowId": context.workflow_id,
                "runId": context.run_id,
                "totalCycles": context.total_cycles,
            },
            "iteration": context.visit_counts.get(node.id, 0),
            "maxCycles": data.max_cycles,
            "attachments": [a.to_json_dict() for a in attachments or []],
        }

        logger.debug("Running condition step %s: %s", node.id, data.expression)
        try:
            result = bool(safe_eval_expr(data.expression, names))
        except Exception as e:
            logger.error("Condition evaluation failed for %s (%s): %s", node.id, data.expression, e)
            raise ConditionEvaluationError(node.id, f"Condition evaluation failed: {e}") from e

        logger.debug("Condition %s evaluated to %s", node.id, result)
        return result
