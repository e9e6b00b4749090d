"""
Child side of the code-node sandbox.

Executed as ``python -I sandbox_child.py`` by ``spark_engine.services.sandbox``.
Reads one JSON request from stdin::

    {"code": str, "bindings": {"input", "attachments", "context"},
     "limits": {"memoryMb": int, "cpuSeconds": int}}

and writes one JSON response to stdout::

    {"ok": bool, "result": ..., "logs": [{"level", "message"}], "error": str}

This module must only import the standard library: it runs in an isolated
interpreter without the engine on ``sys.path``. The parent imports
``validate_code`` from here so both sides enforce the same rules.
"""

import ast
import asyncio
import inspect
import json
import sys
import types

ALLOWED_MODULES = frozenset(
    {
        "json",
        "math",
        "datetime",
        "re",
        "statistics",
        "itertools",
        "functools",
        "collections",
        "string",
        "decimal",
        "fractions",
    }
)

# Public names that still lead to frames, globals or attribute-walking formatters.
FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "f_back",
        "f_globals",
        "f_locals",
        "f_builtins",
        "f_code",
        "tb_frame",
        "tb_next",
    }
)

_HIDDEN_MODULE_MEMBERS = {"string": {"Formatter"}}

ENTRY_NAME = "__spark_main__"
_ENTRY_TEMPLATE = f"async def {ENTRY_NAME}(input, attachments, context, console):\n    pass\n"

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bin", "bool", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "frozenset", "hash", "hex", "int", "isinstance", "iter",
    "len", "list", "map", "max", "min", "next", "oct", "ord", "pow", "range",
    "repr", "reversed", "round", "set", "slice", "sorted", "str", "sum",
    "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "NotImplementedError",
    "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError",
)


class SandboxViolation(ValueError):
    pass


# ---------------------------------------------------------------------------
# Static checks
# ---------------------------------------------------------------------------


def validate_code(code):
    """Parse user code and reject constructs that reach interpreter internals.

    Returns the parsed module. Raises SyntaxError or SandboxViolation.
    """
    tree = ast.parse(code, mode="exec")
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in FORBIDDEN_ATTRIBUTES:
                raise SandboxViolation(f"Access to attribute '{node.attr}' is not allowed")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SandboxViolation(f"Use of name '{node.id}' is not allowed")
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            names = [node.module or ""] if isinstance(node, ast.ImportFrom) else [a.name for a in node.names]
            for name in names:
                if name not in ALLOWED_MODULES:
                    raise SandboxViolation(f"Import of '{name}' is not allowed")
            if isinstance(node, ast.ImportFrom):
                for alias in node.names:
                    if alias.name.startswith("_") or alias.name == "*":
                        raise SandboxViolation(f"Import of '{alias.name}' is not allowed")
    return tree


# ---------------------------------------------------------------------------
# Runtime surface
# ---------------------------------------------------------------------------


def _module_proxy(name):
    module = __import__(name)
    hidden = _HIDDEN_MODULE_MEMBERS.get(name, set())
    public = {
        attr: getattr(module, attr)
        for attr in dir(module)
        if not attr.startswith("_")
        and attr not in hidden
        and not isinstance(getattr(module, attr), types.ModuleType)
    }
    return types.SimpleNamespace(**public)


def _make_importer():
    cache = {}

    def _import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0 or name not in ALLOWED_MODULES:
            raise ImportError(f"Import of '{name}' is not allowed")
        if name not in cache:
            cache[name] = _module_proxy(name)
        return cache[name]

    return _import


def _render(args):
    return " ".join(a if isinstance(a, str) else json.dumps(a, default=str) for a in args)


class _Console:
    def __init__(self, logs):
        self._logs = logs

    def log(self, *args):
        self._logs.append({"level": "log", "message": _render(args)})

    def info(self, *args):
        self._logs.append({"level": "log", "message": _render(args)})

    def warn(self, *args):
        self._logs.append({"level": "warn", "message": _render(args)})

    def error(self, *args):
        self._logs.append({"level": "error", "message": _render(args)})


def _build_builtins(logs):
    import builtins

    safe = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
    safe["__import__"] = _make_importer()
    safe["__build_class__"] = builtins.__build_class__
    safe["print"] = lambda *args, **kwargs: logs.append({"level": "log", "message": _render(args)})
    return safe


def _compile_entry(user_tree):
    wrapper = ast.parse(_ENTRY_TEMPLATE, mode="exec")
    func = wrapper.body[0]
    if user_tree.body:
        func.body = user_tree.body
    ast.fix_missing_locations(wrapper)
    return compile(wrapper, "<code-node>", "exec")


def _apply_limits(limits):
    if sys.platform == "win32":
        return
    import resource

    memory_mb = limits.get("memoryMb")
    if memory_mb:
        _lower_limit(resource, resource.RLIMIT_AS, int(memory_mb) * 1024 * 1024)
    cpu_seconds = limits.get("cpuSeconds")
    if cpu_seconds:
        _lower_limit(resource, resource.RLIMIT_CPU, int(cpu_seconds))


def _lower_limit(resource, which, value):
    _, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (value, hard))


def run(request):
    logs = []
    try:
        tree = validate_code(request["code"])
        code_obj = _compile_entry(tree)
        namespace = {"__builtins__": _build_builtins(logs), "__name__": "code_node"}
        _apply_limits(request.get("limits") or {})
        exec(code_obj, namespace)

        bindings = request.get("bindings") or {}
        result = namespace[ENTRY_NAME](
            bindings.get("input"),
            bindings.get("attachments") or [],
            bindings.get("context") or {},
            _Console(logs),
        )
        result = asyncio.run(result)
        if inspect.iscoroutine(result):
            result = asyncio.run(result)
        return {"ok": True, "result": result, "logs": logs}
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        return {"ok": False, "error": f"{type(exc).__name__}: {message}", "logs": logs}


def main():
    request = json.loads(sys.stdin.read())
    response = run(request)
    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.flush()


if __name__ == "__main__":
    main()
