"""
Process sandbox for code nodes.

Each execution starts a fresh isolated interpreter running
``sandbox_child.py``, feeds it the code and bindings as JSON on stdin and
waits for a JSON reply under a hard wall-clock timeout. The child applies
CPU and memory rlimits to itself before running user code.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from spark_engine.errors import SandboxError
from spark_engine.services.sandbox_child import validate_code

logger = logging.getLogger(__name__)

CHILD_SCRIPT = Path(__file__).with_name("sandbox_child.py")


@dataclass
class SandboxConfig:
    timeout_seconds: float = 5.0
    memory_mb: int = 512


@dataclass
class SandboxResult:
    result: Any = None
    logs: list[dict[str, str]] = field(default_factory=list)


def check_code(code: str) -> None:
    """
    Reject code the child would refuse, before paying for a process.

    Raises:
        SandboxError: On syntax errors or disallowed constructs
    """
    try:
        validate_code(code)
    except SyntaxError as e:
        raise SandboxError(f"SyntaxError: {e.msg} (line {e.lineno})") from e
    except ValueError as e:
        raise SandboxError(str(e)) from e


async def run_sandboxed(code: str, bindings: dict[str, Any], config: SandboxConfig) -> SandboxResult:
    """
    Execute code-node source in a child interpreter.

    Raises:
        SandboxError: If the code is rejected, fails, times out or the child dies
    """
    check_code(code)

    request = {
        "code": code,
        "bindings": bindings,
        "limits": {
            "memoryMb": config.memory_mb,
            "cpuSeconds": math.ceil(config.timeout_seconds) + 1,
        },
    }
    payload = json.dumps(request, default=str).encode("utf-8")

    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-I",
        str(CHILD_SCRIPT),
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=config.timeout_seconds)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise SandboxError(
            f"Execution timed out after {config.timeout_seconds:g}s",
            context={"timeoutSeconds": config.timeout_seconds},
        )

    if proc.returncode != 0 or not stdout:
        detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
        raise SandboxError(
            f"Sandbox process exited with code {proc.returncode}"
            + (f": {detail[-1]}" if detail else "")
        )

    try:
        response = json.loads(stdout.decode("utf-8"))
    except json.JSONDecodeError as e:
        raise SandboxError(f"Sandbox returned malformed output: {e}") from e

    logs = response.get("logs") or []
    if not response.get("ok"):
        raise SandboxError(response.get("error") or "Unknown sandbox error", context={"logs": logs})
    return SandboxResult(result=response.get("result"), logs=logs)
