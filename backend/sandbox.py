"""
Code Sandbox — runs author-supplied transformation code for function nodes.

The code is the body of a function receiving ``inputs`` (only the
whitelisted variables) and returning one value:

    total = inputs["price"] * inputs["qty"]
    return round(total, 2)

Before anything runs the source is checked statically: imports, global
statements and any name or attribute starting with an underscore are
rejected, which closes the `().__class__.__base__.__subclasses__()` route
back to the real builtins. It then runs in a separate interpreter with a
reduced set of builtins, a CPU/address-space rlimit and a wall-clock timeout.
Inputs and the result cross the boundary as JSON. Any failure, including
the code raising, degrades to None.
"""
from __future__ import annotations

import ast
import asyncio
import json
import math
import os
import sys
import textwrap
import structlog
from typing import Any, Optional

from config.settings import FunctionsConfig, get_settings

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

logger = structlog.get_logger()


class SandboxError(Exception):
    """Raised inside the sandbox runner path; never escapes run()."""


ALLOWED_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "int", "isinstance", "len", "list", "map", "max", "min", "range", "repr",
    "reversed", "round", "set", "sorted", "str", "sum", "tuple", "zip",
    "True", "False", "None", "Exception", "ValueError", "TypeError", "KeyError",
)

# Identifier-bearing fields across the ast node types (Name.id, Attribute.attr,
# FunctionDef.name, arg.arg, alias.asname, MatchClass.kwd_attrs, ...)
_IDENTIFIER_FIELDS = ("id", "attr", "name", "arg", "asname", "names", "kwd_attrs", "rest")
_FORBIDDEN_NODES = (ast.Import, ast.ImportFrom, ast.Global, ast.Nonlocal)
# Frame and code objects lead back to the runner's globals without any underscore
_FORBIDDEN_ATTRS = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom", "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await", "tb_frame", "tb_next",
    "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
})


def wrap_source(code: str) -> str:
    body = (code or "").strip() or "return None"
    return "def __flow_function__(inputs):\n" + textwrap.indent(body, "    ")


def check_source(code: str) -> None:
    """Reject code that could reach interpreter internals.

    Raises SandboxError (or SyntaxError) before any process is spawned.
    """
    tree = ast.parse(wrap_source(code))
    function = tree.body[0]
    for node in ast.walk(function):
        if node is function:
            continue
        if isinstance(node, _FORBIDDEN_NODES):
            raise SandboxError(f"{type(node).__name__.lower()} is not allowed")
        if isinstance(node, ast.Attribute) and node.attr in _FORBIDDEN_ATTRS:
            raise SandboxError(f"attribute '{node.attr}' is not allowed")
        for field in _IDENTIFIER_FIELDS:
            value = getattr(node, field, None)
            names = value if isinstance(value, list) else [value]
            for name in names:
                if isinstance(name, str) and name.startswith("_"):
                    raise SandboxError(f"name '{name}' is not allowed")
        if isinstance(node, ast.Constant) and isinstance(node.value, str) and "__" in node.value:
            # str.format can walk attributes: "{0.__class__}".format(x)
            raise SandboxError("dunder text is not allowed")


RUNNER = """
import builtins, json, sys
payload = json.loads(sys.stdin.read())
safe = {name: getattr(builtins, name) for name in payload["builtins"] if hasattr(builtins, name)}
source = payload["source"]
namespace = {"__builtins__": safe}
try:
    exec(compile(source, "<function>", "exec"), namespace)
    result = namespace["__flow_function__"](payload["inputs"])
    out = {"ok": True, "result": result}
except BaseException as exc:
    out = {"ok": False, "error": type(exc).__name__ + ": " + str(exc)}
sys.stdout.write(json.dumps(out, default=str))
"""


class CodeSandbox:
    """Executes the code mode of a function node in a child interpreter."""

    def __init__(self, config: FunctionsConfig = None):
        self.config = config or get_settings().functions

    async def run(self, code: str, inputs: dict[str, Any], timeout: Optional[float] = None) -> Any:
        """Return the code's result, or None on any failure."""
        timeout = timeout or self.config.code_timeout_seconds
        logger.info("code_function_started", inputs=list(inputs.keys()), timeout=timeout)
        try:
            result = await self._execute(code, inputs, timeout)
        except Exception as e:
            logger.error("code_function_failed", error=str(e))
            return None
        logger.info("code_function_completed", result_type=type(result).__name__)
        return result

    async def _execute(self, code: str, inputs: dict[str, Any], timeout: float) -> Any:
        check_source(code)
        payload = json.dumps({
            "source": wrap_source(code),
            "inputs": inputs,
            "builtins": list(ALLOWED_BUILTINS),
        }, default=str).encode()

        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-I", "-c", RUNNER,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={"PYTHONIOENCODING": "utf-8"},
            cwd=os.path.abspath(os.sep),
            preexec_fn=self._limits(timeout) if resource is not None else None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            raise SandboxError(f"timed out after {timeout}s")
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if not stdout:
            raise SandboxError(f"no output (exit {proc.returncode}): {stderr.decode(errors='replace')[:200]}")
        out = json.loads(stdout.decode())
        if not out.get("ok"):
            raise SandboxError(out.get("error", "execution failed"))
        return out.get("result")

    def _limits(self, timeout: float):
        cpu_seconds = max(1, math.ceil(timeout))
        memory = self.config.code_memory_mb * 1024 * 1024

        def apply():
            for limit, value in ((resource.RLIMIT_CPU, cpu_seconds), (resource.RLIMIT_AS, memory)):
                _, hard = resource.getrlimit(limit)
                if hard != resource.RLIM_INFINITY:
                    value = min(value, hard)
                resource.setrlimit(limit, (value, hard))

        return apply
