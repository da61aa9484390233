"""Static checks for user-authored Playwright scripts.

This is a gate, not a sandbox: the child process still runs with a reduced
environment and a wall-clock budget. The checks only reject scripts that are
obviously trying to reach outside the browser session.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
from typing import Protocol

import structlog

from e2e_engine.errors import ValidationError

logger = structlog.get_logger(__name__)


BLOCKED_MODULES = frozenset(
    {
        "os",
        "sys",
        "subprocess",
        "socket",
        "shutil",
        "multiprocessing",
        "threading",
        "ctypes",
        "http",
        "urllib",
        "ftplib",
        "smtplib",
        "telnetlib",
        "pty",
        "signal",
        "importlib",
        "inspect",
        "builtins",
        "pickle",
        "marshal",
        "tempfile",
        "pathlib",
        "io",
        "glob",
        "resource",
        "requests",
        "httpx",
    }
)

ALLOWED_MODULES = frozenset(
    {
        "playwright",
        "asyncio",
        "re",
        "json",
        "time",
        "datetime",
        "math",
        "random",
        "string",
        "typing",
        "dataclasses",
        "collections",
        "itertools",
        "functools",
        "decimal",
        "uuid",
        "base64",
        "hashlib",
    }
)

BLOCKED_NAMES = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "__import__",
        "open",
        "globals",
        "locals",
        "vars",
        "breakpoint",
        "input",
        "__builtins__",
    }
)

BLOCKED_ATTRIBUTES = frozenset(
    {
        "__builtins__",
        "__subclasses__",
        "__globals__",
        "__code__",
        "__closure__",
        "__class__",
        "__bases__",
        "__mro__",
        "__dict__",
        "__import__",
        "__loader__",
        "__spec__",
        "f_globals",
        "f_locals",
        "gi_frame",
        "cr_frame",
    }
)


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    error: str | None = None


class Validator(Protocol):
    def validate(self, source: str) -> ValidationOutcome:
        ...


def parse_script(source: str, filename: str = "<script>") -> ast.Module:
    """Parse a script body; top-level ``await`` is allowed because bodies get wrapped later."""
    return compile(source, filename, "exec", flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)


class ScriptValidator:
    def __init__(
        self,
        *,
        blocked_modules: frozenset[str] = BLOCKED_MODULES,
        blocked_names: frozenset[str] = BLOCKED_NAMES,
        blocked_attributes: frozenset[str] = BLOCKED_ATTRIBUTES,
    ) -> None:
        self.blocked_modules = blocked_modules
        self.blocked_names = blocked_names
        self.blocked_attributes = blocked_attributes

    def validate(self, source: str) -> ValidationOutcome:
        try:
            self.check(source)
        except ValidationError as exc:
            logger.warning("Script validation failed", error=str(exc))
            return ValidationOutcome(valid=False, error=str(exc))
        logger.debug("Script validation successful")
        return ValidationOutcome(valid=True)

    def check(self, source: str) -> None:
        if not str(source or "").strip():
            raise ValidationError("Validation Error: Script is empty.")
        try:
            tree = parse_script(source)
        except SyntaxError as exc:
            raise ValidationError(f"Syntax Error: {exc.msg} (line {exc.lineno})") from exc
        except ValueError as exc:
            # e.g. null bytes in the source
            raise ValidationError(f"Syntax Error: {exc}") from exc

        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    self._check_module(alias.name, "Importing")
            elif isinstance(node, ast.ImportFrom):
                if node.level:
                    raise ValidationError("Security Error: Relative imports are not allowed.")
                self._check_module(node.module or "", "Importing")
                if any(alias.name == "*" for alias in node.names):
                    raise ValidationError("Security Error: Star imports are not allowed.")
            elif isinstance(node, ast.Name) and node.id in self.blocked_names:
                raise ValidationError(f"Security Error: Usage of '{node.id}' is not allowed.")
            elif isinstance(node, ast.Attribute) and node.attr in self.blocked_attributes:
                raise ValidationError(f"Security Error: Access to attribute '{node.attr}' is not allowed.")
            elif isinstance(node, ast.While) and _is_constant_true(node.test) and not _has_break(node):
                raise ValidationError("Security Error: Potential infinite loop detected.")

    def _check_module(self, name: str, verb: str) -> None:
        root = name.split(".", 1)[0]
        if root in ALLOWED_MODULES:
            return
        if root in self.blocked_modules:
            raise ValidationError(f"Security Error: {verb} module '{name}' is not allowed.")
        logger.warning("Unknown module imported", module=name)


def _is_constant_true(test: ast.expr) -> bool:
    return isinstance(test, ast.Constant) and bool(test.value) and not isinstance(test.value, str)


def _has_break(loop: ast.While) -> bool:
    stack: list[ast.AST] = list(loop.body)
    while stack:
        node = stack.pop()
        if isinstance(node, ast.Break):
            return True
        if isinstance(node, (ast.Return, ast.Raise)):
            return True
        # A break inside a nested loop or function belongs to that scope.
        if isinstance(node, (ast.While, ast.For, ast.AsyncFor, ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda)):
            continue
        stack.extend(ast.iter_child_nodes(node))
    return False
