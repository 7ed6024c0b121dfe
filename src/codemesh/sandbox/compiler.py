"""
Agent code compiler.

Agent code is the body of an async function: top-level ``await`` and
``return`` are allowed. Compiling parses it, rejects constructs that would
reach outside the injected namespace, splices the statements into an
``async def`` and compiles the result.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
from types import CodeType

from codemesh.exceptions import CompilationError

SANDBOX_FILENAME = "<codemesh-sandbox>"
ENTRYPOINT = "__codemesh_main__"

_TEMPLATE = f"async def {ENTRYPOINT}():\n    pass\n"

# Attributes that expose frames, code objects, the running loop or
# str.format's attribute traversal.
FORBIDDEN_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next",
    "get_loop", "get_coro", "get_stack", "print_stack",
    "format", "format_map", "mro",
})


@dataclass(frozen=True)
class CompiledProgram:
    """A validated, compiled agent program ready to be run."""
    source: str
    code: CodeType
    filename: str = SANDBOX_FILENAME

    def instantiate(self, namespace: dict) -> object:
        """Execute the module code in ``namespace`` and return the entrypoint."""
        exec(self.code, namespace)
        return namespace[ENTRYPOINT]


class _CapabilityValidator(ast.NodeVisitor):
    """Collects the first construct that could escape the namespace."""

    def __init__(self):
        self.violation: tuple[int | None, str] | None = None

    def _reject(self, node: ast.AST, message: str) -> None:
        if self.violation is None:
            self.violation = (getattr(node, "lineno", None), message)

    def visit_Import(self, node: ast.Import) -> None:
        self._reject(node, "imports are not available; use the injected functions")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._reject(node, "imports are not available; use the injected functions")

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._reject(node, "class definitions are not allowed")

    def visit_Global(self, node: ast.Global) -> None:
        self._reject(node, "'global' is not allowed")

    def visit_Yield(self, node: ast.Yield) -> None:
        self._reject(node, "'yield' is not allowed")

    def visit_YieldFrom(self, node: ast.YieldFrom) -> None:
        self._reject(node, "'yield' is not allowed")

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._reject(node, "bare 'except:' is not allowed; name the exception type")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._reject(node, f"name '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        self._check_attribute(node, node.attr)
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        for attr in node.kwd_attrs:
            self._check_attribute(node, attr)
        self.generic_visit(node)

    def _check_attribute(self, node: ast.AST, attr: str) -> None:
        if attr.startswith("_"):
            self._reject(node, f"access to private attribute '{attr}' is not allowed")
        elif attr in FORBIDDEN_ATTRIBUTES:
            self._reject(node, f"access to attribute '{attr}' is not allowed")


def compile_program(source: str) -> CompiledProgram:
    """Validate and compile agent code.

    Raises:
        CompilationError: on a syntax error or a rejected construct. The
            diagnostic reads ``line N: message``.
    """
    try:
        body = compile(
            source,
            SANDBOX_FILENAME,
            "exec",
            flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )
    except SyntaxError as e:
        raise _syntax_failure(e) from e
    except ValueError as e:
        # null bytes in source
        raise CompilationError(str(e)) from e

    validator = _CapabilityValidator()
    validator.visit(body)
    if validator.violation is not None:
        lineno, message = validator.violation
        raise CompilationError(_diagnostic(lineno, message), lineno=lineno)

    module = ast.parse(_TEMPLATE, filename=SANDBOX_FILENAME)
    function = module.body[0]
    if body.body:
        function.body = body.body
    ast.fix_missing_locations(module)

    try:
        code = compile(module, SANDBOX_FILENAME, "exec", dont_inherit=True)
    except SyntaxError as e:
        # Errors only the compiler sees, e.g. 'nonlocal' without an enclosing binding
        raise _syntax_failure(e) from e

    return CompiledProgram(source=source, code=code)


def _syntax_failure(error: SyntaxError) -> CompilationError:
    return CompilationError(_diagnostic(error.lineno, error.msg), lineno=error.lineno)


def _diagnostic(lineno: int | None, message: str) -> str:
    if lineno is None:
        return message
    return f"line {lineno}: {message}"
