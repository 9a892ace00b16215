"""
Read-only code analysis tools.

- LintFileTool: syntax check by file type (Python, JSON, YAML)
- CodeOutlineTool: classes, functions, methods and imports of a Python file

Problems found in the analysed file are reported as result content; only a
missing or unreadable file is a tool error.
"""

import ast
import json
import logging
from typing import List, Optional

import yaml
from pydantic import Field

from tools.base import (
    CancellationToken,
    ExecutionError,
    InvalidParameters,
    OutputCallback,
    ResourceNotFound,
    ToolInvocation,
    ToolInvocationResult,
    ToolParams,
    check_cancelled,
)
from tools.file_tools import MAX_FILE_SIZE, WorkspaceTool

logger = logging.getLogger(__name__)

PYTHON_SUFFIXES = {".py", ".pyw"}
JSON_SUFFIXES = {".json"}
YAML_SUFFIXES = {".yaml", ".yml"}


class PathParams(ToolParams):
    path: str = Field(description="Path to the file (relative to the workspace)")


def _load_source(tool: WorkspaceTool, path_arg: str, resolved) -> str:
    if not resolved.is_file():
        raise ResourceNotFound(f"File not found: {path_arg}")
    size = resolved.stat().st_size
    if size > MAX_FILE_SIZE:
        raise ExecutionError(f"File too large: {size} bytes (max {MAX_FILE_SIZE})")
    try:
        return resolved.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ExecutionError(f"Failed to read file: {e}") from e


def lint_source(source: str, suffix: str) -> List[str]:
    """Return a list of ``line N: message`` problems; empty means clean."""
    suffix = suffix.lower()
    if suffix in PYTHON_SUFFIXES:
        try:
            ast.parse(source)
        except SyntaxError as e:
            return [f"line {e.lineno}: {e.msg}"]
        return []
    if suffix in JSON_SUFFIXES:
        try:
            json.loads(source)
        except json.JSONDecodeError as e:
            return [f"line {e.lineno}: {e.msg}"]
        return []
    if suffix in YAML_SUFFIXES:
        try:
            list(yaml.safe_load_all(source))
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            line = mark.line + 1 if mark is not None else "?"
            problem = getattr(e, "problem", None) or str(e)
            return [f"line {line}: {problem}"]
        return []
    raise InvalidParameters(f"Unsupported file type for linting: {suffix or '(none)'}")


class LintFileInvocation(ToolInvocation):
    def __init__(self, tool: "LintFileTool", params: PathParams):
        super().__init__(params)
        self.tool = tool
        self.path = tool.resolve_path(params.path)

    def describe(self) -> str:
        return f"Lint {self.tool.relative(self.path)}"

    def locations(self) -> List[str]:
        return [str(self.path)]

    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        check_cancelled(cancel)
        source = _load_source(self.tool, self.params.path, self.path)
        problems = lint_source(source, self.path.suffix)
        rel = self.tool.relative(self.path)
        if not problems:
            return ToolInvocationResult(
                content=f"No problems found in {rel}",
                display=f"{rel}: clean",
                metadata={"problems": 0},
            )
        return ToolInvocationResult(
            content=f"{len(problems)} problem(s) in {rel}:\n" + "\n".join(problems),
            display=f"{rel}: {len(problems)} problem(s)",
            metadata={"problems": len(problems)},
        )


class LintFileTool(WorkspaceTool):
    """Syntax-check a Python, JSON or YAML file."""

    name = "lint_file"
    display_name = "Lint File"
    description = "Check a Python, JSON or YAML file for syntax errors and report them with line numbers."
    params_model = PathParams
    read_only = True

    def build(self, params: PathParams) -> LintFileInvocation:
        return LintFileInvocation(self, params)


def _signature(node) -> str:
    args = [a.arg for a in node.args.posonlyargs + node.args.args]
    if node.args.vararg:
        args.append("*" + node.args.vararg.arg)
    args.extend(a.arg for a in node.args.kwonlyargs)
    if node.args.kwarg:
        args.append("**" + node.args.kwarg.arg)
    prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
    return f"{prefix} {node.name}({', '.join(args)})"


def outline_source(source: str) -> List[str]:
    """Structural outline of Python source, one line per definition."""
    tree = ast.parse(source)
    lines: List[str] = []
    for node in tree.body:
        if isinstance(node, ast.Import):
            names = ", ".join(alias.name for alias in node.names)
            lines.append(f"{node.lineno}: import {names}")
        elif isinstance(node, ast.ImportFrom):
            names = ", ".join(alias.name for alias in node.names)
            lines.append(f"{node.lineno}: from {'.' * node.level}{node.module or ''} import {names}")
        elif isinstance(node, ast.ClassDef):
            bases = ", ".join(ast.unparse(b) for b in node.bases)
            lines.append(f"{node.lineno}: class {node.name}" + (f"({bases})" if bases else ""))
            for item in node.body:
                if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    lines.append(f"{item.lineno}:     {_signature(item)}")
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            lines.append(f"{node.lineno}: {_signature(node)}")
    return lines


class CodeOutlineInvocation(ToolInvocation):
    def __init__(self, tool: "CodeOutlineTool", params: PathParams):
        super().__init__(params)
        self.tool = tool
        self.path = tool.resolve_path(params.path)

    def describe(self) -> str:
        return f"Outline {self.tool.relative(self.path)}"

    def locations(self) -> List[str]:
        return [str(self.path)]

    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        check_cancelled(cancel)
        if self.path.suffix.lower() not in PYTHON_SUFFIXES:
            raise InvalidParameters(f"code_outline only supports Python files, got {self.params.path}")
        source = _load_source(self.tool, self.params.path, self.path)
        rel = self.tool.relative(self.path)
        try:
            lines = outline_source(source)
        except SyntaxError as e:
            return ToolInvocationResult(
                content=f"Cannot outline {rel}: syntax error at line {e.lineno}: {e.msg}",
                display=f"{rel}: syntax error",
            )
        return ToolInvocationResult(
            content="\n".join(lines) if lines else f"{rel} has no top-level definitions",
            display=f"Outlined {rel} ({len(lines)} entries)",
            metadata={"entries": len(lines)},
        )


class CodeOutlineTool(WorkspaceTool):
    """List the structure of a Python file."""

    name = "code_outline"
    display_name = "Code Outline"
    description = "List the imports, classes, methods and functions of a Python file with line numbers."
    params_model = PathParams
    read_only = True

    def build(self, params: PathParams) -> CodeOutlineInvocation:
        return CodeOutlineInvocation(self, params)
