#!/usr/bin/env python3
"""
Tools Package

This package contains the tool protocol and the built-in local tools the
aterm agent can invoke:

- base: ToolDeclaration, ToolInvocation protocol, result and error types
- registry: per-workspace ToolRegistry
- file_tools: read_file, write_file, edit_file
- shell_tool: shell command execution
- code_tools: lint_file, code_outline

``build_default_registry()`` wires all built-in tools for one workspace.
"""

from pathlib import Path
from typing import Union

from .base import (
    CancellationToken,
    ConflictingConcurrentWrite,
    ExecutionError,
    InvalidParameters,
    NoChangeProduced,
    OperationCancelled,
    ParameterSpec,
    ResourceNotFound,
    Tool,
    ToolDeclaration,
    ToolError,
    ToolErrorKind,
    ToolInvocation,
    ToolInvocationError,
    ToolInvocationResult,
    ToolParams,
)
from .code_tools import CodeOutlineTool, LintFileTool
from .file_tools import EditFileTool, PathLocks, ReadFileTool, WriteFileTool
from .registry import ToolRegistry
from .shell_tool import ShellTool


def build_default_registry(workspace_root: Union[str, Path], shell_timeout: float = 30.0) -> ToolRegistry:
    """Create a fresh registry with every built-in tool rooted at *workspace_root*."""
    locks = PathLocks()
    return ToolRegistry([
        ReadFileTool(workspace_root, locks),
        WriteFileTool(workspace_root, locks),
        EditFileTool(workspace_root, locks),
        ShellTool(workspace_root, timeout=shell_timeout),
        LintFileTool(workspace_root, locks),
        CodeOutlineTool(workspace_root, locks),
    ])


__all__ = [
    "CancellationToken",
    "CodeOutlineTool",
    "ConflictingConcurrentWrite",
    "EditFileTool",
    "ExecutionError",
    "InvalidParameters",
    "LintFileTool",
    "NoChangeProduced",
    "OperationCancelled",
    "ParameterSpec",
    "PathLocks",
    "ReadFileTool",
    "ResourceNotFound",
    "ShellTool",
    "Tool",
    "ToolDeclaration",
    "ToolError",
    "ToolErrorKind",
    "ToolInvocation",
    "ToolInvocationError",
    "ToolInvocationResult",
    "ToolParams",
    "ToolRegistry",
    "WriteFileTool",
    "build_default_registry",
]
