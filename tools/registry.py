"""
Per-workspace catalog of tools.

A ToolRegistry is built once per workspace configuration and handed to the
engine explicitly; there is no module-level registry.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

from tools.base import Tool, ToolDeclaration

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of available tools, keyed by unique name in insertion order."""

    def __init__(self, tools: Optional[List[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool already under that name."""
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no name")
        if tool.name in self._tools:
            logger.debug("Replacing tool %s", tool.name)
        # Reassigning an existing key keeps its original position
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDeclaration]:
        """Get a tool's declaration by name."""
        tool = self._tools.get(name)
        return tool.declaration if tool is not None else None

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def all(self) -> List[Tool]:
        """List all registered tools in insertion order."""
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools)

    def declarations(self) -> List[ToolDeclaration]:
        return [tool.declaration for tool in self._tools.values()]

    def export_declarations(self) -> List[Dict[str, Any]]:
        """Declarations in the function-calling export shape, registry order."""
        return [decl.to_dict() for decl in self.declarations()]

    def read_only_view(self) -> "ToolRegistry":
        """A new registry holding only the tools that never write."""
        return ToolRegistry([tool for tool in self._tools.values() if tool.read_only])

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.all())
