"""Tool registry for discovering and managing available tool schemas."""

from __future__ import annotations

from shopchat.ai.tools.base import ToolSchema
from shopchat.errors import ToolValidationError
from shopchat.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of all tools the model may call."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSchema] = {}

    def register(self, tool: ToolSchema) -> None:
        self._tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> ToolSchema | None:
        return self._tools.get(name)

    def require(self, name: str) -> ToolSchema:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolValidationError(name, f"unknown tool '{name}'")
        return tool

    def get_tools_by_names(self, names: list[str]) -> list[ToolSchema]:
        """Get a subset of tools by name list; an empty list means all tools."""
        if not names:
            return self.all_tools()
        return [self._tools[n] for n in names if n in self._tools]

    def all_tools(self) -> list[ToolSchema]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def discover_and_register(self) -> None:
        """Register the built-in storefront tools."""
        from shopchat.ai.tools.shop import BUILTIN_TOOLS

        for tool in BUILTIN_TOOLS:
            self.register(tool)
