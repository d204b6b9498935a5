"""Tools the model may call, as command objects bound to a target."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from memchat.exceptions import ToolError


@dataclass(frozen=True)
class Tool:
    """A named, schema-validated operation.

    ``handler(target, args)`` receives the object the tool was bound to and
    the validated ``input_model`` instance.
    """

    name: str
    description: str
    input_model: type[BaseModel]
    handler: Callable[[Any, Any], Awaitable[Any]]

    def parameters(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def bind(self, target: Any) -> BoundTool:
        return BoundTool(tool=self, target=target)


@dataclass(frozen=True)
class BoundTool:
    tool: Tool
    target: Any

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def description(self) -> str:
        return self.tool.description

    def parameters(self) -> dict[str, Any]:
        return self.tool.parameters()

    async def execute(self, arguments: dict[str, Any]) -> Any:
        try:
            args = self.tool.input_model.model_validate(arguments)
        except ValidationError as exc:
            raise ToolError(f"Invalid arguments for {self.name}: {exc}") from exc
        return await self.tool.handler(self.target, args)
