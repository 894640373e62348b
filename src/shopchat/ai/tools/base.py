"""Registered tool schema and argument validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Type

from jsonschema import Draft7Validator
from pydantic import BaseModel

from shopchat.errors import ToolValidationError


@dataclass(frozen=True)
class ToolSchema:
    """A tool the model may call, executed remotely by the tool-execution service."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    result_model: Optional[Type[BaseModel]] = None

    def __post_init__(self) -> None:
        Draft7Validator.check_schema(self.input_schema)

    def validate_arguments(self, arguments: Any) -> None:
        """Raise ToolValidationError if *arguments* do not satisfy the input schema."""
        if not isinstance(arguments, dict):
            raise ToolValidationError(self.name, f"{self.name}: arguments must be an object")
        errors = sorted(Draft7Validator(self.input_schema).iter_errors(arguments), key=lambda e: list(e.path))
        if errors:
            details = "; ".join(_describe(e) for e in errors[:5])
            raise ToolValidationError(self.name, f"{self.name}: invalid arguments: {details}")

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the tool description embedded in the model's context."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def _describe(error: Any) -> str:
    location = ".".join(str(p) for p in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message
