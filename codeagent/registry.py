"""
Tool registry.

An explicit instance is built once at startup (see
`codeagent.tools.catalog.build_default_registry`) and injected into the
runtime; there is no module-level registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

from jsonschema import Draft7Validator
from pydantic import BaseModel, ValidationError

from .models import ToolContext, ToolResult

logger = logging.getLogger("codeagent")


class ToolValidationError(ValueError):
    """Raised when tool arguments fail schema or model validation."""

    def __init__(self, tool_name: str, errors: List[Dict[str, Any]]):
        self.tool_name = tool_name
        self.errors = errors
        summary = "; ".join(
            "{}: {}".format(".".join(str(p) for p in err["path"]) or "<root>", err["message"])
            for err in errors
        )
        super().__init__(f"Invalid arguments for tool {tool_name}: {summary}")


class ToolExecutionError(RuntimeError):
    """Descriptive failure raised by a tool's execute function."""


Executor = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass
class ToolDefinition:
    id: str
    description: str
    parameters: Type[BaseModel]
    execute: Executor
    read_only: bool = False
    path_args: tuple = ("path", "file_path")
    _schema: Optional[Dict[str, Any]] = field(default=None, init=False, repr=False)

    @property
    def schema(self) -> Dict[str, Any]:
        if self._schema is None:
            schema = self.parameters.model_json_schema()
            schema.pop("title", None)
            Draft7Validator.check_schema(schema)
            self._schema = schema
        return self._schema

    def to_function_spec(self) -> Dict[str, Any]:
        return {"name": self.id, "description": self.description, "parameters": self.schema}


def _coerce_string_booleans(raw: Mapping[str, Any], schema: Mapping[str, Any]) -> Dict[str, Any]:
    props = schema.get("properties", {}) or {}
    coerced: Dict[str, Any] = {}
    for key, value in raw.items():
        prop = props.get(key) or {}
        if prop.get("type") == "boolean" and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "false"}:
                value = lowered == "true"
        coerced[key] = value
    return coerced


class ToolRegistry:
    """Name → ToolDefinition mapping. First registration of an id wins."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> bool:
        if tool.id in self._tools:
            logger.warning("tool_register duplicate id=%s ignored", tool.id)
            return False
        self._tools[tool.id] = tool
        return True

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def list(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def catalog(self) -> List[Dict[str, Any]]:
        """Function specs handed to the model with every call."""
        return [tool.to_function_spec() for tool in self._tools.values()]

    def validate(self, name: str, raw_args: Any) -> BaseModel:
        """
        Validate raw model-supplied arguments for `name`.

        Draft-7 schema errors are collected first so the model receives every
        problem at once; the pydantic model then produces the typed params.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)
        if raw_args is None:
            raw_args = {}
        if not isinstance(raw_args, Mapping):
            raise ToolValidationError(name, [{"path": [], "message": "arguments must be an object"}])

        args = _coerce_string_booleans(raw_args, tool.schema)
        validator = Draft7Validator(tool.schema)
        errors = [
            {"path": list(err.path), "message": err.message}
            for err in sorted(validator.iter_errors(args), key=lambda e: [str(p) for p in e.path])
        ]
        if errors:
            raise ToolValidationError(name, errors)
        try:
            return tool.parameters.model_validate(args)
        except ValidationError as exc:
            raise ToolValidationError(
                name,
                [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()],
            ) from exc
