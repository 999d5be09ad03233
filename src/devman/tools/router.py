"""Tool registration and dispatch."""

from __future__ import annotations

import asyncio
import builtins
import inspect
import json
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from devman.core.types import ToolCall, ToolResult
from devman.errors import PermissionDenied, ToolFailure, ToolNotFoundError
from devman.tools.context import ToolContext

type ToolHandler = Callable[[Any, ToolContext], Any | Awaitable[Any]]
type TargetResolver = Callable[[Any, ToolContext], Iterable[str]]


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text
    available = width - len(placeholder)
    if available <= 0:
        return placeholder
    return text[:available] + placeholder


def _render(value: Any) -> str:
    if value is None:
        return "(ok)"
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _failure(call: ToolCall, kind: str, message: str) -> ToolResult:
    return ToolResult(call_id=call.id, success=False, error=message, error_kind=kind)


@dataclass(frozen=True)
class ToolSpec:
    """Tool metadata and runtime handle."""

    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    targets: TargetResolver | None = None

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


class ToolRegistry:
    """Registry and router for session tools. Nothing raises out of execute()."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        *,
        name: str,
        description: str,
        input_model: type[BaseModel],
        targets: TargetResolver | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            if name in self._tools:
                raise ValueError(f"duplicate tool name: {name}")
            self._tools[name] = ToolSpec(
                name=name,
                description=description,
                input_model=input_model,
                handler=handler,
                targets=targets,
            )
            return handler

        return decorator

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def specs(self) -> builtins.list[ToolSpec]:
        return sorted(self._tools.values(), key=lambda item: item.name)

    def schemas(self) -> builtins.list[dict[str, Any]]:
        return [spec.schema() for spec in self.specs()]

    def _log_tool_call(self, name: str, params: dict[str, Any], context: ToolContext) -> None:
        rendered: list[str] = []
        for key, value in params.items():
            try:
                text = json.dumps(value, ensure_ascii=False)
            except TypeError:
                text = repr(value)
            rendered.append(f"{key}={_shorten_text(text)}")
        logger.info(
            "tool.call.start name={} session={} task={} {{ {} }}",
            name,
            context.session_id,
            context.task,
            ", ".join(rendered),
        )

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        spec = self.get(call.name)
        if spec is None:
            logger.warning("tool.call.not_found name={}", call.name)
            return _failure(call, ToolNotFoundError.kind, f"unknown tool: {call.name}")
        try:
            params = spec.input_model.model_validate(call.arguments)
        except ValidationError as exc:
            return _failure(call, "invalid_arguments", str(exc))

        if spec.targets is not None:
            for task in spec.targets(params, context):
                if not context.scope.allows(task):
                    logger.warning("tool.call.denied name={} task={} scope={}", call.name, task, context.scope.describe())
                    return _failure(call, PermissionDenied.kind, str(PermissionDenied(task)))

        self._log_tool_call(call.name, params.model_dump(), context)
        start = time.monotonic()
        try:
            if inspect.iscoroutinefunction(spec.handler):
                value = await spec.handler(params, context)
            else:
                value = await asyncio.to_thread(spec.handler, params, context)
        except PermissionDenied as exc:
            return _failure(call, exc.kind, str(exc))
        except ToolFailure as exc:
            return _failure(call, exc.kind, str(exc))
        except Exception as exc:
            logger.exception("tool.call.error name={}", call.name)
            return _failure(call, ToolFailure.kind, f"{type(exc).__name__}: {exc}")
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", call.name, duration * 1000)
        return ToolResult(call_id=call.id, success=True, payload=_render(value))

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        context: ToolContext,
        *,
        parallel: bool = True,
    ) -> builtins.list[ToolResult]:
        """Run every call; results come back in the order of ``calls``."""
        if parallel and len(calls) > 1:
            return list(await asyncio.gather(*(self.execute(call, context) for call in calls)))
        return [await self.execute(call, context) for call in calls]
