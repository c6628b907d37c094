"""Decorators for tracing lending operations and MCP tools."""

import functools
import inspect
from collections.abc import Callable
from datetime import datetime

import logfire


def trace_operation(operation_name: str):
    """
    Trace a synchronous circulation operation.

    Opens a ``circulation.<operation_name>`` span, records scalar arguments
    as ``input.*`` attributes and marks the outcome. Exceptions propagate
    unchanged.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with logfire.span(
                f"circulation.{operation_name}", operation=operation_name
            ) as span:
                start_time = datetime.now()
                bound = signature.bind_partial(*args, **kwargs)
                _add_attributes(span, "input", bound.arguments)

                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    span.set_attribute("operation.success", False)
                    span.set_attribute("operation.error", str(e))
                    span.set_attribute("operation.error_kind", getattr(e, "kind", type(e).__name__))
                    raise

                span.set_attribute("operation.success", True)
                span.set_attribute(
                    "operation.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                return result

        return wrapper

    return decorator


def trace_tool(tool_name: str):
    """Decorator to trace MCP tool execution."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(arguments: dict, *args, **kwargs):
            with logfire.span(f"tool.execution.{tool_name}", tool_name=tool_name) as span:
                _add_attributes(span, "input", arguments)
                result = await func(arguments, *args, **kwargs)
                span.set_attribute("tool.success", not result.get("isError", False))
                if result.get("isError"):
                    span.set_attribute("tool.error_kind", result.get("errorKind", "unknown"))
                return result

        return wrapper

    return decorator


def _add_attributes(span, prefix: str, data: dict):
    for key, value in data.items():
        if key == "self":
            continue
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)
