"""Explicit handler registries for service endpoints and automated actions."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional, Union

from ..exceptions import StepExecutionFailure, UnknownHandler

logger = logging.getLogger(__name__)

HandlerResult = Union[Mapping[str, Any], None]
Handler = Callable[..., Union[HandlerResult, Awaitable[HandlerResult]]]


class HandlerRegistry:
    """Maps opaque names to callables registered at engine construction.

    Lookups are exact; names are never interpreted.
    """

    def __init__(self, kind: str, handlers: Optional[Mapping[str, Handler]] = None) -> None:
        self.kind = kind
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, name: str, handler: Optional[Handler] = None):
        """Register ``handler`` under ``name``; usable as a decorator."""

        def decorator(func: Handler) -> Handler:
            if name in self._handlers:
                logger.warning(f"Replacing {self.kind} handler '{name}'")
            self._handlers[name] = func
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def resolve(self, name: str) -> Handler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownHandler(f"No {self.kind} registered for '{name}'") from None

    async def invoke(self, name: str, *args: Any) -> Dict[str, Any]:
        """Call the handler for ``name`` and return its mapping result."""
        result = self.resolve(name)(*args)
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            return {}
        if not isinstance(result, Mapping):
            raise StepExecutionFailure(
                f"{self.kind} '{name}' returned {type(result).__name__}, expected a mapping"
            )
        return dict(result)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


from .http import HttpEndpoint, build_service_registry  # noqa: E402

__all__ = ["Handler", "HandlerRegistry", "HttpEndpoint", "build_service_registry"]
