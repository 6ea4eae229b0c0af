"""Handler registry: maps task types to the functions that run them."""

import importlib
from typing import Any, Awaitable, Callable, Optional, Union


TaskHandler = Callable[[Any], Union[Any, Awaitable[Any]]]


class HandlerRegistry:
    """
    Mapping from task type to handler, built at startup and handed to the
    executor. Handlers take the task payload and may be plain functions or
    coroutines.

    Example:
        ```python
        registry = HandlerRegistry()

        @registry.handler("index-document")
        async def index_document(payload):
            ...
        ```
    """

    def __init__(self):
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_type: str, handler: TaskHandler) -> None:
        if not task_type:
            raise ValueError("task type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"handler for '{task_type}' must be callable")
        self._handlers[task_type] = handler

    def handler(self, task_type: str) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of register()."""
        def decorator(func: TaskHandler) -> TaskHandler:
            self.register(task_type, func)
            return func
        return decorator

    def get(self, task_type: str) -> Optional[TaskHandler]:
        return self._handlers.get(task_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def load_registry(target: str) -> HandlerRegistry:
    """Import ``package.module:attribute`` and return the HandlerRegistry it names."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"handlers must look like 'package.module:registry', got '{target}'")
    registry = getattr(importlib.import_module(module_name), attr, None)
    if not isinstance(registry, HandlerRegistry):
        raise ValueError(f"{target} is not a HandlerRegistry")
    return registry
