"""Closed registry of workers and workflow conditions.

Jobs, workflow steps and callbacks only ever carry worker *names*; the
executable handler is resolved here. Nothing is imported or coerced from
persisted data at runtime.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Optional

from ..errors import UnknownWorkerError
from .models import ConditionDescriptor, WorkerDescriptor


class WorkerRegistry:
    """Maps worker and condition names to their handlers."""

    def __init__(self) -> None:
        self._workers: Dict[str, WorkerDescriptor] = {}
        self._conditions: Dict[str, ConditionDescriptor] = {}

    def register(
        self, name: str, handler: Callable[..., Any], **defaults: Any
    ) -> WorkerDescriptor:
        """Register ``handler`` under ``name``, replacing any previous entry."""
        descriptor = WorkerDescriptor(name=name, handler=handler, **defaults)
        self._workers[name] = descriptor
        return descriptor

    def worker(self, name: Optional[str] = None, **defaults: Any):
        """Decorator form of :meth:`register`.

        Handlers receive ``(args, job)`` and may be sync or async.
        """

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name or fn.__name__, fn, **defaults)
            return fn

        return decorator

    def condition(self, name: Optional[str] = None):
        """Decorator registering a predicate over workflow results."""

        def decorator(fn: Callable[[Dict[str, Any]], bool]):
            cond_name = name or fn.__name__
            self._conditions[cond_name] = ConditionDescriptor(
                name=cond_name, predicate=fn
            )
            return fn

        return decorator

    def resolve(self, name: str) -> WorkerDescriptor:
        try:
            return self._workers[name]
        except KeyError:
            raise UnknownWorkerError(name) from None

    def has_worker(self, name: str) -> bool:
        return name in self._workers

    def has_condition(self, name: str) -> bool:
        return name in self._conditions

    def evaluate(self, name: str, results: Dict[str, Any]) -> bool:
        """Evaluate a registered condition; unknown names evaluate false."""
        descriptor = self._conditions.get(name)
        if descriptor is None:
            return False
        return bool(descriptor.predicate(results))

    @property
    def workers(self) -> Iterable[str]:
        return list(self._workers)


# Process-wide default registry used when no explicit registry is supplied.
REGISTRY = WorkerRegistry()


__all__ = [
    "ConditionDescriptor",
    "REGISTRY",
    "WorkerDescriptor",
    "WorkerRegistry",
]
