from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from values import TypeRegistry, build_type_registry


# Events the interpreter emits, in roughly the order a run produces them.
EVENTS = (
    "program_start",
    "before_statement",
    "output_line",
    "warning",
    "input_request",
    "done",
    "error",
    "stopped",
)


class HostError(Exception):
    pass


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, owner)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, owner: str = "host") -> None:
        if event not in EVENTS:
            raise HostError(f"Unknown event '{event}'")
        if not callable(handler):
            raise HostError(f"Handler for '{event}' must be callable")
        self._events.setdefault(event, []).append((priority, handler, owner))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _owner in self._events.get(event, []):
            handler(*args, **kwargs)

    def has_handlers(self, event: str) -> bool:
        return bool(self._events.get(event))


@dataclass
class RuntimeServices:
    type_registry: TypeRegistry = field(default_factory=build_type_registry)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # Set from any thread to stop the run at its next polling point.
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def build_default_services() -> RuntimeServices:
    return RuntimeServices()
