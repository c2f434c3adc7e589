"""Named one-shot timers with at most one live instance per kind."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from .state import TimerKind

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def loop_scheduler(delay_s: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule on the running event loop."""
    return asyncio.get_running_loop().call_later(delay_s, callback)


class TimerRegistry:
    """Owns the session timers; starting a kind cancels its previous instance."""

    def __init__(self, scheduler: Optional[Scheduler] = None) -> None:
        self._scheduler: Scheduler = scheduler or loop_scheduler
        self._handles: Dict[TimerKind, Tuple[Any, TimerHandle]] = {}

    def start(self, kind: TimerKind, delay_s: float, callback: Callable[[], None]) -> None:
        self.cancel(kind)
        token = object()

        def _fire() -> None:
            entry = self._handles.get(kind)
            if entry is None or entry[0] is not token:
                return
            del self._handles[kind]
            logger.debug("Timer fired: %s", kind.value)
            callback()

        handle = self._scheduler(delay_s, _fire)
        self._handles[kind] = (token, handle)
        logger.debug("Timer started: %s (%.3fs)", kind.value, delay_s)

    def cancel(self, kind: TimerKind) -> bool:
        entry = self._handles.pop(kind, None)
        if entry is None:
            return False
        entry[1].cancel()
        logger.debug("Timer cancelled: %s", kind.value)
        return True

    def cancel_all(self) -> None:
        for kind in list(self._handles):
            self.cancel(kind)

    def is_active(self, kind: TimerKind) -> bool:
        return kind in self._handles

    @property
    def active_kinds(self) -> frozenset:
        return frozenset(self._handles)
