# sync.py
"""Single-flight coordination for sync passes.

Syncs are requested far more often than they need to run. At most one pass
runs at a time and at most one caller waits behind it; every caller in
between is told its work is covered by the trailing pass and returns at
once.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, TypeVar

from errors import SyncCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

IDLE = "idle"
RUNNING = "running"
RUNNING_WITH_PENDING = "running-with-pending"

_CANCEL_POLL_SECONDS = 0.05


class _Waiter:
    def __init__(self, partial: bool):
        self.partial = partial
        self.released = False
        self.woken = False


class SyncCoordinator:
    def __init__(self, allow_concurrent: bool = False):
        self.allow_concurrent = allow_concurrent
        self._cond = threading.Condition()
        self._running = False
        self._parked: Optional[_Waiter] = None

    @property
    def state(self) -> str:
        with self._cond:
            if not self._running:
                return IDLE
            return RUNNING_WITH_PENDING if self._parked is not None else RUNNING

    def run(self, fn: Callable[[], T], partial: bool = False,
            cancel: Optional[threading.Event] = None) -> Optional[T]:
        """Run ``fn`` now, after the current pass, or not at all.

        Returns ``fn``'s result when this caller ran the pass and None when a
        later caller took over its place. Raises SyncCancelled if ``cancel``
        is set while parked.
        """
        if self.allow_concurrent:
            return fn()

        with self._cond:
            if self._running:
                if not self._wait_turn(partial, cancel):
                    return None
            else:
                self._running = True

        try:
            return fn()
        finally:
            self._finish()

    def _wait_turn(self, partial: bool, cancel: Optional[threading.Event]) -> bool:
        parked = self._parked
        if parked is not None:
            if partial and not parked.partial:
                logger.debug("[sync] full sync already pending, skipping partial sync")
                return False
            parked.released = True
            self._cond.notify_all()

        waiter = _Waiter(partial)
        self._parked = waiter
        while True:
            if waiter.released:
                logger.debug("[sync] superseded by a newer sync request")
                return False
            if waiter.woken:
                return True
            if cancel is not None and cancel.is_set():
                if self._parked is waiter:
                    self._parked = None
                raise SyncCancelled()
            self._cond.wait(_CANCEL_POLL_SECONDS if cancel is not None else None)

    def _finish(self) -> None:
        with self._cond:
            waiter = self._parked
            if waiter is not None:
                # ownership passes straight to the parked caller
                self._parked = None
                waiter.woken = True
            else:
                self._running = False
            self._cond.notify_all()
