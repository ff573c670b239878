#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/refresh.py — refresh coordinator for one logical resource.

States
------
UNREQUESTED --request()--> FETCHING --ok--> FRESH --invalidate()--> STALE
                                 +--error--> STALE --request()--> FETCHING

- request() while FETCHING is a no-op (single flight per resource).
- invalidate() while FETCHING lets the running load finish but lands it as
  STALE, so the next request() fetches again.
- Data from the last successful load is kept through STALE and failures.
- With `is_valid`, a load whose data reports itself invalid is kept but
  lands as STALE, like an invalidation during the fetch.

Subscribers get (coordinator, old_state, new_state) on every transition; the
view binder uses that instead of polling flags.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, TypeVar

from .errors import ErrorInfo

log = logging.getLogger(__name__)

T = TypeVar("T")


class RefreshState(str, Enum):
    UNREQUESTED = "unrequested"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"


Listener = Callable[["RefreshCoordinator[Any]", RefreshState, RefreshState], None]


class RefreshCoordinator(Generic[T]):
    def __init__(
        self,
        name: str,
        loader: Callable[[], T],
        executor: Optional[Executor] = None,
        is_valid: Optional[Callable[[T], bool]] = None,
    ):
        self.name = name
        self._loader = loader
        self._is_valid = is_valid
        self._executor = executor
        self._lock = threading.RLock()
        self._state = RefreshState.UNREQUESTED
        self._data: Optional[T] = None
        self._last_error: Optional[ErrorInfo] = None
        self._updated_at: Optional[float] = None
        self._invalidated_while_fetching = False
        self._listeners: List[Listener] = []

    # -------- read --------

    @property
    def state(self) -> RefreshState:
        with self._lock:
            return self._state

    @property
    def data(self) -> Optional[T]:
        with self._lock:
            return self._data

    @property
    def last_error(self) -> Optional[ErrorInfo]:
        with self._lock:
            return self._last_error

    @property
    def valid(self) -> bool:
        return self.state is RefreshState.FRESH

    @property
    def updated_at(self) -> Optional[float]:
        with self._lock:
            return self._updated_at

    # -------- transitions --------

    def _transition_locked(self, new: RefreshState) -> Optional[RefreshState]:
        old = self._state
        if old is new:
            return None
        self._state = new
        return old

    def request(self) -> Optional[Future]:
        """Start a load unless one is running or the data is fresh."""
        with self._lock:
            if self._state in (RefreshState.FETCHING, RefreshState.FRESH):
                return None
            old = self._transition_locked(RefreshState.FETCHING)
            self._invalidated_while_fetching = False
        self._notify(old, RefreshState.FETCHING)

        if self._executor is not None:
            return self._executor.submit(self._run)
        fut: Future = Future()
        fut.set_result(self._run())
        return fut

    def _run(self) -> bool:
        try:
            data = self._loader()
        except Exception as exc:
            info = ErrorInfo.from_exception(exc)
            log.warning("[refresh] %s load failed (%s): %s", self.name, info.kind.value, info.full_message())
            with self._lock:
                self._last_error = info
                old = self._transition_locked(RefreshState.STALE)
            self._notify(old, RefreshState.STALE)
            return False

        with self._lock:
            self._data = data
            self._last_error = None
            self._updated_at = time.time()
            landed_valid = self._is_valid is None or self._is_valid(data)
            fresh = landed_valid and not self._invalidated_while_fetching
            target = RefreshState.FRESH if fresh else RefreshState.STALE
            self._invalidated_while_fetching = False
            old = self._transition_locked(target)
        self._notify(old, target)
        return True

    def invalidate(self) -> None:
        with self._lock:
            if self._state is RefreshState.FETCHING:
                self._invalidated_while_fetching = True
                return
            if self._state is not RefreshState.FRESH:
                return
            old = self._transition_locked(RefreshState.STALE)
        self._notify(old, RefreshState.STALE)

    def ensure(self) -> Optional[T]:
        """Request if needed and return whatever data is current."""
        self.request()
        return self.data

    # -------- subscribe / notify --------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, old: Optional[RefreshState], new: RefreshState) -> None:
        if old is None:
            return
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb(self, old, new)
            except Exception:
                log.exception("[refresh] %s listener failed", self.name)
