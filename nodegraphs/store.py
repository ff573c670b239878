#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/store.py — process-wide cache of fetched time-series results.

Responsibilities
---------------
- Map QueryKey -> raw per-source series + validity flag
- Single-flight refresh: at most one fetch in flight per key, however many
  graph panels ask for it at the same time
- Keep stale data displayable while a refetch runs (invalidate never clears)
- Record fetch failures on the entry instead of raising them to readers
- Optional idle eviction and change notifications for view binders

Public API
----------
store = QueryStore()
entry = store.get(key)                                  # copy, never blocks
store.ensure_fresh(key, fetcher, background=False)      # fetcher(key) -> RawSeries
store.ensure_fresh_many(keys, batch_fetcher)            # batch_fetcher(names, sources, window)
store.invalidate(key) / store.invalidate_matching(pred) / store.invalidate_all()
unsubscribe = store.subscribe(callback)                 # callback(key, entry)
store.evict_idle()

Design notes
------------
- One RLock guards the slot map. Fetchers always run outside the lock; the
  slot is claimed (fetch_in_flight=True) before the lock is released, which is
  what makes concurrent callers no-ops.
- A completion only ever writes to the slot claimed at issue time, so a
  response for a superseded source filter or window cannot land elsewhere.
- Each invalidation bumps a generation counter. A fetch that was issued before
  the last invalidation still stores its data, but the entry stays invalid.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ErrorInfo, FetchFailed
from .metrics import QueryKey, RawSeries, Series, SourceSet, TimeWindow

log = logging.getLogger(__name__)

Fetcher = Callable[[QueryKey], Mapping[str, Any]]
BatchFetcher = Callable[[Sequence[str], SourceSet, TimeWindow], Mapping[str, Any]]
Listener = Callable[[QueryKey, "CacheEntry"], None]

DEFAULTS = {
    "MAX_WORKERS": 8,
    "IDLE_TTL_SEC": None,  # None: keep entries for the whole session
}


# ----------------------------- helpers -----------------------------

def normalize_series(points: Any) -> Series:
    """Coerce [[t, v], ...] / [(t, v), ...] into sorted float tuples.

    Points that are not pairs or not finite numbers are dropped.
    """
    out: Series = []
    for p in points or ():
        try:
            t, v = p
            t, v = float(t), float(v)
        except (TypeError, ValueError):
            continue
        if math.isfinite(t) and math.isfinite(v):
            out.append((t, v))
    out.sort(key=lambda tv: tv[0])
    return out


def normalize_raw(raw: Any) -> RawSeries:
    if not isinstance(raw, Mapping):
        raise FetchFailed(
            "malformed query response",
            detail=f"expected a mapping of source -> points, got {type(raw).__name__}",
        )
    return {str(src): normalize_series(points) for src, points in raw.items()}


# ----------------------------- data classes -----------------------------

@dataclass
class CacheEntry:
    key: QueryKey
    raw_series: RawSeries = field(default_factory=dict)
    valid: bool = False
    fetch_in_flight: bool = False
    last_error: Optional[ErrorInfo] = None
    fetched_at: Optional[float] = None

    @property
    def stale(self) -> bool:
        return not self.valid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key.to_dict(),
            "valid": self.valid,
            "fetch_in_flight": self.fetch_in_flight,
            "fetched_at": self.fetched_at,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "sources": sorted(self.raw_series),
        }


@dataclass
class _Slot:
    entry: CacheEntry
    generation: int = 0
    last_referenced: float = field(default_factory=time.time)


# ----------------------------- store -----------------------------

class QueryStore:
    def __init__(
        self,
        idle_ttl_sec: Optional[float] = DEFAULTS["IDLE_TTL_SEC"],
        max_workers: int = DEFAULTS["MAX_WORKERS"],
        clock: Callable[[], float] = time.time,
    ):
        self.idle_ttl_sec = idle_ttl_sec
        self._clock = clock
        self._lock = threading.RLock()
        self._slots: Dict[QueryKey, _Slot] = {}
        self._listeners: List[Listener] = []
        self._max_workers = max(1, int(max_workers))
        self._executor: Optional[ThreadPoolExecutor] = None

        self._fetches_issued = 0
        self._fetch_failures = 0

    # -------- lifecycle --------

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="QueryStoreFetch"
                )
            return self._executor

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            ex, self._executor = self._executor, None
        if ex is not None:
            ex.shutdown(wait=wait)

    # -------- reads --------

    def _slot_locked(self, key: QueryKey) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot(entry=CacheEntry(key=key), last_referenced=self._clock())
            self._slots[key] = slot
        return slot

    def get(self, key: QueryKey) -> CacheEntry:
        """Entry for key (created invalid if absent). Returns a copy."""
        with self._lock:
            slot = self._slot_locked(key)
            slot.last_referenced = self._clock()
            return self._copy(slot.entry)

    def peek(self, key: QueryKey) -> Optional[CacheEntry]:
        with self._lock:
            slot = self._slots.get(key)
            return self._copy(slot.entry) if slot else None

    def entries(self) -> List[CacheEntry]:
        """Copies of every entry, for diagnostics."""
        with self._lock:
            return [self._copy(s.entry) for s in self._slots.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    @staticmethod
    def _copy(entry: CacheEntry) -> CacheEntry:
        # Series lists are replaced on refresh, never mutated, so sharing them is safe.
        return replace(entry, raw_series=dict(entry.raw_series))

    # -------- refresh --------

    def _claim_locked(self, key: QueryKey) -> Optional[int]:
        """Mark key in flight and return its generation; None if nothing to do."""
        slot = self._slot_locked(key)
        slot.last_referenced = self._clock()
        e = slot.entry
        if e.valid or e.fetch_in_flight:
            return None
        if key.sources.is_empty:
            # Nothing to ask the service for; an empty scope is an empty result.
            e.raw_series = {}
            e.valid = True
            e.last_error = None
            e.fetched_at = self._clock()
            return None
        e.fetch_in_flight = True
        self._fetches_issued += 1
        log.debug("[store] claim %s %r", key.name, key.sources)
        return slot.generation

    def ensure_fresh(self, key: QueryKey, fetcher: Fetcher, background: bool = False) -> Optional[Future]:
        """Refresh key unless it is valid or already being fetched.

        Returns None when no fetch was started by this call. Inline calls
        return a completed Future; background calls return the pool's Future.
        """
        with self._lock:
            gen = self._claim_locked(key)
        if gen is None:
            return None

        def run() -> bool:
            try:
                raw = normalize_raw(fetcher(key))
            except Exception as exc:
                self._fail(key, ErrorInfo.from_exception(exc))
                return False
            self._complete(key, gen, raw)
            return True

        return self._dispatch(run, background)

    def ensure_fresh_many(
        self,
        keys: Iterable[QueryKey],
        batch_fetcher: BatchFetcher,
        background: bool = False,
    ) -> List[Future]:
        """Refresh many keys with one service call per (sources, window) group."""
        groups: Dict[Tuple[SourceSet, TimeWindow], List[Tuple[QueryKey, int]]] = {}
        with self._lock:
            for key in keys:
                gen = self._claim_locked(key)
                if gen is not None:
                    groups.setdefault((key.sources, key.window), []).append((key, gen))

        futures: List[Future] = []
        for (sources, window), claimed in groups.items():
            futures.append(self._dispatch(self._batch_runner(sources, window, claimed, batch_fetcher), background))
        return futures

    def _batch_runner(
        self,
        sources: SourceSet,
        window: TimeWindow,
        claimed: List[Tuple[QueryKey, int]],
        batch_fetcher: BatchFetcher,
    ) -> Callable[[], bool]:
        names = sorted({k.name for k, _ in claimed})

        def run() -> bool:
            try:
                results = batch_fetcher(names, sources, window)
                if not isinstance(results, Mapping):
                    raise FetchFailed("malformed query response", detail="expected a mapping of metric name -> series")
            except Exception as exc:
                info = ErrorInfo.from_exception(exc)
                for key, _ in claimed:
                    self._fail(key, info)
                return False

            ok = True
            for key, gen in claimed:
                try:
                    raw = normalize_raw(results.get(key.name) or {})
                except FetchFailed as exc:
                    self._fail(key, ErrorInfo.from_exception(exc))
                    ok = False
                    continue
                self._complete(key, gen, raw)
            return ok

        return run

    def _dispatch(self, run: Callable[[], bool], background: bool) -> Future:
        if background:
            return self._pool().submit(run)
        fut: Future = Future()
        fut.set_result(run())
        return fut

    def _complete(self, key: QueryKey, generation: int, raw: RawSeries) -> None:
        with self._lock:
            slot = self._slot_locked(key)
            e = slot.entry
            e.raw_series = raw
            e.fetch_in_flight = False
            e.last_error = None
            e.fetched_at = self._clock()
            e.valid = slot.generation == generation
            snapshot = self._copy(e)
        if not snapshot.valid:
            log.debug("[store] %s invalidated during fetch; stored as stale", key.name)
        self._notify(key, snapshot)

    def _fail(self, key: QueryKey, info: ErrorInfo) -> None:
        with self._lock:
            slot = self._slot_locked(key)
            e = slot.entry
            e.fetch_in_flight = False
            e.last_error = info
            self._fetch_failures += 1
            snapshot = self._copy(e)
        log.warning("[store] fetch failed for %s (%s): %s", key.name, info.kind.value, info.full_message())
        self._notify(key, snapshot)

    # -------- invalidation --------

    def invalidate(self, key: QueryKey) -> None:
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                return
            slot.generation += 1
            slot.entry.valid = False
            snapshot = self._copy(slot.entry)
        self._notify(key, snapshot)

    def invalidate_matching(self, predicate: Callable[[QueryKey], bool]) -> int:
        with self._lock:
            hits = [k for k in self._slots if predicate(k)]
        for k in hits:
            self.invalidate(k)
        return len(hits)

    def invalidate_all(self) -> int:
        return self.invalidate_matching(lambda _k: True)

    # -------- references & eviction --------

    def touch(self, keys: Iterable[QueryKey]) -> None:
        now = self._clock()
        with self._lock:
            for k in keys:
                slot = self._slots.get(k)
                if slot is not None:
                    slot.last_referenced = now

    def evict_idle(self, now: Optional[float] = None) -> int:
        if self.idle_ttl_sec is None:
            return 0
        t = self._clock() if now is None else now
        cutoff = t - float(self.idle_ttl_sec)
        with self._lock:
            doomed = [
                k for k, s in self._slots.items()
                if s.last_referenced < cutoff and not s.entry.fetch_in_flight
            ]
            for k in doomed:
                del self._slots[k]
        if doomed:
            log.debug("[store] evicted %d idle entries", len(doomed))
        return len(doomed)

    # -------- notifications --------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: QueryKey, entry: CacheEntry) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb(key, entry)
            except Exception:
                log.exception("[store] listener failed for %s", key.name)

    # -------- diagnostics --------

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = [s.entry for s in self._slots.values()]
            return {
                "entries": len(entries),
                "valid": sum(1 for e in entries if e.valid),
                "in_flight": sum(1 for e in entries if e.fetch_in_flight),
                "errored": sum(1 for e in entries if e.last_error is not None),
                "fetches_issued": self._fetches_issued,
                "fetch_failures": self._fetch_failures,
                "idle_ttl_sec": self.idle_ttl_sec,
            }
