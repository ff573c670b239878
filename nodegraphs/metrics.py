#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/metrics.py — metric descriptors, query scopes and cache keys.

Everything here is immutable and hashable so it can be used directly in
cache keys:

    MetricDescriptor   one named series + transform flags
    SourceSet          which nodes a query covers (ordered ids or ALL_NODES)
    TimeWindow         [start, end] in seconds
    TimeScale          a rolling span ("last 10 minutes") with a sample period
    QueryKey           (metric name, SourceSet, TimeWindow)

Two graphs asking for the same metric name over the same sources and window
get equal QueryKeys, regardless of the transforms they apply afterwards.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class Aggregator(str, Enum):
    AVG = "avg"
    MAX = "max"
    SUM = "sum"


class Downsampler(str, Enum):
    AVG = "avg"
    MAX = "max"


class AxisUnits(str, Enum):
    COUNT = "count"
    BYTES = "bytes"
    DURATION = "duration"
    PERCENTAGE = "percentage"


Point = Tuple[float, float]
Series = List[Point]
RawSeries = Dict[str, Series]  # source id -> ordered (timestamp, value)


@dataclass(frozen=True)
class MetricDescriptor:
    name: str
    title: str = ""
    is_rate: bool = False
    aggregator: Aggregator = Aggregator.SUM
    downsampler: Downsampler = Downsampler.AVG
    axis_units: AxisUnits = AxisUnits.COUNT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "is_rate": self.is_rate,
            "aggregator": self.aggregator.value,
            "downsampler": self.downsampler.value,
            "axis_units": self.axis_units.value,
        }


# ----------------------------- sources -----------------------------

class SourceSet:
    """Ordered node ids, or the ALL_NODES sentinel (ids is None).

    Equality and hashing use the sorted id set, so [2, 1] and [1, 2] share
    cache entries while keeping the caller's order for display.
    """

    __slots__ = ("_ids", "_canon")

    def __init__(self, ids: Optional[Iterable[Any]] = None):
        if ids is None:
            self._ids: Optional[Tuple[str, ...]] = None
            self._canon: Optional[FrozenSet[str]] = None
        else:
            seen: List[str] = []
            for i in ids:
                s = str(i)
                if s not in seen:
                    seen.append(s)
            self._ids = tuple(seen)
            self._canon = frozenset(seen)

    @classmethod
    def of(cls, *ids: Any) -> "SourceSet":
        return cls(ids)

    @classmethod
    def from_param(cls, value: Any) -> "SourceSet":
        """None / "" / "all" -> ALL_NODES; "1,3" or [1, 3] -> explicit set."""
        if value is None:
            return ALL_NODES
        if isinstance(value, str):
            value = value.strip()
            if value == "" or value.lower() == "all":
                return ALL_NODES
            return cls(p.strip() for p in value.split(",") if p.strip())
        return cls(value)

    @property
    def ids(self) -> Optional[Tuple[str, ...]]:
        return self._ids

    @property
    def is_all(self) -> bool:
        return self._ids is None

    @property
    def is_empty(self) -> bool:
        return self._ids is not None and not self._ids

    def includes(self, source: str) -> bool:
        return self._canon is None or source in self._canon

    def specifier(self) -> str:
        if self.is_empty:
            return "on no nodes"
        if self._ids is not None and len(self._ids) == 1:
            return f"on node {self._ids[0]}"
        return "across all nodes" if self._ids is None else f"across nodes {', '.join(self._ids)}"

    def to_param(self) -> Optional[List[str]]:
        return None if self._ids is None else sorted(self._ids)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SourceSet):
            return NotImplemented
        return self._canon == other._canon

    def __hash__(self) -> int:
        return hash(("SourceSet", self._canon))

    def __repr__(self) -> str:
        return "SourceSet(ALL_NODES)" if self._ids is None else f"SourceSet({list(self._ids)!r})"


ALL_NODES = SourceSet(None)


# ----------------------------- time -----------------------------

@dataclass(frozen=True)
class TimeWindow:
    start: float
    end: float

    @property
    def span(self) -> float:
        return max(0.0, self.end - self.start)

    def to_dict(self) -> Dict[str, float]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class TimeScale:
    key: str
    span_sec: float
    sample_sec: float

    def window_at(self, now: Optional[float] = None) -> TimeWindow:
        """Window ending at the last completed sample boundary."""
        t = time.time() if now is None else now
        end = math.floor(t / self.sample_sec) * self.sample_sec
        return TimeWindow(start=end - self.span_sec, end=end)


TIME_SCALES: Dict[str, TimeScale] = {
    s.key: s
    for s in (
        TimeScale("10m", 10 * 60, 10),
        TimeScale("1h", 60 * 60, 30),
        TimeScale("6h", 6 * 60 * 60, 60),
        TimeScale("12h", 12 * 60 * 60, 120),
        TimeScale("1d", 24 * 60 * 60, 300),
        TimeScale("1w", 7 * 24 * 60 * 60, 1800),
        TimeScale("30d", 30 * 24 * 60 * 60, 3600),
    )
}

DEFAULT_TIME_SCALE = "10m"


def time_scale(key: Optional[str]) -> TimeScale:
    if not key:
        return TIME_SCALES[DEFAULT_TIME_SCALE]
    try:
        return TIME_SCALES[key]
    except KeyError:
        raise ValueError(f"unknown time scale {key!r} (expected one of {', '.join(TIME_SCALES)})")


# ----------------------------- keys -----------------------------

@dataclass(frozen=True)
class QueryKey:
    name: str
    sources: SourceSet
    window: TimeWindow

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "sources": self.sources.to_param(), "window": self.window.to_dict()}
