#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/aggregate.py — turn raw per-source series into one displayed series.

Pipeline for one MetricDescriptor
---------------------------------
1. restrict      keep only sources named by the SourceSet (all for ALL_NODES)
2. rate          optional; first difference over elapsed time, floored at 0
3. downsample    per source, onto a fixed bucket grid (Avg or Max per bucket)
4. aggregate     across sources per bucket (Avg over present sources, Max, Sum)

The output is sorted by timestamp, one point per bucket. Nothing here raises
for empty input: no matching sources, or a rate over fewer than two samples,
just yields [].

Counter resets (a node restarting) show up as negative deltas and are
clamped to a zero rate. Pairs whose timestamps do not advance are skipped;
the store hands over series already sorted by time.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .metrics import (
    Aggregator,
    Downsampler,
    MetricDescriptor,
    Point,
    RawSeries,
    Series,
    SourceSet,
    TimeWindow,
)

DEFAULTS = {
    "TARGET_POINTS": 300,     # points per displayed series
    "MIN_BUCKET_SEC": 10.0,   # never finer than the store's sample period
}


# ----------------------------- helpers -----------------------------

def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


_DOWNSAMPLERS: Dict[Downsampler, Callable[[List[float]], float]] = {
    Downsampler.AVG: _mean,
    Downsampler.MAX: max,
}

_AGGREGATORS: Dict[Aggregator, Callable[[List[float]], float]] = {
    Aggregator.AVG: _mean,
    Aggregator.MAX: max,
    Aggregator.SUM: sum,
}


def bucket_width(
    window: Optional[TimeWindow],
    target_points: int = DEFAULTS["TARGET_POINTS"],
    min_width: float = DEFAULTS["MIN_BUCKET_SEC"],
) -> Optional[float]:
    """Bucket width in seconds, a multiple of min_width; None without a window."""
    if window is None or window.span <= 0:
        return None
    raw = window.span / max(1, int(target_points))
    if min_width <= 0:
        return raw
    return max(1, math.ceil(raw / min_width)) * min_width


# ----------------------------- steps -----------------------------

def restrict(raw: Mapping[str, Series], sources: SourceSet) -> RawSeries:
    if sources.is_empty:
        return {}
    return {src: series for src, series in raw.items() if sources.includes(src)}


def rate(series: Series) -> Series:
    """Non-negative per-second rate, stamped at the later sample of each pair."""
    out: Series = []
    for (t0, v0), (t1, v1) in zip(series, series[1:]):
        dt = t1 - t0
        if dt <= 0:
            continue
        out.append((t1, max(0.0, v1 - v0) / dt))
    return out


def downsample(series: Series, width: Optional[float], downsampler: Downsampler) -> Series:
    buckets: Dict[float, List[float]] = {}
    for t, v in series:
        bt = t if width is None else math.floor(t / width) * width
        buckets.setdefault(bt, []).append(v)
    reduce = _DOWNSAMPLERS[downsampler]
    return [(bt, reduce(vals)) for bt, vals in sorted(buckets.items())]


def aggregate(per_source: Iterable[Series], aggregator: Aggregator) -> Series:
    buckets: Dict[float, List[float]] = {}
    for series in per_source:
        for t, v in series:
            buckets.setdefault(t, []).append(v)
    reduce = _AGGREGATORS[aggregator]
    return [(t, reduce(vals)) for t, vals in sorted(buckets.items())]


# ----------------------------- public API -----------------------------

def compute_series(
    descriptor: MetricDescriptor,
    raw: Mapping[str, Series],
    sources: SourceSet,
    window: Optional[TimeWindow] = None,
    target_points: int = DEFAULTS["TARGET_POINTS"],
    min_width: float = DEFAULTS["MIN_BUCKET_SEC"],
) -> Series:
    scoped = restrict(raw, sources)
    if not scoped:
        return []

    width = bucket_width(window, target_points, min_width)
    per_source: List[Series] = []
    for src in sorted(scoped):
        series = scoped[src]
        if descriptor.is_rate:
            series = rate(series)
        if series:
            per_source.append(downsample(series, width, descriptor.downsampler))

    if not per_source:
        return []
    return aggregate(per_source, descriptor.aggregator)


def latest_value(series: Series) -> Optional[float]:
    return series[-1][1] if series else None


def points_to_json(series: Series) -> List[List[float]]:
    return [[t, v] for t, v in series]
