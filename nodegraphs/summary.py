#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/summary.py — cluster totals for the summary bar.

summarize(snapshot) folds the per-node metric maps of a NodeSnapshot into a
SummaryResult. It is a memoized selector: handing it the same snapshot object
again returns the very same SummaryResult without recomputing, which is what
lets many readers poll it cheaply between node refreshes.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from .errors import ErrorKind

log = logging.getLogger(__name__)


class MetricConstants:
    capacity = "capacity"
    available_capacity = "capacity.available"
    unavailable_ranges = "ranges.unavailable"


# ----------------------------- data classes -----------------------------

@dataclass(frozen=True)
class NodeSnapshot:
    """Per-node metric maps as delivered by one node-status fetch."""
    nodes: Tuple[Mapping[str, Any], ...] = ()
    valid: bool = True
    node_ids: Tuple[str, ...] = ()
    fetched_at: Optional[float] = None


@dataclass(frozen=True)
class SummaryResult:
    node_count: int = 0
    capacity_available: int = 0
    capacity_total: int = 0
    unavailable_ranges: int = 0
    error: Optional[ErrorKind] = field(default=None, compare=False)

    @property
    def capacity_used(self) -> int:
        return self.capacity_total - self.capacity_available

    @property
    def capacity_percent(self) -> float:
        # A cluster reporting no capacity at all reads as full.
        if self.capacity_total == 0:
            return 100.0
        return self.capacity_used / self.capacity_total * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_count": self.node_count,
            "capacity_available": self.capacity_available,
            "capacity_total": self.capacity_total,
            "capacity_used": self.capacity_used,
            "capacity_percent": self.capacity_percent,
            "unavailable_ranges": self.unavailable_ranges,
            "error": self.error.value if self.error else None,
        }


EMPTY_SUMMARY = SummaryResult()


# ----------------------------- selectors -----------------------------

def create_selector(*inputs: Callable[[Any], Any], combiner: Callable[..., Any]) -> Callable[[Any], Any]:
    """Compose input selectors with a combiner, memoizing on input identity.

    The combiner reruns only when at least one input selector returns an
    object that is not the one it returned last time. The memo is shared by
    every caller, so args and result are swapped in together under a lock.
    """
    lock = threading.Lock()
    memo: Optional[Tuple[Tuple[Any, ...], Any]] = None

    def selector(state: Any) -> Any:
        nonlocal memo
        args = tuple(fn(state) for fn in inputs)
        with lock:
            if memo is not None:
                last_args, last_result = memo
                if len(args) == len(last_args) and all(a is b for a, b in zip(args, last_args)):
                    return last_result
            result = combiner(*args)
            memo = (args, result)
            return result

    return selector


def _int_metric(metrics: Mapping[str, Any], name: str) -> int:
    try:
        value = float(metrics.get(name) or 0)
    except (TypeError, ValueError):
        return 0
    return int(value) if math.isfinite(value) else 0


def sum_nodes(nodes: Any) -> SummaryResult:
    if nodes is None:
        # Not loaded yet: nothing to report, and nothing wrong either.
        return EMPTY_SUMMARY
    if not isinstance(nodes, Sequence) or isinstance(nodes, (str, bytes)):
        log.warning("[summary] node snapshot is %s, not a sequence; reporting zeros", type(nodes).__name__)
        return SummaryResult(error=ErrorKind.MALFORMED_SNAPSHOT)

    count = available = total = unavailable = 0
    for n in nodes:
        if not isinstance(n, Mapping):
            log.warning("[summary] malformed node entry %r; reporting zeros", n)
            return SummaryResult(error=ErrorKind.MALFORMED_SNAPSHOT)
        count += 1
        available += _int_metric(n, MetricConstants.available_capacity)
        total += _int_metric(n, MetricConstants.capacity)
        unavailable += _int_metric(n, MetricConstants.unavailable_ranges)

    return SummaryResult(
        node_count=count,
        capacity_available=available,
        capacity_total=total,
        unavailable_ranges=unavailable,
    )


def _snapshot_nodes(snapshot: Any) -> Any:
    if isinstance(snapshot, NodeSnapshot):
        return snapshot.nodes
    return snapshot


summarize = create_selector(_snapshot_nodes, combiner=sum_nodes)


# ----------------------------- formatting -----------------------------

_BYTE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB")


def format_bytes(n: float) -> str:
    value = float(n)
    unit = 0
    while abs(value) >= 1024 and unit < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.1f} {_BYTE_UNITS[unit]}"


def capacity_tooltip(result: SummaryResult) -> str:
    return (
        f"You are using {format_bytes(result.capacity_used)} of "
        f"{format_bytes(result.capacity_total)} storage capacity across all nodes."
    )
