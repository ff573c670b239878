#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/sim.py — in-process simulated cluster.

Stands in for the time-series service and node status endpoint when no
remote URL is configured (embedded mode), so the API serves believable
graphs out of the box. Same duck-typed surface as TimeSeriesClient:

    sim.query(names, sources, window) -> {name: {source: [[t, v], ...]}}
    sim.node_statuses() -> NodeSnapshot

Series are deterministic per (seed, metric, node). Metric names listed in
`counters` are produced as monotonically increasing counters (restarting from
zero at `restart_at`, if given); everything else is a wavy gauge.
"""

from __future__ import annotations

import math
import random
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .metrics import SourceSet, TimeWindow
from .summary import MetricConstants, NodeSnapshot

GiB = 1024 ** 3


class SimulatedCluster:
    def __init__(
        self,
        node_ids: Sequence[str] = ("1", "2", "3"),
        counters: Iterable[str] = (),
        sample_sec: float = 10.0,
        seed: int = 7,
        restart_at: Optional[Dict[str, float]] = None,
    ):
        self.node_ids = [str(n) for n in node_ids]
        self.counters = set(counters)
        self.sample_sec = float(sample_sec)
        self.seed = seed
        self.restart_at = dict(restart_at or {})
        self._lock = threading.Lock()
        self.query_calls = 0

    def _params(self, name: str, node: str) -> Dict[str, float]:
        rnd = random.Random(f"{self.seed}:{name}:{node}")
        return {
            "base": rnd.uniform(10.0, 1000.0),
            "amp": rnd.uniform(0.05, 0.3),
            "period": rnd.uniform(300.0, 3600.0),
            "phase": rnd.uniform(0.0, 2 * math.pi),
        }

    def _value(self, name: str, node: str, t: float) -> float:
        p = self._params(name, node)
        if name not in self.counters:
            return p["base"] * (1.0 + p["amp"] * math.sin(t / p["period"] + p["phase"]))

        # Counter = integral of the (always positive) wavy rate since the last restart.
        def integral(x: float) -> float:
            return x - p["amp"] * p["period"] * math.cos(x / p["period"] + p["phase"])

        origin = self.restart_at.get(node, 0.0)
        start = origin if 0 < origin <= t else 0.0
        return p["base"] * (integral(t) - integral(start))

    def _series(self, name: str, node: str, window: TimeWindow) -> List[List[float]]:
        out: List[List[float]] = []
        t = math.ceil(window.start / self.sample_sec) * self.sample_sec
        while t <= window.end:
            out.append([t, self._value(name, node, t)])
            t += self.sample_sec
        return out

    # -------- query service surface --------

    def query(self, names: Sequence[str], sources: SourceSet, window: TimeWindow) -> Dict[str, Dict[str, Any]]:
        if not names or sources.is_empty:
            return {}
        with self._lock:
            self.query_calls += 1
        nodes = [n for n in self.node_ids if sources.includes(n)]
        return {name: {n: self._series(name, n, window) for n in nodes} for name in names}

    def node_statuses(self) -> NodeSnapshot:
        nodes = []
        for i, n in enumerate(self.node_ids):
            capacity = (100 + 50 * i) * GiB
            nodes.append({
                MetricConstants.capacity: capacity,
                MetricConstants.available_capacity: int(capacity * (0.6 - 0.1 * (i % 3))),
                MetricConstants.unavailable_ranges: 0,
            })
        return NodeSnapshot(nodes=tuple(nodes), valid=True, node_ids=tuple(self.node_ids), fetched_at=time.time())
