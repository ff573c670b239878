#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/view.py — binds dashboards to the store and produces render payloads.

Per request:
  1. bind the dashboard to the SourceSet and selected tab
  2. flatten visible graphs into distinct QueryKeys
  3. ask the store to refresh stale keys (one call per sources/window group,
     in the background unless blocking=True)
  4. compute each series from whatever the cache holds right now, flagging
     stale or errored entries instead of waiting

Framework-agnostic; nodegraphs/api.py wraps it in Flask routes.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .aggregate import DEFAULTS as AGG_DEFAULTS, compute_series, latest_value, points_to_json
from .errors import error_dict
from .graph_spec import Dashboard, GraphSpecification, query_plan
from .metrics import ALL_NODES, MetricDescriptor, QueryKey, SourceSet, TimeScale, TimeWindow, time_scale
from .refresh import RefreshCoordinator
from .store import CacheEntry, QueryStore
from .summary import NodeSnapshot, capacity_tooltip, summarize


class Backend(Protocol):
    def query(self, names: Sequence[str], sources: SourceSet, window: TimeWindow) -> Mapping[str, Any]: ...

    def node_statuses(self) -> NodeSnapshot: ...


def _snapshot_valid(snapshot: Any) -> bool:
    return bool(getattr(snapshot, "valid", True))


class DashboardView:
    def __init__(
        self,
        store: QueryStore,
        backend: Backend,
        dashboards: Mapping[str, Dashboard],
        target_points: int = AGG_DEFAULTS["TARGET_POINTS"],
        blocking: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.backend = backend
        self.dashboards = dict(dashboards)
        self.target_points = target_points
        self.blocking = blocking
        self._clock = clock

        self._node_executor = None if blocking else ThreadPoolExecutor(max_workers=1, thread_name_prefix="NodeStatus")
        self.nodes: RefreshCoordinator[NodeSnapshot] = RefreshCoordinator(
            "nodes", backend.node_statuses, executor=self._node_executor, is_valid=_snapshot_valid,
        )

        # Bumped on every store/coordinator change so pollers know to re-render.
        self._version = 0
        self._version_lock = threading.Lock()
        self._unsubscribe = [
            store.subscribe(lambda _k, _e: self._bump()),
            self.nodes.subscribe(lambda _c, _old, _new: self._bump()),
        ]

    def _bump(self) -> None:
        with self._version_lock:
            self._version += 1

    @property
    def version(self) -> int:
        with self._version_lock:
            return self._version

    def close(self) -> None:
        for unsub in self._unsubscribe:
            unsub()
        if self._node_executor is not None:
            self._node_executor.shutdown(wait=False)

    # -------- helpers --------

    def _refresh(self, keys: List[QueryKey]) -> None:
        self.store.touch(keys)
        self.store.ensure_fresh_many(keys, self.backend.query, background=not self.blocking)
        self.store.evict_idle()

    def _series_payload(
        self, desc: MetricDescriptor, entry: CacheEntry, sources: SourceSet, window: TimeWindow, scale: TimeScale
    ) -> Dict[str, Any]:
        points = compute_series(
            desc, entry.raw_series, sources, window,
            target_points=self.target_points, min_width=scale.sample_sec,
        )
        return {
            "metric": desc.to_dict(),
            "points": points_to_json(points),
            "stale": entry.stale,
            "loading": entry.fetch_in_flight,
            "error": error_dict(entry.last_error),
        }

    def _graph_payload(self, spec: GraphSpecification, window: TimeWindow, scale: TimeScale) -> Dict[str, Any]:
        axes = []
        for axis in spec.axes:
            series = [
                self._series_payload(d, self.store.get(QueryKey(d.name, spec.sources, window)), spec.sources, window, scale)
                for d in axis.metrics
            ]
            axes.append({"units": axis.units.value, "label": axis.label, "series": series})
        return {
            "id": spec.id,
            "title": spec.title,
            "subtitle": spec.subtitle,
            "kind": spec.kind.value,
            "tooltip": spec.tooltip,
            "axes": axes,
        }

    # -------- public --------

    def dashboard(self, name: str) -> Dashboard:
        return self.dashboards[name]

    def render(
        self,
        name: str,
        group: Optional[str] = None,
        sources: SourceSet = ALL_NODES,
        scale: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        dash = self.dashboards[name]
        ts = time_scale(scale)
        window = ts.window_at(self._clock() if now is None else now)
        specs = [s for s in dash.bind(sources, group) if s.visible]

        self._refresh(query_plan(specs, window))
        return {
            "dashboard": dash.name,
            "title": dash.title,
            "tab": group or dash.default,
            "tabs": dash.tabs,
            "sources": sources.to_param(),
            "scale": ts.key,
            "window": window.to_dict(),
            "graphs": [self._graph_payload(s, window, ts) for s in specs],
            "version": self.version,
        }

    def summary(
        self,
        name: str,
        sources: SourceSet = ALL_NODES,
        scale: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        dash = self.dashboards[name]
        ts = time_scale(scale)
        window = ts.window_at(self._clock() if now is None else now)

        snapshot = self.nodes.ensure()
        result = summarize(snapshot)

        keys = [QueryKey(s.metric.name, sources, window) for s in dash.summary_stats]
        self._refresh(keys)

        stats = []
        for stat, key in zip(dash.summary_stats, keys):
            entry = self.store.get(key)
            series = compute_series(
                stat.metric, entry.raw_series, sources, window,
                target_points=self.target_points, min_width=ts.sample_sec,
            )
            value = latest_value(series)
            stats.append({
                "id": stat.id,
                "title": stat.title,
                "value": value,
                "display": stat.render(value),
                "stale": entry.stale,
                "error": error_dict(entry.last_error),
            })

        return {
            **result.to_dict(),
            "capacity_tooltip": capacity_tooltip(result),
            "nodes_state": self.nodes.state.value,
            "nodes_valid": self.nodes.valid,
            "nodes_error": error_dict(self.nodes.last_error),
            "nodes_updated_at": self.nodes.updated_at,
            "node_ids": list(getattr(snapshot, "node_ids", ())),
            "stats": stats,
            "version": self.version,
        }

    def invalidate(self, names: Optional[Sequence[str]] = None) -> int:
        if not names:
            return self.store.invalidate_all()
        wanted = set(names)
        return self.store.invalidate_matching(lambda k: k.name in wanted)

    def invalidate_nodes(self) -> None:
        self.nodes.invalidate()
