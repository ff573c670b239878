#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/api.py — Flask API serving computed node graphs and summary stats.

Endpoints
---------
GET  /health?entries=1
GET  /dashboards
GET  /dashboards/<name>?group=activity&node=3&scale=10m
GET  /summary?dashboard=nodes&node=3&scale=10m
POST /invalidate          { names?: ["cr.node.sql.conns", ...] }   (omit names: everything)
POST /nodes/invalidate

Graph and summary responses never wait on the time-series service unless
blocking refresh is enabled: they return the cached (possibly stale or
empty) data with per-series `stale` / `error` flags, and a `version` that
changes once a background fetch lands.

Run
---
export NODEGRAPHS_TSDB_URL=http://127.0.0.1:8081   # omit for the embedded simulated cluster
python3 -m nodegraphs.api --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Flask, jsonify, request

from .errors import ErrorInfo, SpecError
from .graph_spec import DASHBOARDS_DIR, load_dashboards
from .metrics import SourceSet
from .sim import SimulatedCluster
from .store import QueryStore
from .tsclient import DEFAULT_TIMEOUT, TimeSeriesClient
from .view import DashboardView

log = logging.getLogger(__name__)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


# -----------------------------------
# App singletons
# -----------------------------------

TSDB_URL = os.environ.get("NODEGRAPHS_TSDB_URL")
TSDB_TIMEOUT = _env_float("NODEGRAPHS_TSDB_TIMEOUT", DEFAULT_TIMEOUT)
DASHBOARDS_PATH = Path(os.environ.get("NODEGRAPHS_DASHBOARDS") or DASHBOARDS_DIR)
TARGET_POINTS = int(os.environ.get("NODEGRAPHS_TARGET_POINTS", "300"))
IDLE_TTL_SEC = _env_float("NODEGRAPHS_IDLE_TTL_SEC", None)
BLOCKING_REFRESH = _env_flag("NODEGRAPHS_BLOCKING_REFRESH")

BACKEND_LABEL = "embedded simulated cluster"
STORE: Optional[QueryStore] = None
VIEW: Optional[DashboardView] = None

app = Flask(__name__)


def _configure_runtime(
    remote: Optional[str] = None,
    timeout: Optional[float] = TSDB_TIMEOUT,
    dashboards_path: Path = DASHBOARDS_PATH,
    blocking: bool = BLOCKING_REFRESH,
    backend: Any = None,
    clock: Callable[[], float] = time.time,
) -> DashboardView:
    """(Re)build the store and view. `backend` overrides remote/embedded selection."""
    global STORE, VIEW, BACKEND_LABEL

    if VIEW is not None:
        VIEW.close()
    if STORE is not None:
        STORE.shutdown(wait=False)

    dashboards = load_dashboards(dashboards_path)

    if backend is None and remote:
        backend = TimeSeriesClient(remote, timeout=timeout or DEFAULT_TIMEOUT)
        BACKEND_LABEL = f"remote query service @ {backend.base_url}"
    elif backend is None:
        counters = {
            m.name
            for d in dashboards.values()
            for g in d.groups
            for graph in g.graphs
            for axis in graph.axes
            for m in (am.descriptor for am in axis.metrics)
            if m.is_rate
        }
        counters |= {s.metric.name for d in dashboards.values() for s in d.summary_stats if s.metric.is_rate}
        backend = SimulatedCluster(counters=counters)
        BACKEND_LABEL = "embedded simulated cluster"
    else:
        BACKEND_LABEL = type(backend).__name__

    STORE = QueryStore(idle_ttl_sec=IDLE_TTL_SEC)
    VIEW = DashboardView(STORE, backend, dashboards, target_points=TARGET_POINTS, blocking=blocking, clock=clock)
    log.info("[api] serving %d dashboard(s) from %s", len(dashboards), BACKEND_LABEL)
    return VIEW


_configure_runtime(TSDB_URL)


# -----------------------------------
# Helpers
# -----------------------------------


def _ok(data: Any, status: int = 200):
    return jsonify({"ok": True, "data": data}), status


def _err(msg: str, status: int = 400, **extra):
    return jsonify({"ok": False, "error": msg, **extra}), status


def _sources_arg() -> SourceSet:
    return SourceSet.from_param(request.args.get("node") or request.args.get("sources"))


# -----------------------------------
# Routes
# -----------------------------------


@app.get("/health")
def health():
    return _ok({
        "backend": BACKEND_LABEL,
        "blocking_refresh": VIEW.blocking,
        "store": STORE.stats(),
        "entries": [e.to_dict() for e in STORE.entries()] if request.args.get("entries") else None,
        "nodes_state": VIEW.nodes.state.value,
        "version": VIEW.version,
    })


@app.get("/dashboards")
def dashboards():
    out = []
    for d in VIEW.dashboards.values():
        out.append({
            "name": d.name,
            "title": d.title,
            "default": d.default,
            "tabs": d.tabs,
            "graphs": sum(len(g.graphs) for g in d.groups),
            "summary_stats": [s.id for s in d.summary_stats],
        })
    return _ok(out)


@app.get("/dashboards/<name>")
def dashboard(name: str):
    if name not in VIEW.dashboards:
        return _err(f"unknown dashboard {name!r}", status=404)
    group = request.args.get("group")
    if group and group not in VIEW.dashboard(name).tabs:
        return _err(f"unknown group {group!r}", status=404, tabs=VIEW.dashboard(name).tabs)
    try:
        payload = VIEW.render(name, group=group, sources=_sources_arg(), scale=request.args.get("scale"))
    except ValueError as e:
        return _err(str(e))
    return _ok(payload)


@app.get("/summary")
def summary():
    name = request.args.get("dashboard") or "nodes"
    if name not in VIEW.dashboards:
        return _err(f"unknown dashboard {name!r}", status=404)
    try:
        payload = VIEW.summary(name, sources=_sources_arg(), scale=request.args.get("scale"))
    except ValueError as e:
        return _err(str(e))
    return _ok(payload)


@app.post("/invalidate")
def invalidate():
    body = request.get_json(silent=True) or {}
    names = body.get("names")
    if names is not None and not isinstance(names, list):
        return _err("'names' must be a list of metric names")
    count = VIEW.invalidate(names)
    return _ok({"invalidated": count})


@app.post("/nodes/invalidate")
def invalidate_nodes():
    VIEW.invalidate_nodes()
    return _ok({"nodes_state": VIEW.nodes.state.value})


# -----------------------------------
# CLI entrypoint
# -----------------------------------


def main():
    ap = argparse.ArgumentParser(description="Node graphs API")
    ap.add_argument("--host", default=os.environ.get("NODEGRAPHS_API_HOST", "127.0.0.1"))
    ap.add_argument(
        "--port", type=int, default=int(os.environ.get("NODEGRAPHS_API_PORT", "8080"))
    )
    ap.add_argument("--tsdb", default=TSDB_URL, help="Time-series service base URL (default: embedded simulation)")
    ap.add_argument("--tsdb-timeout", type=float, default=TSDB_TIMEOUT)
    ap.add_argument("--dashboards", type=Path, default=DASHBOARDS_PATH, help="Directory of dashboard YAML files")
    ap.add_argument("--blocking-refresh", action="store_true", default=BLOCKING_REFRESH)
    ap.add_argument("--log-level", default=os.environ.get("NODEGRAPHS_LOG_LEVEL", "INFO"))
    ap.add_argument("--debug", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        _configure_runtime(args.tsdb, args.tsdb_timeout, args.dashboards, args.blocking_refresh)
    except SpecError as e:
        ap.error(ErrorInfo.from_exception(e).full_message())
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
