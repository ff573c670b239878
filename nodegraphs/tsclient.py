#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/tsclient.py — HTTP client for the time-series query service.

Endpoints
---------
POST {base}/ts/query        {names: [...], sources: [...]|null, start, end}
                            -> {results: {name: {source: [[t, v], ...]}}}
GET  {base}/_status/nodes   -> {nodes: [{node_id, metrics: {...}}, ...]}

Every transport problem is turned into FetchFailed (FetchTimeout for
timeouts) so the store can record it like any other failure.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from .errors import FetchFailed, FetchTimeout, MalformedSnapshot
from .metrics import SourceSet, TimeWindow
from .summary import NodeSnapshot

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class TimeSeriesClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        kwargs: Dict[str, Any] = {"timeout": self.timeout}
        if payload is not None:
            kwargs["json"] = payload
        url = self._url(path)
        try:
            resp = self.session.request(method.upper(), url, **kwargs)
        except requests.Timeout as exc:
            raise FetchTimeout(f"request to {url} timed out", detail=str(exc))
        except requests.RequestException as exc:
            raise FetchFailed(f"request to {url} failed", detail=str(exc))

        if resp.status_code >= 400:
            raise FetchFailed(
                f"{url} returned status {resp.status_code}",
                detail=(resp.text or "")[:500],
            )
        try:
            return resp.json()
        except ValueError:
            raise FetchFailed(
                f"{url} returned non-JSON response (status {resp.status_code})",
                hint="check that the base URL points at the time-series service",
            )

    # -------- time series --------

    def query(self, names: Sequence[str], sources: SourceSet, window: TimeWindow) -> Dict[str, Dict[str, Any]]:
        """Raw per-source series for each metric name."""
        if not names or sources.is_empty:
            return {}
        body = {
            "names": list(names),
            "sources": sources.to_param(),
            "start": window.start,
            "end": window.end,
        }
        data = self._request("POST", "/ts/query", body)
        results = data.get("results") if isinstance(data, Mapping) else None
        if not isinstance(results, Mapping):
            raise FetchFailed("malformed query response", detail="missing 'results' mapping")
        return {str(k): v for k, v in results.items()}

    # -------- node status --------

    def node_statuses(self) -> NodeSnapshot:
        data = self._request("GET", "/_status/nodes")
        nodes = data.get("nodes") if isinstance(data, Mapping) else None
        if not isinstance(nodes, list):
            raise MalformedSnapshot("malformed node status response", detail="missing 'nodes' list")
        return snapshot_from_statuses(nodes)


def snapshot_from_statuses(nodes: List[Any]) -> NodeSnapshot:
    metrics: List[Any] = []
    ids: List[str] = []
    for n in nodes:
        if isinstance(n, Mapping):
            metrics.append(n.get("metrics"))
            ids.append(str(n.get("node_id", "")))
        else:
            metrics.append(n)
            ids.append("")
    return NodeSnapshot(nodes=tuple(metrics), valid=True, node_ids=tuple(ids), fetched_at=time.time())
