#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
nodegraphs/errors.py — error kinds and side-channel error descriptors.

Nothing in the query path raises across the view boundary. Fetch failures are
caught by the store, turned into an ErrorInfo and parked on the cache entry;
the API then reports them next to the (possibly stale) data.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    FETCH_FAILED = "fetch_failed"
    TIMEOUT = "timeout"
    MALFORMED_SNAPSHOT = "malformed_snapshot"
    INVALID_SPEC = "invalid_spec"


# ----------------------------- exceptions -----------------------------

class NodeGraphsError(Exception):
    kind = ErrorKind.FETCH_FAILED

    def __init__(self, message: str, hint: str = "", detail: str = ""):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.detail = detail


class FetchFailed(NodeGraphsError):
    """The time-series service (or node status endpoint) could not be read."""
    kind = ErrorKind.FETCH_FAILED


class FetchTimeout(FetchFailed):
    kind = ErrorKind.TIMEOUT


class MalformedSnapshot(NodeGraphsError):
    kind = ErrorKind.MALFORMED_SNAPSHOT


class SpecError(NodeGraphsError, ValueError):
    """A dashboard definition could not be parsed."""
    kind = ErrorKind.INVALID_SPEC


# ----------------------------- descriptors -----------------------------

@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    hint: str = ""
    detail: str = ""
    at: float = field(default_factory=time.time)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        if isinstance(exc, NodeGraphsError):
            return cls(kind=exc.kind, message=exc.message, hint=exc.hint, detail=exc.detail)
        return cls(kind=ErrorKind.FETCH_FAILED, message=f"{type(exc).__name__}: {exc}")

    def full_message(self) -> str:
        """Message followed by optional HINT/DETAIL lines."""
        parts = [self.message]
        if self.hint:
            parts.append(f"HINT: {self.hint}")
        if self.detail:
            parts.append(f"DETAIL: {self.detail}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value, "message": self.message, "at": self.at}
        if self.hint:
            out["hint"] = self.hint
        if self.detail:
            out["detail"] = self.detail
        return out


def error_dict(info: Optional[ErrorInfo]) -> Optional[Dict[str, Any]]:
    return info.to_dict() if info is not None else None
