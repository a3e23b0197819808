# errors.py
from __future__ import annotations

from typing import Optional


class EgressError(Exception):
    """Base class for everything the webhook raises on purpose."""


class ParseFailure(EgressError):
    """Malformed alias file or allowlist entry."""


class PortParseError(ParseFailure):
    pass


class ClusterError(EgressError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFound(ClusterError):
    pass


class Conflict(ClusterError):
    pass


class ReconcileCancelled(EgressError):
    """Admission deadline passed or the request was cancelled mid-reconcile."""
