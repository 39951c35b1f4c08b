"""
Error Taxonomy
==============

Only ``InvalidInput`` (and ``PipelineFailed`` when the chain itself is
unreachable) reach the caller. Partial read failures and guarded math are
recovered where they happen and show up in the diagnostic trace as
``ErrorKind`` values instead of exceptions.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Kinds recorded in the diagnostic trace."""

    INVALID_INPUT = "InvalidInput"
    PARTIAL_READ_FAILURE = "PartialReadFailure"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    COMPUTATION_GUARDED = "ComputationGuarded"


class TrackerError(Exception):
    """Base class for tracker errors."""


class InvalidInput(TrackerError, ValueError):
    """Malformed request input (e.g. owner address). Raised before any I/O."""


class UpstreamUnavailable(TrackerError, RuntimeError):
    """A whole external dependency (chain RPC, price oracle, subgraph) is unreachable."""

    def __init__(self, source: str, detail: str = ""):
        self.source = source
        self.detail = detail
        msg = f"{source} unavailable"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class PipelineFailed(TrackerError, RuntimeError):
    """The refresh could not produce any result; carries the diagnostic trace."""

    def __init__(self, message: str, trace=None):
        self.trace = trace
        super().__init__(message)
