"""
Diagnostic Trace — which pipeline steps ran and how their batches fared
========================================================================

Observability only: nothing in the pipeline branches on the trace.
"""

from typing import Any, Dict, List, Optional

from cl_tracker.errors import ErrorKind


def say(verbose: bool, message: str) -> None:
    """Console status line; library callers stay silent unless verbose."""
    if verbose:
        print(message)


class PipelineTrace:
    """Ordered record of pipeline steps for one refresh."""

    def __init__(self, owner: str):
        self.owner = owner
        self.block: Optional[int] = None
        self.steps: List[Dict[str, Any]] = []

    def step(self, name: str, **fields: Any) -> None:
        """Record a step with arbitrary counters."""
        entry = {"step": name}
        entry.update({k: v for k, v in fields.items() if v is not None})
        self.steps.append(entry)

    def batch(self, name: str, results: List[str], **fields: Any) -> None:
        """Record a batched read: items touched and items that returned data."""
        self.step(name, total=len(results), ok=sum(1 for r in results if r), **fields)

    def failure(self, name: str, kind: ErrorKind, error: Any) -> None:
        """Record a recovered (or fatal) failure."""
        self.step(name, error_kind=kind.value, error=str(error))

    def find(self, name: str) -> List[Dict[str, Any]]:
        return [s for s in self.steps if s["step"] == name]

    def to_dict(self) -> Dict[str, Any]:
        return {"owner": self.owner, "block": self.block, "steps": list(self.steps)}
