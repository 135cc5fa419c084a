"""Per-run context: identity, deadline and cooperative cancellation."""

from .context import RunCancelled, RunContext

__all__ = ["RunCancelled", "RunContext"]
