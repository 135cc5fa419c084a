"""Batch job orchestration used by the CLI and external schedulers."""

from .runner import JobResult, MerchRunner, RunnerOptions

__all__ = ["JobResult", "MerchRunner", "RunnerOptions"]
