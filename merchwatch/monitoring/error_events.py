from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Stage = Literal["fetch", "parse", "persist", "serp_job"]

# Operator hint attached to each stage unless the caller overrides it.
STAGE_ACTIONS: dict[str, str] = {
    "fetch": "retry_later",
    "parse": "check_markup",
    "persist": "check_database",
    "serp_job": "requeue_keyword",
}


@dataclass(slots=True)
class ErrorEvent:
    """Machine-readable description of one failed pipeline step.

    Attached to log records as ``extra={"error_event": ...}``. An event is
    keyed by ASIN for product work or by (term, alias) for SERP jobs.
    """

    stage: Stage
    source: str
    url: str | None = None
    asin: str | None = None
    term: str | None = None
    alias: str | None = None
    attempt: int | None = None
    retryable: bool = False
    action: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str | None:
        if self.asin:
            return self.asin
        if self.term:
            return f"{self.term}@{self.alias or 'us'}"
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage,
            "source": self.source,
            "retryable": self.retryable,
            "timestamp": self.occurred_at.isoformat(),
        }
        for name in ("url", "asin", "term", "alias", "attempt"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if self.key:
            payload["key"] = self.key
        action = self.action or STAGE_ACTIONS.get(self.stage)
        if action:
            payload["action_required"] = action
        if self.details:
            payload["details"] = dict(self.details)
        return payload


def build_error_event(
    stage: Stage,
    *,
    source: str,
    url: str | None = None,
    asin: str | None = None,
    term: str | None = None,
    alias: str | None = None,
    attempt: int | None = None,
    retryable: bool = False,
    action: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return ErrorEvent(
        stage=stage,
        source=source,
        url=url,
        asin=asin,
        term=term,
        alias=alias,
        attempt=attempt,
        retryable=retryable,
        action=action,
        details=details or {},
    ).to_dict()
