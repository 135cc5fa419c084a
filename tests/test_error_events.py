from __future__ import annotations

from datetime import datetime, timezone

from merchwatch.monitoring import ErrorEvent, build_error_event


def test_fetch_event_defaults_to_retry_hint():
    event = build_error_event(
        "fetch",
        source="merchwatch.crawler.engines.HttpEngine",
        url="https://www.amazon.com/dp/B0ABCDEF12",
        attempt=3,
        retryable=True,
        details={"status": 503},
    )

    assert event["stage"] == "fetch"
    assert event["attempt"] == 3
    assert event["retryable"] is True
    assert event["action_required"] == "retry_later"
    assert event["details"] == {"status": 503}
    assert "asin" not in event
    assert "key" not in event


def test_serp_event_is_keyed_by_term_and_alias():
    event = ErrorEvent(
        stage="serp_job",
        source="merchwatch.serp.collector",
        term="cat mom",
        alias="de",
        action="skip",
        occurred_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    ).to_dict()

    assert event["key"] == "cat mom@de"
    assert event["action_required"] == "skip"
    assert event["timestamp"] == "2026-03-01T00:00:00+00:00"
    assert "details" not in event


def test_product_event_prefers_asin_key():
    event = build_error_event("persist", source="merchwatch.state.persistence", asin="B0MERCH001")

    assert event["key"] == "B0MERCH001"
    assert event["action_required"] == "check_database"
