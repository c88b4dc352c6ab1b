from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from conftest import T0, make_config

from sla_probe.aggregator import BucketAggregator
from sla_probe.metrics import (
    CLASS_AVAILABLE,
    CLASS_SENT_FAILED,
    CLASS_UNAVAILABLE,
    MetricsStage,
    classify_bucket,
    create_metrics_app,
)
from sla_probe.records import OutcomeBucket
from sla_probe.store import Store
from sla_probe.timeutil import ms_to_minute


def test_classify_bucket_precedence() -> None:
    assert classify_bucket(OutcomeBucket(minute=1, target="a", sent=3, confirmed=3)) == CLASS_AVAILABLE
    assert classify_bucket(OutcomeBucket(minute=1, target="a", sent=3, timeout=1)) == CLASS_UNAVAILABLE
    # A failed send outranks a timeout; the minute is counted once.
    assert classify_bucket(OutcomeBucket(minute=1, target="a", sent_failed=1, timeout=2)) == CLASS_SENT_FAILED
    assert classify_bucket(OutcomeBucket(minute=1, target="a")) == CLASS_AVAILABLE


def test_observe_increments_counters() -> None:
    stage = MetricsStage(CollectorRegistry())
    stage.observe(OutcomeBucket(minute=1, target="alpha", sent=1, confirmed=1))
    stage.observe(OutcomeBucket(minute=2, target="alpha", sent=1, timeout=1))
    stage.observe(OutcomeBucket(minute=3, target="alpha", sent_failed=1, timeout=1))
    stage.observe(OutcomeBucket(minute=3, target="beta", sent=1))

    assert stage.value("observed", "alpha") == 3
    assert stage.value("unavailable", "alpha") == 2
    assert stage.value("sent_failed", "alpha") == 1
    assert stage.snapshot()["beta"] == {"sent_failed": 0.0, "unavailable": 0.0, "observed": 1.0}
    assert stage.value("observed", "missing") == 0

    with pytest.raises(KeyError):
        stage.value("confirmed", "alpha")


def test_recover_folds_only_finalized_buckets(store: Store, aggregator: BucketAggregator) -> None:
    now = T0
    current = ms_to_minute(now)
    for i in range(10, 15):
        store.insert(f"alpha/{current - i}", OutcomeBucket(minute=current - i, target="alpha", sent=1))
    store.insert(
        f"alpha/{current - 20}", OutcomeBucket(minute=current - 20, target="alpha", sent_failed=1, forwarded=True)
    )
    # Still inside the deadline window.
    store.insert(f"alpha/{current}", OutcomeBucket(minute=current, target="alpha", sent=1))

    stage = MetricsStage(CollectorRegistry())
    folded = stage.recover(store, aggregator, make_config(validator_timeout=300), now_ms=now)

    assert folded == 6
    assert stage.value("observed", "alpha") == 6
    assert stage.value("sent_failed", "alpha") == 1
    assert store.get(OutcomeBucket, f"alpha/{current - 10}").forwarded is True
    assert store.get(OutcomeBucket, f"alpha/{current}").forwarded is False


def test_recover_after_restart_counts_history_again(store: Store, aggregator: BucketAggregator) -> None:
    current = ms_to_minute(T0)
    for i in range(10, 13):
        store.insert(f"alpha/{current - i}", OutcomeBucket(minute=current - i, target="alpha", sent=1, timeout=1))
    config = make_config(validator_timeout=60)

    first = MetricsStage(CollectorRegistry())
    first.recover(store, aggregator, config, now_ms=T0)
    second = MetricsStage(CollectorRegistry())
    second.recover(store, aggregator, config, now_ms=T0)

    assert second.value("observed", "alpha") == 3
    assert second.value("unavailable", "alpha") == 3
    # Flagged buckets are never sent down the live channel.
    assert aggregator.forward(store.get(OutcomeBucket, f"alpha/{current - 10}")) is False


@pytest.mark.asyncio
async def test_consume_observes_forwarded_buckets() -> None:
    stage = MetricsStage(CollectorRegistry())
    channel: asyncio.Queue[OutcomeBucket] = asyncio.Queue()
    task = asyncio.create_task(stage.consume(channel))
    try:
        channel.put_nowait(OutcomeBucket(minute=5, target="alpha", sent=1))
        channel.put_nowait(OutcomeBucket(minute=4, target="alpha", sent_failed=1))
        await asyncio.wait_for(channel.join(), timeout=2)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert stage.value("observed", "alpha") == 2
    assert stage.value("sent_failed", "alpha") == 1


def test_metrics_endpoint_and_not_found() -> None:
    stage = MetricsStage(CollectorRegistry())
    stage.observe(OutcomeBucket(minute=1, target="alpha", sent=1, timeout=1))
    client = TestClient(create_metrics_app(stage.registry))

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'sla_observed_total{target="alpha"} 1.0' in resp.text
    assert 'sla_unavailable_total{target="alpha"} 1.0' in resp.text
    assert 'sla_sent_failed_total{target="alpha"} 0.0' in resp.text

    resp = client.get("/")
    assert resp.status_code == 404
    assert resp.json() == {"code": 404, "message": "Not Found"}

    resp = client.post("/metrics")
    assert resp.status_code == 404
