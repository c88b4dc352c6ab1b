from __future__ import annotations

import httpx
import pytest

from conftest import T0, FakeClock, make_config, mock_client

from sla_probe.aggregator import BucketAggregator
from sla_probe.config import ConfigHolder
from sla_probe.records import KIND_PROBE, OutcomeBucket, PendingVerification, SubmissionRecord
from sla_probe.store import Store
from sla_probe.timeutil import ms_to_minute
from sla_probe.validator import Validator, ValidatorTickStats


def _never_confirms(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"code": 404, "message": "pending"})


def _confirms(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"code": 200, "data": {"status": "onchain"}})


def _seed(store: Store, tx_hash: str = "0xabc", sent_ts: int = T0) -> PendingVerification:
    p = PendingVerification(tx_hash=tx_hash, target="alpha", user_code="tenant-a", sent_timestamp=sent_ts)
    store.insert(p.key(), p)
    return p


def _bucket(store: Store) -> OutcomeBucket | None:
    return store.get(OutcomeBucket, f"alpha/{ms_to_minute(T0)}")


@pytest.mark.asyncio
async def test_times_out_on_first_tick_past_deadline(
    store: Store, aggregator: BucketAggregator, clock: FakeClock
) -> None:
    holder = ConfigHolder(make_config(validator_timeout=20))
    validator = Validator(holder, store, mock_client(_never_confirms), aggregator, clock=clock)
    _seed(store)

    for _ in range(4):
        clock.advance(5)
        stats = await validator.tick()
        assert stats.timed_out == 0
        assert store.count(PendingVerification) == 1

    # t=20 is not past the deadline; t=25 is.
    assert clock.now_ms - T0 == 20_000
    clock.advance(5)
    stats = await validator.tick()
    assert stats.timed_out == 1
    assert store.count(PendingVerification) == 0
    assert _bucket(store).timeout == 1
    assert _bucket(store).confirmed == 0


@pytest.mark.asyncio
async def test_per_target_timeout_overrides_global(
    store: Store, aggregator: BucketAggregator, clock: FakeClock
) -> None:
    config = make_config(
        validator_timeout=300,
        targets=[{"name": "alpha", "submit_url": "http://svc.test/submit", "validator_timeout": 20}],
    )
    validator = Validator(ConfigHolder(config), store, mock_client(_never_confirms), aggregator, clock=clock)
    _seed(store)
    clock.advance(21)
    assert (await validator.tick()).timed_out == 1


@pytest.mark.asyncio
async def test_confirmation_removes_pending(
    store: Store, aggregator: BucketAggregator, holder: ConfigHolder, clock: FakeClock
) -> None:
    validator = Validator(holder, store, mock_client(_confirms), aggregator, clock=clock)
    _seed(store)
    clock.advance(10)

    stats = await validator.tick()
    assert stats == ValidatorTickStats(scanned=1, timed_out=0, confirmed=1, still_pending=0)
    assert store.count(PendingVerification) == 0
    assert _bucket(store).confirmed == 1

    records = store.all(SubmissionRecord)
    assert len(records) == 1
    assert records[0].kind == KIND_PROBE
    assert records[0].tx_hash == "0xabc"

    # Nothing left to resolve, so a late timeout can never be counted.
    clock.advance(1000)
    await validator.tick()
    assert _bucket(store).timeout == 0


@pytest.mark.asyncio
async def test_timeout_wins_without_probing(store: Store, aggregator: BucketAggregator, clock: FakeClock) -> None:
    probes: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        probes.append(request)
        return _confirms(request)

    holder = ConfigHolder(make_config(validator_timeout=20))
    validator = Validator(holder, store, mock_client(handler), aggregator, clock=clock)
    _seed(store)
    clock.advance(60)

    stats = await validator.tick()
    assert stats.timed_out == 1
    assert stats.confirmed == 0
    assert probes == []
    assert _bucket(store).confirmed == 0


@pytest.mark.asyncio
async def test_transport_error_keeps_entry_pending(
    store: Store, aggregator: BucketAggregator, holder: ConfigHolder, clock: FakeClock
) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    validator = Validator(holder, store, mock_client(refuse), aggregator, clock=clock)
    _seed(store)
    clock.advance(5)

    stats = await validator.tick()
    assert stats.still_pending == 1
    assert store.count(PendingVerification) == 1
    assert _bucket(store) is None


@pytest.mark.asyncio
async def test_without_probe_url_entry_waits_for_timeout(
    store: Store, aggregator: BucketAggregator, clock: FakeClock
) -> None:
    holder = ConfigHolder(make_config(verify_api_url="", validator_timeout=20))
    validator = Validator(holder, store, mock_client(_confirms), aggregator, clock=clock)
    _seed(store)

    clock.advance(10)
    assert (await validator.tick()).still_pending == 1
    clock.advance(15)
    assert (await validator.tick()).timed_out == 1


@pytest.mark.asyncio
async def test_entry_removed_elsewhere_is_not_counted(
    store: Store, aggregator: BucketAggregator, holder: ConfigHolder, clock: FakeClock
) -> None:
    validator = Validator(holder, store, mock_client(_confirms), aggregator, clock=clock)
    pending = _seed(store)
    store.remove(PendingVerification, pending.key())

    stats = ValidatorTickStats()
    clock.advance(10)
    await validator.resolve_one(holder.current, pending.key(), pending, stats)
    assert stats.confirmed == 0
    assert _bucket(store) is None


@pytest.mark.asyncio
async def test_every_entry_ends_exactly_once(store: Store, aggregator: BucketAggregator, clock: FakeClock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["tx_hash"].endswith(("0", "2", "4")):
            return _confirms(request)
        return _never_confirms(request)

    holder = ConfigHolder(make_config(validator_timeout=20))
    validator = Validator(holder, store, mock_client(handler), aggregator, clock=clock)
    for i in range(6):
        _seed(store, tx_hash=f"0x{i}", sent_ts=T0 + i)

    for _ in range(8):
        clock.advance(5)
        await validator.tick()

    bucket = _bucket(store)
    assert store.count(PendingVerification) == 0
    assert bucket.confirmed == 3
    assert bucket.timeout == 3
