from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from sla_probe.aggregator import BucketAggregator
from sla_probe.client import ServiceClient
from sla_probe.config import ConfigHolder, ProbeConfig
from sla_probe.store import Store


# Start of a UTC minute, so offsets below 60s stay in the same bucket.
T0 = 1_700_000_040_000


class FakeClock:
    def __init__(self, now_ms: int = T0):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


def make_config(**overrides: Any) -> ProbeConfig:
    data: dict[str, Any] = {
        "validator_timeout": 300,
        "verify_api_url": "http://svc.test/status",
        "targets": [
            {
                "name": "alpha",
                "submit_url": "http://svc.test/submit",
                "user_code": "tenant-a",
                "payload": {"to": "0x0", "value": "0"},
            }
        ],
    }
    data.update(overrides)
    return ProbeConfig(**data)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> ServiceClient:
    return ServiceClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("LOG_LEVEL", "SLA_PROBE_METRICS_PORT", "SLA_PROBE_STORAGE_PATH", "SLA_PROBE_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def store(tmp_path: Path) -> Store:
    s = Store.open(str(tmp_path / "probe.db"))
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def channel() -> asyncio.Queue:
    return asyncio.Queue()


@pytest.fixture()
def aggregator(store: Store, channel: asyncio.Queue) -> BucketAggregator:
    return BucketAggregator(store, channel)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def holder() -> ConfigHolder:
    return ConfigHolder(make_config())
