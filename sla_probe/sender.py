from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from sla_probe.aggregator import BucketAggregator
from sla_probe.client import ServiceClient, SubmitResult
from sla_probe.config import ConfigHolder, ProbeConfig, TargetConfig
from sla_probe.records import KIND_SEND, PendingVerification, SubmissionRecord
from sla_probe.store import Store
from sla_probe.timeutil import unix_now_ms


logger = structlog.get_logger(__name__)


class Sender:
    """Submits one synthetic transaction per configured target per tick."""

    def __init__(
        self,
        config: ConfigHolder,
        store: Store,
        client: ServiceClient,
        aggregator: BucketAggregator,
        *,
        clock: Callable[[], int] = unix_now_ms,
        shutdown: asyncio.Event | None = None,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.aggregator = aggregator
        self.clock = clock
        self.shutdown = shutdown
        self.lock = asyncio.Lock()

    async def tick(self) -> int:
        """Run one pass over all targets. Returns the number of attempts made."""
        async with self.lock:
            config = self.config.current
            attempts = 0
            for target in config.targets:
                if self.shutdown is not None and self.shutdown.is_set():
                    logger.info("Sender stopping early for shutdown", remaining=len(config.targets) - attempts)
                    break
                try:
                    await self.send_one(config, target)
                except Exception:
                    logger.exception("Sender failed for target", target=target.name)
                attempts += 1
            return attempts

    async def send_one(self, config: ProbeConfig, target: TargetConfig) -> SubmitResult:
        sent_ts = self.clock()
        result = await self.client.submit(target, request_key=sent_ts)

        if result.ok and result.tx_hash:
            pending = PendingVerification(
                tx_hash=result.tx_hash,
                target=target.name,
                user_code=target.user_code,
                sent_timestamp=sent_ts,
            )
            self.store.insert(pending.key(), pending)
            logger.info("Submitted", target=target.name, tx_hash=result.tx_hash, elapsed_ms=result.elapsed_ms)
        else:
            logger.error(
                "Submit failed",
                target=target.name,
                url=target.submit_url,
                outcome=result.outcome,
                http_status=result.http_status,
                error=result.error,
            )

        self.aggregator.record_send(
            target.name,
            sent_ts,
            result.ok,
            now_ms=sent_ts,
            timeout_seconds=config.timeout_for(target.name),
        )

        record = SubmissionRecord(
            timestamp=sent_ts,
            target=target.name,
            kind=KIND_SEND,
            api=target.submit_url,
            user_code=target.user_code,
            data=target.payload,
            tx_hash=result.tx_hash or "",
            resp=result.resp,
            http_status=result.http_status,
            outcome=result.outcome,
        )
        self.store.insert(record.key(), record)
        return result
