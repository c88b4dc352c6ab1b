from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

import structlog

from sla_probe.aggregator import BucketAggregator
from sla_probe.client import ServiceClient
from sla_probe.config import ConfigHolder, ProbeConfig
from sla_probe.records import KIND_PROBE, PendingVerification, SubmissionRecord
from sla_probe.store import Store
from sla_probe.timeutil import unix_now_ms


logger = structlog.get_logger(__name__)


@dataclass
class ValidatorTickStats:
    scanned: int = 0
    timed_out: int = 0
    confirmed: int = 0
    still_pending: int = 0


class Validator:
    """Resolves pending verifications: timeout first, otherwise one status probe."""

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

    async def tick(self) -> ValidatorTickStats:
        async with self.lock:
            config = self.config.current
            stats = ValidatorTickStats()
            for key, pending in self.store.scan(PendingVerification):
                if self.shutdown is not None and self.shutdown.is_set():
                    logger.info("Validator stopping early for shutdown", scanned=stats.scanned)
                    break
                stats.scanned += 1
                try:
                    await self.resolve_one(config, key, pending, stats)
                except Exception:
                    logger.exception("Validator failed for entry", target=pending.target, tx_hash=pending.tx_hash)
            if stats.scanned:
                logger.info(
                    "Validator tick done",
                    scanned=stats.scanned,
                    timed_out=stats.timed_out,
                    confirmed=stats.confirmed,
                    still_pending=stats.still_pending,
                )
            return stats

    async def resolve_one(
        self,
        config: ProbeConfig,
        key: str,
        pending: PendingVerification,
        stats: ValidatorTickStats,
    ) -> None:
        now = self.clock()
        timeout_ms = config.timeout_for(pending.target) * 1000
        elapsed = now - int(pending.sent_timestamp)

        # Deadline wins over any confirmation that might arrive this tick.
        if elapsed > timeout_ms:
            if self.store.remove(PendingVerification, key):
                self.aggregator.record_timeout(pending.target, pending.sent_timestamp)
                stats.timed_out += 1
                logger.warning(
                    "Verification timed out",
                    target=pending.target,
                    tx_hash=pending.tx_hash,
                    elapsed_ms=elapsed,
                )
            return

        url = config.probe_url_for(pending.target)
        if not url:
            stats.still_pending += 1
            logger.debug("No probe url, waiting for timeout", target=pending.target, tx_hash=pending.tx_hash)
            return

        result = await self.client.probe(url, pending)
        record = SubmissionRecord(
            timestamp=self.clock(),
            target=pending.target,
            kind=KIND_PROBE,
            api=url,
            user_code=pending.user_code,
            data=str(pending.sent_timestamp),
            tx_hash=pending.tx_hash,
            resp=result.resp,
            http_status=result.http_status,
            outcome=result.outcome,
        )
        self.store.insert(record.key(), record)

        if not result.confirmed:
            stats.still_pending += 1
            logger.info(
                "Verification pending",
                target=pending.target,
                tx_hash=pending.tx_hash,
                outcome=result.outcome,
                error=result.error,
            )
            return

        if self.store.remove(PendingVerification, key):
            self.aggregator.record_confirmed(pending.target, pending.sent_timestamp)
            stats.confirmed += 1
            logger.info("Verification confirmed", target=pending.target, tx_hash=pending.tx_hash)
