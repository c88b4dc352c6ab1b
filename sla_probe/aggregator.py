"""Per-target, per-minute outcome buckets and their hand-off to the metrics stage."""

from __future__ import annotations

import asyncio

import structlog

from sla_probe.records import OutcomeBucket, bucket_key
from sla_probe.store import Store
from sla_probe.timeutil import latest_finalized_minute, ms_to_minute, readable_minute


logger = structlog.get_logger(__name__)


class BucketAggregator:
    """Read-modify-write of OutcomeBuckets plus exactly-once forwarding.

    A bucket is forwarded at most once: the ``forwarded`` flag is persisted
    before the bucket is put on the channel, and flagged buckets are skipped.
    """

    def __init__(self, store: Store, channel: asyncio.Queue[OutcomeBucket]):
        self.store = store
        self.channel = channel

    def get(self, target: str, minute: int) -> OutcomeBucket | None:
        return self.store.get(OutcomeBucket, bucket_key(target, minute))

    def _get_or_new(self, target: str, minute: int) -> OutcomeBucket:
        bucket = self.get(target, minute)
        if bucket is None:
            bucket = OutcomeBucket(minute=minute, target=target)
        return bucket

    def record_send(
        self,
        target: str,
        sent_ts: int,
        ok: bool,
        *,
        now_ms: int,
        timeout_seconds: int,
    ) -> OutcomeBucket:
        minute = ms_to_minute(sent_ts)
        bucket = self.get(target, minute)
        if bucket is None:
            # First send of a new minute: the bucket that just became final
            # may have seen no other activity, so this is where it goes out.
            finalized = latest_finalized_minute(now_ms, timeout_seconds)
            previous = self.get(target, finalized)
            if previous is not None:
                self.forward(previous)
            bucket = OutcomeBucket(minute=minute, target=target)

        if ok:
            bucket.add_sent()
            logger.info("Bucket sent", target=target, minute=minute, sent=bucket.sent)
        else:
            bucket.add_sent_failed()
            logger.warning("Bucket sent_failed", target=target, minute=minute, sent_failed=bucket.sent_failed)
        self.store.insert(bucket.key(), bucket)
        return bucket

    def record_timeout(self, target: str, sent_ts: int) -> OutcomeBucket:
        bucket = self._get_or_new(target, ms_to_minute(sent_ts))
        bucket.add_timeout()
        if bucket.forwarded:
            logger.warning("Timeout recorded after bucket was forwarded", target=target, minute=bucket.minute)
        logger.warning("Bucket timeout", target=target, minute=bucket.minute, timeout=bucket.timeout)
        self.store.insert(bucket.key(), bucket)
        return bucket

    def record_confirmed(self, target: str, sent_ts: int) -> OutcomeBucket:
        bucket = self._get_or_new(target, ms_to_minute(sent_ts))
        bucket.add_confirmed()
        logger.info("Bucket confirmed", target=target, minute=bucket.minute, confirmed=bucket.confirmed)
        self.store.insert(bucket.key(), bucket)
        return bucket

    def mark_forwarded(self, bucket: OutcomeBucket) -> bool:
        if bucket.forwarded:
            return True
        bucket.forwarded = True
        if not self.store.insert(bucket.key(), bucket):
            bucket.forwarded = False
            return False
        return True

    def forward(self, bucket: OutcomeBucket) -> bool:
        """Hand a finalized bucket to the metrics stage unless it already went."""
        if bucket.forwarded:
            logger.debug("Bucket already forwarded", target=bucket.target, minute=bucket.minute)
            return False
        if not self.mark_forwarded(bucket):
            # Left unflagged: startup recovery picks it up instead.
            logger.error("Bucket not forwarded, flag not persisted", target=bucket.target, minute=bucket.minute)
            return False
        self.channel.put_nowait(bucket.copy())
        logger.info(
            "Bucket forwarded",
            target=bucket.target,
            minute=bucket.minute,
            at=readable_minute(bucket.minute),
        )
        return True
