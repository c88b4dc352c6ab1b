"""Wires the probe stages together and owns startup and shutdown."""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Callable

import httpx
import structlog
from prometheus_client import CollectorRegistry

from sla_probe.aggregator import BucketAggregator
from sla_probe.client import ServiceClient, build_http_client
from sla_probe.config import ConfigHolder, ProbeConfig
from sla_probe.metrics import MetricsBindError, MetricsServer, MetricsStage, create_metrics_app
from sla_probe.records import OutcomeBucket, SubmissionRecord
from sla_probe.scheduler import JobScheduler
from sla_probe.sender import Sender
from sla_probe.store import Store
from sla_probe.timeutil import unix_now_ms
from sla_probe.validator import Validator


logger = structlog.get_logger(__name__)

SENDER_JOB = "sender"
VALIDATOR_JOB = "validator"
CONFIG_RELOAD_JOB = "config_reload"
RECORD_PRUNE_JOB = "record_prune"
RECORD_PRUNE_INTERVAL_SECONDS = 3600


class ProbeService:
    """Runs sender, validator, config reload and the metrics stage on one loop."""

    def __init__(
        self,
        config: ConfigHolder,
        *,
        http_client: httpx.AsyncClient | None = None,
        registry: CollectorRegistry | None = None,
        clock: Callable[[], int] = unix_now_ms,
    ):
        self.config = config
        self.clock = clock
        self.shutdown = asyncio.Event()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._registry = registry

        self.store: Store | None = None
        self.channel: asyncio.Queue[OutcomeBucket] = asyncio.Queue()
        self.aggregator: BucketAggregator | None = None
        self.metrics: MetricsStage | None = None
        self.server: MetricsServer | None = None
        self.sender: Sender | None = None
        self.validator: Validator | None = None
        self.scheduler = JobScheduler()
        self._consumer_task: asyncio.Task | None = None
        self._server_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Open the store, replay finished buckets, bind the scrape port, start ticking.

        Raises StoreError or MetricsBindError when the store cannot be opened or the
        metrics port cannot be bound.
        """
        config = self.config.current
        self.store = Store.open(config.storage_path)
        self.aggregator = BucketAggregator(self.store, self.channel)

        # Counters must include history before the first scrape is served.
        self.metrics = MetricsStage(self._registry)
        self.metrics.recover(self.store, self.aggregator, config, now_ms=self.clock())

        self.server = MetricsServer(create_metrics_app(self.metrics.registry), config.metrics_host, config.metrics_port)
        try:
            self.server.bind()
        except MetricsBindError:
            self.store.close()
            raise

        if self._http_client is None:
            self._http_client = build_http_client(config)
        client = ServiceClient(self._http_client)
        self.sender = Sender(self.config, self.store, client, self.aggregator, clock=self.clock, shutdown=self.shutdown)
        self.validator = Validator(
            self.config, self.store, client, self.aggregator, clock=self.clock, shutdown=self.shutdown
        )

        self._consumer_task = asyncio.create_task(self.metrics.consume(self.channel), name="metrics-consumer")
        self._server_task = asyncio.create_task(self.server.serve(), name="metrics-server")
        self._server_task.add_done_callback(self._on_server_done)

        self._schedule_jobs(config)
        self.config.subscribe(self._on_config_change)
        self.scheduler.start()
        logger.info("SLA probe started", targets=[t.name for t in config.targets], port=self.server.port)

    def _schedule_jobs(self, config: ProbeConfig) -> None:
        self.scheduler.add_interval_job(SENDER_JOB, self.sender.tick, config.sender_interval, "Submit probe transactions")
        self.scheduler.add_interval_job(
            VALIDATOR_JOB, self.validator.tick, config.validator_interval, "Resolve pending verifications"
        )
        if self.config.path is not None:
            self.scheduler.add_interval_job(
                CONFIG_RELOAD_JOB,
                self.reload_config,
                config.hot_update_interval,
                "Hot-reload configuration",
                run_immediately=False,
            )
        self.scheduler.add_interval_job(
            RECORD_PRUNE_JOB, self.prune_records, RECORD_PRUNE_INTERVAL_SECONDS, "Prune audit records"
        )

    async def reload_config(self) -> bool:
        return self.config.reload()

    async def prune_records(self) -> int:
        hours = self.config.current.record_retention_hours
        if hours <= 0 or self.store is None:
            return 0
        removed = self.store.prune(SubmissionRecord, before_ts=time.time() - hours * 3600)
        if removed:
            logger.info("Pruned submission records", removed=removed, retention_hours=hours)
        return removed

    def _on_config_change(self, old: ProbeConfig, new: ProbeConfig) -> None:
        if old.sender_interval != new.sender_interval:
            self.scheduler.reschedule(SENDER_JOB, new.sender_interval)
        if old.validator_interval != new.validator_interval:
            self.scheduler.reschedule(VALIDATOR_JOB, new.validator_interval)
        if old.hot_update_interval != new.hot_update_interval and CONFIG_RELOAD_JOB in self.scheduler.jobs:
            self.scheduler.reschedule(CONFIG_RELOAD_JOB, new.hot_update_interval)

    def _on_server_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Metrics server crashed", error=f"{type(exc).__name__}: {exc}")
        if not self.shutdown.is_set():
            self.shutdown.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.warning("Signal handlers unavailable", signal=sig.name)

    def request_shutdown(self) -> None:
        if not self.shutdown.is_set():
            logger.info("graceful_shutdown")
        self.shutdown.set()

    async def stop(self) -> None:
        self.shutdown.set()
        self.scheduler.pause()

        # Ticks already running finish their current call, then notice shutdown.
        if self.sender is not None:
            async with self.sender.lock:
                pass
        if self.validator is not None:
            async with self.validator.lock:
                pass
        self.scheduler.stop()

        if self.server is not None:
            self.server.stop()
        if self._server_task is not None:
            await asyncio.gather(self._server_task, return_exceptions=True)

        if self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)

        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
        if self.store is not None:
            self.store.close()
        logger.info("SLA probe stopped")

    async def run(self) -> None:
        self.install_signal_handlers()
        await self.start()
        try:
            await self.shutdown.wait()
        finally:
            await self.stop()
