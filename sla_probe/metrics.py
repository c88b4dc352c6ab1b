"""Metrics stage: derives SLA counters from finalized buckets and serves them."""

from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Iterator

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from sla_probe.aggregator import BucketAggregator
from sla_probe.config import ProbeConfig
from sla_probe.records import OutcomeBucket
from sla_probe.store import Store
from sla_probe.timeutil import latest_finalized_minute, readable_minute, unix_now_ms


logger = structlog.get_logger(__name__)

CLASS_SENT_FAILED = "sent_failed"
CLASS_UNAVAILABLE = "unavailable"
CLASS_AVAILABLE = "available"

COUNTER_NAMES = ("sent_failed", "unavailable", "observed")


class MetricsBindError(RuntimeError):
    """The scrape endpoint could not bind its port."""


def classify_bucket(bucket: OutcomeBucket) -> str:
    # A failed send outranks a timeout in the same minute; a bucket counts once.
    if bucket.sent_failed > 0:
        return CLASS_SENT_FAILED
    if bucket.timeout > 0:
        return CLASS_UNAVAILABLE
    return CLASS_AVAILABLE


class MetricsStage:
    """Three per-target counters: sent_failed <= unavailable <= observed."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.sent_failed = Counter(
            "sla_sent_failed",
            "SLA probe minutes with at least one failed submission",
            ["target"],
            registry=self.registry,
        )
        self.unavailable = Counter(
            "sla_unavailable",
            "SLA probe minutes with a failed submission or a verification timeout",
            ["target"],
            registry=self.registry,
        )
        self.observed = Counter(
            "sla_observed",
            "SLA probe minutes observed",
            ["target"],
            registry=self.registry,
        )

    def observe(self, bucket: OutcomeBucket) -> str:
        kind = classify_bucket(bucket)
        sent_failed = self.sent_failed.labels(target=bucket.target)
        unavailable = self.unavailable.labels(target=bucket.target)
        self.observed.labels(target=bucket.target).inc()
        if kind == CLASS_SENT_FAILED:
            sent_failed.inc()
            unavailable.inc()
            logger.warning("Minute sent_failed", target=bucket.target, at=readable_minute(bucket.minute), minute=bucket.minute)
        elif kind == CLASS_UNAVAILABLE:
            unavailable.inc()
            logger.warning("Minute unavailable", target=bucket.target, at=readable_minute(bucket.minute), minute=bucket.minute)
        else:
            logger.info("Minute available", target=bucket.target, at=readable_minute(bucket.minute), minute=bucket.minute)
        return kind

    def recover(
        self,
        store: Store,
        aggregator: BucketAggregator,
        config: ProbeConfig,
        now_ms: int | None = None,
    ) -> int:
        """Fold every finalized bucket in the store into the counters once.

        Counters start from zero each process, so buckets forwarded by an
        earlier run are counted again here; all of them are flagged so the
        sender never forwards them a second time.
        """
        now = unix_now_ms() if now_ms is None else int(now_ms)
        folded = 0
        totals = {CLASS_SENT_FAILED: 0, CLASS_UNAVAILABLE: 0, CLASS_AVAILABLE: 0}
        for _key, bucket in store.scan(OutcomeBucket):
            cutoff = latest_finalized_minute(now, config.timeout_for(bucket.target))
            if bucket.minute > cutoff:
                continue
            totals[self.observe(bucket)] += 1
            aggregator.mark_forwarded(bucket)
            folded += 1
        logger.info(
            "Recovered metrics data",
            before=readable_minute(latest_finalized_minute(now, config.validator_timeout)),
            sent_failed=totals[CLASS_SENT_FAILED],
            unavailable=totals[CLASS_SENT_FAILED] + totals[CLASS_UNAVAILABLE],
            observed=folded,
        )
        return folded

    async def consume(self, channel: asyncio.Queue[OutcomeBucket]) -> None:
        logger.info("Metrics start observing")
        while True:
            bucket = await channel.get()
            try:
                self.observe(bucket)
            except Exception:
                logger.exception("Failed to observe bucket", target=bucket.target, minute=bucket.minute)
            finally:
                channel.task_done()

    def value(self, name: str, target: str) -> float:
        if name not in COUNTER_NAMES:
            raise KeyError(name)
        sample = self.registry.get_sample_value(f"sla_{name}_total", {"target": target})
        return float(sample) if sample is not None else 0.0

    def snapshot(self) -> dict[str, dict[str, float]]:
        out: dict[str, dict[str, float]] = {}
        for metric in self.registry.collect():
            for sample in metric.samples:
                if not sample.name.endswith("_total"):
                    continue
                target = sample.labels.get("target")
                if target is None:
                    continue
                name = sample.name[len("sla_"):-len("_total")]
                out.setdefault(target, {})[name] = float(sample.value)
        return out


def create_metrics_app(registry: CollectorRegistry) -> FastAPI:
    app = FastAPI(title="SLA Probe Metrics", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.debug("Not Found", path=request.url.path, method=request.method)
        return JSONResponse(status_code=404, content={"code": 404, "message": "Not Found"})

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the owning service."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return


class MetricsServer:
    """Serves the scrape app on a socket bound up front so bind errors surface early."""

    def __init__(self, app: FastAPI, host: str, port: int):
        self.host = host
        self.port = port
        self.sock: socket.socket | None = None
        config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False, lifespan="off")
        self.server = _EmbeddedServer(config)

    def bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as exc:
            sock.close()
            raise MetricsBindError(f"cannot bind {self.host}:{self.port}: {exc}") from exc
        sock.set_inheritable(True)
        self.sock = sock
        self.port = sock.getsockname()[1]
        logger.info("Metrics listening", host=self.host, port=self.port)
        return sock

    async def serve(self) -> None:
        if self.sock is None:
            self.bind()
        await self.server.serve(sockets=[self.sock])

    def stop(self) -> None:
        self.server.should_exit = True

