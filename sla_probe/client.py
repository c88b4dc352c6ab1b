from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from sla_probe.config import ProbeConfig, TargetConfig
from sla_probe.records import (
    OUTCOME_CONFIRMED,
    OUTCOME_DECODE_ERROR,
    OUTCOME_OK,
    OUTCOME_PENDING,
    OUTCOME_REJECTED,
    OUTCOME_TRANSPORT_ERROR,
    PendingVerification,
)


logger = structlog.get_logger(__name__)

SUCCESS_CODE = 200


class ResponseDecodeError(ValueError):
    """Response body does not match the endpoint's schema."""


class SubmitResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int
    data: Any = None
    message: str | None = None

    @property
    def tx_hash(self) -> str | None:
        # {"data": {"hash": "0x.."}}; some deployments return the hash directly as data.
        raw = self.data
        if isinstance(raw, dict):
            raw = raw.get("hash")
        if not isinstance(raw, str):
            return None
        s = raw.strip().strip('"')
        return s or None


class ProbeResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int
    data: Any = None
    message: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.code == SUCCESS_CODE


def decode_submit_response(body: Any) -> SubmitResponse:
    try:
        return SubmitResponse.model_validate(body)
    except ValidationError as exc:
        raise ResponseDecodeError(f"submit response: {exc.error_count()} invalid field(s)") from exc


def decode_probe_response(body: Any) -> ProbeResponse:
    try:
        return ProbeResponse.model_validate(body)
    except ValidationError as exc:
        raise ResponseDecodeError(f"probe response: {exc.error_count()} invalid field(s)") from exc


def _response_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise ResponseDecodeError(f"json_parse_error: {type(exc).__name__}: {exc}") from exc


@dataclass(frozen=True)
class SubmitResult:
    ok: bool
    outcome: str
    tx_hash: str | None
    http_status: int | None
    resp: Any
    error: str | None
    elapsed_ms: float | None


@dataclass(frozen=True)
class ProbeResult:
    confirmed: bool
    outcome: str
    http_status: int | None
    resp: Any
    error: str | None
    elapsed_ms: float | None


def build_http_client(config: ProbeConfig) -> httpx.AsyncClient:
    timeout = httpx.Timeout(float(config.request_timeout), connect=float(config.connect_timeout))
    return httpx.AsyncClient(timeout=timeout)


def render_probe_url(url: str, tx_hash: str) -> str:
    return url.replace("{hash}", tx_hash) if "{hash}" in url else url


class ServiceClient:
    """Submit and status calls against the monitored service."""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def submit(self, target: TargetConfig, *, request_key: int) -> SubmitResult:
        started = time.perf_counter()
        status_code: int | None = None
        body: Any = None
        try:
            resp = await self.http_client.post(
                target.submit_url,
                content=target.payload.encode("utf-8"),
                headers={
                    "Content-Type": "application/json",
                    "request_key": str(request_key),
                    "user_code": target.user_code,
                },
            )
            status_code = int(resp.status_code)
            body = _response_json(resp)
            decoded = decode_submit_response(body)
        except httpx.HTTPError as exc:
            return self._submit_failed(OUTCOME_TRANSPORT_ERROR, status_code, body, exc, started)
        except ResponseDecodeError as exc:
            return self._submit_failed(OUTCOME_DECODE_ERROR, status_code, body, exc, started)

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        if status_code >= 400 or decoded.code != SUCCESS_CODE:
            return SubmitResult(
                ok=False,
                outcome=OUTCOME_REJECTED,
                tx_hash=None,
                http_status=status_code,
                resp=body,
                error=f"unexpected_code: http={status_code} code={decoded.code} message={decoded.message!r}",
                elapsed_ms=elapsed_ms,
            )

        tx_hash = decoded.tx_hash
        if not tx_hash:
            return SubmitResult(
                ok=False,
                outcome=OUTCOME_DECODE_ERROR,
                tx_hash=None,
                http_status=status_code,
                resp=body,
                error="missing_tx_hash: data.hash absent",
                elapsed_ms=elapsed_ms,
            )

        return SubmitResult(
            ok=True,
            outcome=OUTCOME_OK,
            tx_hash=tx_hash,
            http_status=status_code,
            resp=body,
            error=None,
            elapsed_ms=elapsed_ms,
        )

    async def probe(self, url: str, pending: PendingVerification) -> ProbeResult:
        started = time.perf_counter()
        status_code: int | None = None
        body: Any = None
        try:
            resp = await self.http_client.get(
                render_probe_url(url, pending.tx_hash),
                headers={
                    "request_key": str(pending.sent_timestamp),
                    "user_code": pending.user_code,
                    "tx_hash": pending.tx_hash,
                },
            )
            status_code = int(resp.status_code)
            body = _response_json(resp)
            decoded = decode_probe_response(body)
        except httpx.HTTPError as exc:
            return self._probe_failed(OUTCOME_TRANSPORT_ERROR, status_code, body, exc, started)
        except ResponseDecodeError as exc:
            return self._probe_failed(OUTCOME_DECODE_ERROR, status_code, body, exc, started)

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        confirmed = status_code < 400 and decoded.confirmed
        return ProbeResult(
            confirmed=confirmed,
            outcome=OUTCOME_CONFIRMED if confirmed else OUTCOME_PENDING,
            http_status=status_code,
            resp=body,
            error=None if confirmed else f"not_confirmed: http={status_code} code={decoded.code}",
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def _submit_failed(outcome: str, status_code: int | None, body: Any, exc: Exception, started: float) -> SubmitResult:
        return SubmitResult(
            ok=False,
            outcome=outcome,
            tx_hash=None,
            http_status=status_code,
            resp=body,
            error=f"{type(exc).__name__}: {exc}",
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )

    @staticmethod
    def _probe_failed(outcome: str, status_code: int | None, body: Any, exc: Exception, started: float) -> ProbeResult:
        return ProbeResult(
            confirmed=False,
            outcome=outcome,
            http_status=status_code,
            resp=body,
            error=f"{type(exc).__name__}: {exc}",
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
