from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, ClassVar


# Counters in an OutcomeBucket saturate here instead of growing without bound.
BUCKET_COUNTER_MAX = 0xFFFF_FFFF

KEY_SEP = "/"

# Outcome codes stored on SubmissionRecord.outcome.
OUTCOME_OK = "ok"
OUTCOME_REJECTED = "rejected"
OUTCOME_TRANSPORT_ERROR = "transport_error"
OUTCOME_DECODE_ERROR = "decode_error"
OUTCOME_PENDING = "pending"
OUTCOME_CONFIRMED = "confirmed"

KIND_SEND = "send"
KIND_PROBE = "probe"


def _saturating_add(value: int, amount: int = 1) -> int:
    return min(BUCKET_COUNTER_MAX, int(value) + int(amount))


def bucket_key(target: str, minute: int) -> str:
    return f"{target}{KEY_SEP}{int(minute)}"


@dataclass(frozen=True)
class SubmissionRecord:
    """One send or probe attempt, kept for audit only."""

    COLLECTION: ClassVar[str] = "submission_record"

    timestamp: int
    target: str
    kind: str
    api: str
    user_code: str = ""
    data: str = ""
    tx_hash: str = ""
    resp: Any = None
    http_status: int | None = None
    outcome: str = ""

    def key(self) -> str:
        return KEY_SEP.join([self.target, str(int(self.timestamp)), self.kind, self.tx_hash])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SubmissionRecord:
        return cls(
            timestamp=int(raw["timestamp"]),
            target=str(raw["target"]),
            kind=str(raw.get("kind") or KIND_SEND),
            api=str(raw.get("api") or ""),
            user_code=str(raw.get("user_code") or ""),
            data=str(raw.get("data") or ""),
            tx_hash=str(raw.get("tx_hash") or ""),
            resp=raw.get("resp"),
            http_status=(int(raw["http_status"]) if raw.get("http_status") is not None else None),
            outcome=str(raw.get("outcome") or ""),
        )


@dataclass(frozen=True)
class PendingVerification:
    """A submitted transaction that is neither confirmed nor timed out yet."""

    COLLECTION: ClassVar[str] = "pending_verification"

    tx_hash: str
    target: str
    user_code: str
    sent_timestamp: int

    def key(self) -> str:
        # The remote service may hand out the same hash twice; the send
        # timestamp keeps those entries apart.
        return KEY_SEP.join([self.target, self.tx_hash, str(int(self.sent_timestamp))])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PendingVerification:
        return cls(
            tx_hash=str(raw["tx_hash"]),
            target=str(raw["target"]),
            user_code=str(raw.get("user_code") or ""),
            sent_timestamp=int(raw["sent_timestamp"]),
        )


@dataclass
class OutcomeBucket:
    """Per-target, per-minute aggregate of verification outcomes."""

    COLLECTION: ClassVar[str] = "outcome_bucket"

    minute: int
    target: str
    sent: int = 0
    sent_failed: int = 0
    timeout: int = 0
    confirmed: int = 0
    forwarded: bool = field(default=False)

    def key(self) -> str:
        return bucket_key(self.target, self.minute)

    def add_sent(self) -> None:
        self.sent = _saturating_add(self.sent)

    def add_sent_failed(self) -> None:
        self.sent_failed = _saturating_add(self.sent_failed)

    def add_timeout(self) -> None:
        self.timeout = _saturating_add(self.timeout)

    def add_confirmed(self) -> None:
        self.confirmed = _saturating_add(self.confirmed)

    def copy(self) -> OutcomeBucket:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OutcomeBucket:
        return cls(
            minute=int(raw["minute"]),
            target=str(raw["target"]),
            sent=int(raw.get("sent") or 0),
            sent_failed=int(raw.get("sent_failed") or 0),
            timeout=int(raw.get("timeout") or 0),
            confirmed=int(raw.get("confirmed") or 0),
            forwarded=bool(raw.get("forwarded")),
        )
