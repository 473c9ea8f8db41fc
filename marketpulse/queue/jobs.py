"""Job records, typed payloads and identity helpers."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from marketpulse.errors import JobPayloadError

DEFAULT_PRIORITY = 3


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


PENDING_STATUSES = frozenset({JobStatus.WAITING, JobStatus.DELAYED, JobStatus.STALLED})

AlertType = Literal["volume_spike", "divergence", "contradiction", "news", "filing"]
Severity = Literal["low", "medium", "high", "critical"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AlertJob(BaseModel):
    """An alert to distribute to users interested in a ticker."""

    kind: Literal["alert"] = "alert"
    ticker_id: str
    alert_type: AlertType
    severity: Severity
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class NotificationContent(BaseModel):
    alert_type: str
    message: str
    severity: Severity
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationJob(BaseModel):
    """A pending notification for a user without a live connection."""

    kind: Literal["notification"] = "notification"
    user_id: str
    ticker_id: str
    payload: NotificationContent
    priority: int = 2
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def expires_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class WebSocketJob(BaseModel):
    """A broadcast to the live subscribers of a ticker."""

    kind: Literal["websocket"] = "websocket"
    ticker_id: str
    connection_ids: list[str] = Field(default_factory=list)
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)


class IngestionJob(BaseModel):
    """A scheduled ingestion pass; empty ``tickers`` means every active ticker."""

    kind: Literal["market_data", "news_polling", "sec_filing"]
    tickers: list[str] = Field(default_factory=list)


class AnalysisJob(BaseModel):
    kind: Literal["spike_analysis", "contradiction_check", "alert_validation"]
    ticker_id: str
    volume_spike_id: Optional[str] = None
    contradiction_id: Optional[str] = None


JobPayload = Annotated[
    Union[AlertJob, NotificationJob, WebSocketJob, IngestionJob, AnalysisJob],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(data: Any) -> BaseModel:
    """
    Validate raw data against the job payload union.

    Args:
        data: A payload model or a mapping with a ``kind`` tag

    Returns:
        The concrete payload model

    Raises:
        JobPayloadError: If the data does not match any payload type
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise JobPayloadError(f"Invalid job payload: {e}") from e


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def alert_job_id(ticker: str, at: datetime) -> str:
    return f"alert-{ticker}-{to_ms(at)}"


def notification_job_id(user_id: str, at: datetime) -> str:
    return f"notif-{user_id}-{to_ms(at)}"


def websocket_job_id(ticker: str, at: datetime) -> str:
    return f"ws-{ticker}-{to_ms(at)}"


def alert_priority(severity: str) -> int:
    """Alerts: critical -> 1, high -> 2, everything else -> 3."""
    if severity == "critical":
        return 1
    if severity == "high":
        return 2
    return 3


def notification_priority(severity: str) -> int:
    """Notifications: critical -> 1, everything else -> 2."""
    return 1 if severity == "critical" else 2


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


@dataclass
class Job:
    """A unit of work as stored in its queue's job hash."""

    id: str
    queue_name: str
    type: str
    payload: dict[str, Any]
    priority: int = DEFAULT_PRIORITY
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 2000
    status: JobStatus = JobStatus.WAITING
    created_at: int = field(default_factory=now_ms)
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    failed_reason: Optional[str] = None
    stalled_count: int = 0
    lock_token: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    def parsed_payload(self) -> BaseModel:
        return parse_payload(self.payload)

    def backoff_ms(self) -> int:
        """Delay before the next attempt, based on attempts already made."""
        if self.backoff_type == "fixed":
            return self.backoff_delay_ms
        return self.backoff_delay_ms * 2 ** max(self.attempts_made - 1, 0)

    def to_hash(self) -> dict[str, str]:
        """Flatten into Redis hash fields (absent optionals are omitted)."""
        data = {
            "id": self.id,
            "queue_name": self.queue_name,
            "type": self.type,
            "payload": json.dumps(self.payload, sort_keys=True),
            "priority": str(self.priority),
            "attempts_made": str(self.attempts_made),
            "max_attempts": str(self.max_attempts),
            "backoff_type": self.backoff_type,
            "backoff_delay_ms": str(self.backoff_delay_ms),
            "status": self.status.value,
            "created_at": str(self.created_at),
            "stalled_count": str(self.stalled_count),
        }
        for name in ("processed_at", "finished_at", "failed_reason", "lock_token"):
            value = getattr(self, name)
            if value is not None:
                data[name] = str(value)
        return data

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Job":
        return cls(
            id=data["id"],
            queue_name=data["queue_name"],
            type=data["type"],
            payload=json.loads(data.get("payload") or "{}"),
            priority=int(data.get("priority", DEFAULT_PRIORITY)),
            attempts_made=int(data.get("attempts_made", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            backoff_type=data.get("backoff_type", "exponential"),
            backoff_delay_ms=int(data.get("backoff_delay_ms", 0)),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            created_at=int(data.get("created_at", 0)),
            processed_at=_optional_int(data.get("processed_at")),
            finished_at=_optional_int(data.get("finished_at")),
            failed_reason=data.get("failed_reason") or None,
            stalled_count=int(data.get("stalled_count", 0)),
            lock_token=data.get("lock_token") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view used by the administration API."""
        return {
            "id": self.id,
            "queue": self.queue_name,
            "type": self.type,
            "payload": self.payload,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "created_at": from_ms(self.created_at).isoformat(),
            "processed_at": _iso(self.processed_at),
            "finished_at": _iso(self.finished_at),
            "failed_reason": self.failed_reason,
            "stalled_count": self.stalled_count,
        }


def _iso(value: Optional[int]) -> Optional[str]:
    moment = from_ms(value)
    return moment.isoformat() if moment else None
