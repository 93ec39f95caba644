"""Data model for capture records, pipeline jobs and sync acknowledgements."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_record_id() -> str:
    """Client-side identifier, stable before the record ever reaches the server."""
    return uuid.uuid4().hex


def normalize_text(text: str) -> str:
    """Collapse whitespace per line and lower-case for stable hashing."""
    lines = []
    for line in (text or "").split("\n"):
        lines.append(" ".join(line.split()) if line.strip() else "")
    return "\n".join(lines).strip().lower()


def fingerprint_text(text: str) -> str:
    digest = hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()
    return f"text:{digest}"


def fingerprint_audio(audio_bytes: bytes) -> str:
    return f"audio:{hashlib.sha256(audio_bytes).hexdigest()}"


class RecordState(str, Enum):
    """Processing state of a capture record."""

    CAPTURED = "captured"
    QUEUED = "queued"
    TRANSCRIBING = "transcribing"
    ENRICHING = "enriching"
    INTEGRATING = "integrating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RecordState.COMPLETED, RecordState.FAILED)


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    TRANSCRIPTION = "transcription"
    ENRICHMENT = "enrichment"
    INTEGRATION = "integration"

    @property
    def record_state(self) -> RecordState:
        return {
            Stage.TRANSCRIPTION: RecordState.TRANSCRIBING,
            Stage.ENRICHMENT: RecordState.ENRICHING,
            Stage.INTEGRATION: RecordState.INTEGRATING,
        }[self]


class JobStatus(str, Enum):
    """Valid states for a pipeline job."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_PENDING = "retry_pending"


class CommandStatus(str, Enum):
    SUGGESTED = "suggested"
    PENDING = "pending"
    CREATED = "created"
    FAILED = "failed"


class AckStatus(str, Enum):
    ACCEPTED = "accepted"
    STALE = "stale"
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"


@dataclass
class ActionCommand:
    """An action extracted from a capture, e.g. a calendar event to create."""

    type: str
    title: str
    params: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    status: CommandStatus = CommandStatus.SUGGESTED
    external_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["status"] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionCommand":
        return cls(
            type=data.get("type", "create_event"),
            title=data.get("title", ""),
            params=dict(data.get("params") or {}),
            confidence=float(data.get("confidence") or 0.0),
            status=CommandStatus(data.get("status", CommandStatus.SUGGESTED.value)),
            external_id=data.get("external_id"),
            error=data.get("error"),
        )


@dataclass
class Enrichment:
    """Structured AI-derived metadata for a capture."""

    category: str
    confidence: float
    summary: str = ""
    subcategory: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    entities: Dict[str, List[str]] = field(default_factory=dict)
    commands: List[ActionCommand] = field(default_factory=list)
    suggested_links: List[str] = field(default_factory=list)
    provider: str = "unknown"
    degraded: bool = False
    suggested: bool = True

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["commands"] = [command.to_dict() for command in self.commands]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Enrichment":
        return cls(
            category=data.get("category") or "notes",
            confidence=float(data.get("confidence") or 0.0),
            summary=data.get("summary") or "",
            subcategory=data.get("subcategory"),
            tags=list(data.get("tags") or []),
            entities={k: list(v) for k, v in (data.get("entities") or {}).items()},
            commands=[ActionCommand.from_dict(c) for c in data.get("commands") or []],
            suggested_links=list(data.get("suggested_links") or []),
            provider=data.get("provider") or "unknown",
            degraded=bool(data.get("degraded", False)),
            suggested=bool(data.get("suggested", True)),
        )


@dataclass
class CaptureRecord:
    """One user-captured thought and its processing state."""

    id: str
    owner_id: str
    origin_client_id: str
    content_fingerprint: str
    text: Optional[str] = None
    audio_ref: Optional[str] = None
    language: Optional[str] = None
    state: RecordState = RecordState.CAPTURED
    transcript: Optional[str] = None
    transcript_confidence: Optional[float] = None
    transcript_provider: Optional[str] = None
    enrichment: Optional[Enrichment] = None
    category: Optional[str] = None
    version: int = 1
    content_version: int = 1
    edited: bool = False
    deleted: bool = False
    duplicate_of: Optional[str] = None
    failure_stage: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_ref)

    @property
    def finalized_text(self) -> Optional[str]:
        if self.transcript:
            return self.transcript
        if not self.has_audio:
            return self.text
        return None

    def copy(self, **changes: Any) -> "CaptureRecord":
        return replace(self, **changes)

    def to_api(self) -> Dict[str, Any]:
        """Read-only projection exposed to clients."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "origin_client_id": self.origin_client_id,
            "text": self.text,
            "audio_ref": self.audio_ref,
            "language": self.language,
            "content_fingerprint": self.content_fingerprint,
            "state": self.state.value,
            "transcript": self.transcript,
            "transcript_confidence": self.transcript_confidence,
            "transcript_provider": self.transcript_provider,
            "enrichment": self.enrichment.to_dict() if self.enrichment else None,
            "category": self.category,
            "version": self.version,
            "content_version": self.content_version,
            "edited": self.edited,
            "deleted": self.deleted,
            "duplicate_of": self.duplicate_of,
            "failure_stage": self.failure_stage,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CaptureRecord":
        """Build a record from a client payload (sync batch or local queue row)."""
        enrichment = data.get("enrichment")
        created_at = data.get("created_at")
        updated_at = data.get("updated_at")
        if isinstance(created_at, str):
            created_at = parse_timestamp(created_at)
        if isinstance(updated_at, str):
            updated_at = parse_timestamp(updated_at)
        return cls(
            id=data["id"],
            owner_id=str(data["owner_id"]),
            origin_client_id=data.get("origin_client_id") or "unknown",
            content_fingerprint=data.get("content_fingerprint")
            or fingerprint_text(data.get("text") or ""),
            text=data.get("text"),
            audio_ref=data.get("audio_ref"),
            language=data.get("language"),
            state=RecordState(data.get("state", RecordState.CAPTURED.value)),
            transcript=data.get("transcript"),
            transcript_confidence=data.get("transcript_confidence"),
            transcript_provider=data.get("transcript_provider"),
            enrichment=Enrichment.from_dict(enrichment) if enrichment else None,
            category=data.get("category"),
            version=int(data.get("version", 1)),
            content_version=int(data.get("content_version", data.get("version", 1))),
            edited=bool(data.get("edited", False)),
            deleted=bool(data.get("deleted", False)),
            duplicate_of=data.get("duplicate_of"),
            failure_stage=data.get("failure_stage"),
            failure_reason=data.get("failure_reason"),
            created_at=created_at or utcnow(),
            updated_at=updated_at or created_at or utcnow(),
        )


@dataclass
class Job:
    """One unit of queued work for a single pipeline stage."""

    job_id: str
    record_id: str
    owner_id: str
    stage: Stage
    priority: int
    status: JobStatus
    attempt: int
    max_attempts: int
    record_version: int
    created_at: datetime
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempt)

    def to_api(self) -> Dict[str, Any]:
        """Return a safe payload for API responses."""
        return {
            "job_id": self.job_id,
            "record_id": self.record_id,
            "stage": self.stage.value,
            "priority": self.priority,
            "status": self.status.value,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class SyncAck:
    """Per-record acknowledgement returned by the reconciler."""

    record_id: str
    status: AckStatus
    version: int
    canonical_id: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "status": self.status.value,
            "version": self.version,
            "canonical_id": self.canonical_id,
            "record": self.record,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncAck":
        return cls(
            record_id=data["record_id"],
            status=AckStatus(data["status"]),
            version=int(data["version"]),
            canonical_id=data.get("canonical_id"),
            record=data.get("record"),
            message=data.get("message"),
        )
