"""Domain models for Retouch.

These Pydantic models are shared by the core engine, the session stores and
the API layer.  FastAPI serialises them directly, so field names are the JSON
names seen by clients.

Models
------
TransformationSettings
    Immutable quality/format/speed/model selection shared by a dispatch call.
WorkUnit
    One image's edit session: source, prompt, settings, status and result.
TransformResult
    Normalised provider output.
Settlement
    Fulfilled-or-rejected outcome of one unit in a batch run.
BatchResult
    Ordered settlements plus derived success/failure counts.
StatusEvent
    Notification emitted when a unit enters ``processing`` or a terminal state.
EditHistory, Template
    Edit history entries and prompt templates.
"""

from __future__ import annotations

import random
import string
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a new random record identifier."""
    return str(uuid.uuid4())


def new_batch_id() -> str:
    """Return a new opaque batch identifier.

    Format: ``batch_<epoch millis>_<9 base36 chars>``.
    """
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"batch_{int(time.time() * 1000)}_{suffix}"


class UnitStatus(str, Enum):
    """Lifecycle status of a work unit."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.COMPLETED, UnitStatus.ERROR)


class TransformationSettings(BaseModel):
    """Settings captured for one dispatch call.

    Attributes:
        quality: Output quality tier.
        output_format: Output image format.
        speed: Speed/strength dial (1 = careful, 10 = fastest).
        model: Provider model id, or ``None`` for the configured default.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    quality: Literal["standard", "high", "ultra"] = "high"
    output_format: Literal["png", "jpg", "webp"] = "png"
    speed: int = Field(default=7, ge=1, le=10)
    model: str | None = None


class WorkUnit(BaseModel):
    """A single image's transformation session.

    ``current_image_url`` is set only while ``status`` is ``completed``.
    """

    id: str = Field(default_factory=new_id)
    batch_id: str | None = None
    owner_id: str | None = None
    original_image_url: str
    current_image_url: str | None = None
    file_name: str | None = None
    prompt: str | None = None
    status: UnitStatus = UnitStatus.IDLE
    settings: TransformationSettings = Field(default_factory=TransformationSettings)
    error_message: str | None = None
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TransformResult(BaseModel):
    """Normalised result of one provider call."""

    model_config = ConfigDict(protected_namespaces=())

    image_url: str
    model: str
    width: int | None = None
    height: int | None = None
    seed: int | None = None
    has_nsfw_concepts: bool | None = None
    processing_time_ms: int | None = None


class Settlement(BaseModel):
    """Outcome of one unit's dispatch attempt within a batch."""

    unit_id: str
    status: Literal["fulfilled", "rejected"]
    value: TransformResult | None = None
    error: str | None = None

    @property
    def fulfilled(self) -> bool:
        return self.status == "fulfilled"


class BatchResult(BaseModel):
    """Aggregated outcome of one ``run_batch`` call.

    Whether the batch counts as a success is left to the caller.
    """

    batch_id: str | None = None
    settlements: list[Settlement] = Field(default_factory=list)
    chunk_started_at: list[float] = Field(default_factory=list)
    cancelled: int = 0

    @property
    def total(self) -> int:
        return len(self.settlements)

    @property
    def succeeded(self) -> int:
        return sum(1 for s in self.settlements if s.fulfilled)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def summary(self) -> dict[str, Any]:
        """Return the counts as a plain dictionary for API responses."""
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "chunks": len(self.chunk_started_at),
        }


class StatusEvent(BaseModel):
    """A work unit status transition observed by the orchestrator."""

    unit_id: str
    batch_id: str | None = None
    status: UnitStatus
    at: datetime = Field(default_factory=utcnow)
    error: str | None = None


class EditHistory(BaseModel):
    """One completed edit of a session."""

    id: str = Field(default_factory=new_id)
    session_id: str
    image_url: str
    prompt: str
    processing_time_ms: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Template(BaseModel):
    """A reusable prompt preset."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    category: str
    thumbnail_url: str | None = None
    prompt: str
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
