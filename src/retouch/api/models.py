"""Pydantic request models for the Retouch API.

FastAPI uses these models for request validation, serialisation and the
OpenAPI schema.  Response bodies reuse the domain models from
:mod:`retouch.core.models` directly.

Models
------
CreateSessionRequest
    Payload for ``POST /api/sessions``: attaches an uploaded image to a new
    work unit.
UpdateSessionRequest
    Payload for ``PATCH /api/sessions/{id}``: partial update.
ProcessRequest
    Payload for ``POST /api/process``: single-image transformation.
CreateBatchRequest
    Payload for ``POST /api/batches``: one work unit per uploaded image.
ProcessBatchRequest
    Payload for ``POST /api/batches/{id}/process``: batch transformation.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from retouch.core.models import TransformationSettings


class CreateSessionRequest(BaseModel):
    """Request body for ``POST /api/sessions``.

    Attributes:
        original_image_url: Reference of the uploaded source image.
        prompt: Optional initial prompt.
        settings: Optional initial transformation settings.
        batch_id: Batch the session belongs to, if any.
        file_name: Original file name, for display.
    """

    original_image_url: str = Field(
        ...,
        min_length=1,
        description="Reference of the source image (e.g. '/objects/uploads/<id>.png').",
    )
    prompt: str | None = Field(default=None, description="Optional initial prompt.")
    settings: TransformationSettings = Field(default_factory=TransformationSettings)
    batch_id: str | None = Field(default=None, description="Owning batch id, if any.")
    file_name: str | None = Field(default=None, description="Original upload file name.")


class UpdateSessionRequest(BaseModel):
    """Request body for ``PATCH /api/sessions/{id}``.

    Only fields present in the JSON body are applied.  Status and result
    fields are owned by the orchestrator and cannot be patched.
    """

    model_config = ConfigDict(extra="forbid")

    prompt: str | None = None
    settings: TransformationSettings | None = None
    file_name: str | None = None


class ProcessRequest(BaseModel):
    """Request body for ``POST /api/process``.

    Attributes:
        session_id: Work unit to process.
        prompt: Natural-language edit instruction.
        image_url: Source reference override; defaults to the session's image.
        settings: Transformation settings.
    """

    session_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    image_url: str | None = Field(
        default=None,
        description="Source image reference; defaults to the session's original image.",
    )
    settings: TransformationSettings = Field(default_factory=TransformationSettings)


class CreateBatchRequest(BaseModel):
    """Request body for ``POST /api/batches``.

    Attributes:
        image_urls: References of the uploaded images, one session each.
        file_names: Optional display names, parallel to ``image_urls``.
    """

    image_urls: list[str] = Field(..., min_length=1, max_length=50)
    file_names: list[str] | None = None


class ProcessBatchRequest(BaseModel):
    """Request body for ``POST /api/batches/{id}/process``.

    Attributes:
        prompt: Prompt applied to every image of the batch.
        settings: Settings shared by every image.
        concurrency_limit: Chunk size override (1–16).
        wait: ``True`` to respond after the batch settles, ``False`` to run it
            in the background and poll progress.
    """

    prompt: str = Field(..., min_length=1)
    settings: TransformationSettings = Field(default_factory=TransformationSettings)
    concurrency_limit: int | None = Field(default=None, ge=1, le=16)
    wait: bool = True
