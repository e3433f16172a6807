"""Provider model table and response normalisation.

Each image-transformation model offered by the provider is described by a
:class:`ProviderModel` record: the endpoint path and a request builder that
owns the model's required fields.  Records live in a :class:`ModelRegistry`,
so adding a model means registering a record, not touching the dispatcher.

Registered Models
-----------------
- **nano-banana** (default): prompt-driven edit of a single image.
- **flux-kontext**: in-context edit with quality-dependent step count.
- **pose-transfer**: re-poses the subject of the image.  Needs a second,
  separately resolved reference-pose image chosen from the prompt via
  :data:`POSE_REFERENCES`.

Response Normalisation
----------------------
Provider responses put the result image in different places.
:func:`extract_image` checks the known shapes in a fixed order:

1. ``{"image": {"url": ...}}``
2. ``{"images": [{"url": ...}, ...]}``
3. ``{"image": "<url>"}``
4. ``{"output": {"url": ...}}`` or ``{"output": [{"url": ...}]}``

and raises :class:`~retouch.core.errors.ProviderError` when none matches.

Usage Example
-------------
    >>> from retouch.core.providers import model_registry
    >>> model_registry.list_available()
    ['nano-banana', 'flux-kontext', 'pose-transfer']
    >>> select_pose("a man sitting on a bench")
    ('sitting', '/public-objects/poses/sitting.png')
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import ProviderError
from .models import TransformationSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Inputs available to a request builder.

    Attributes:
        image_url: Resolved source image URL.
        prompt: User prompt.
        settings: Transformation settings for this dispatch.
        extra_urls: Resolved URLs for the model's additional references.
    """

    image_url: str
    prompt: str
    settings: TransformationSettings
    extra_urls: dict[str, str] = field(default_factory=dict)


def _no_extra_references(prompt: str) -> dict[str, str]:
    return {}


@dataclass(frozen=True)
class ProviderModel:
    """One entry of the model table.

    Attributes:
        name: Model identifier selected by ``TransformationSettings.model``.
        endpoint: Path appended to the provider base URL.
        description: Human-readable summary.
        build_request: Builds the JSON body from a :class:`RequestContext`.
        extra_references: Maps a prompt to the additional image references
            the model needs, keyed by request field.  They are resolved
            before ``build_request`` runs.
    """

    name: str
    endpoint: str
    description: str
    build_request: Callable[[RequestContext], dict[str, Any]]
    extra_references: Callable[[str], dict[str, str]] = _no_extra_references

    def get_model_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "description": self.description,
        }


# ---------------------------------------------------------------------------
# Reference-pose hint table.
#
# Best-effort keyword sniffing: the first keyword (in table order) found
# anywhere in the lower-cased prompt wins.  "standing" is the fallback.
# ---------------------------------------------------------------------------
DEFAULT_POSE = "standing"

POSE_REFERENCES: dict[str, str] = {
    "sitting": "/public-objects/poses/sitting.png",
    "running": "/public-objects/poses/running.png",
    "jumping": "/public-objects/poses/jumping.png",
    "dancing": "/public-objects/poses/dancing.png",
    "walking": "/public-objects/poses/walking.png",
    "kneeling": "/public-objects/poses/kneeling.png",
    "standing": "/public-objects/poses/standing.png",
}


def select_pose(prompt: str) -> tuple[str, str]:
    """Pick a reference pose for ``prompt``.

    Returns:
        Tuple of ``(pose keyword, pose image reference)``.
    """
    text = (prompt or "").lower()
    for keyword, reference in POSE_REFERENCES.items():
        if keyword in text:
            return keyword, reference
    return DEFAULT_POSE, POSE_REFERENCES[DEFAULT_POSE]


# ---------------------------------------------------------------------------
# Request builders.
# ---------------------------------------------------------------------------

_KONTEXT_STEPS = {"standard": 20, "high": 28, "ultra": 40}


def _build_nano_banana(ctx: RequestContext) -> dict[str, Any]:
    return {
        "image_url": ctx.image_url,
        "prompt": ctx.prompt,
        "quality": ctx.settings.quality,
        "format": ctx.settings.output_format,
        "speed": ctx.settings.speed,
    }


def _build_flux_kontext(ctx: RequestContext) -> dict[str, Any]:
    # Kontext only knows "jpeg" and "png".
    output_format = "jpeg" if ctx.settings.output_format == "jpg" else "png"
    return {
        "image_url": ctx.image_url,
        "prompt": ctx.prompt,
        "output_format": output_format,
        "guidance_scale": 3.5,
        "num_inference_steps": _KONTEXT_STEPS[ctx.settings.quality],
        "num_images": 1,
    }


def _pose_references(prompt: str) -> dict[str, str]:
    pose, reference = select_pose(prompt)
    logger.debug(f"Selected reference pose '{pose}' for prompt")
    return {"pose_image_url": reference}


def _build_pose_transfer(ctx: RequestContext) -> dict[str, Any]:
    return {
        "person_image_url": ctx.image_url,
        "pose_image_url": ctx.extra_urls["pose_image_url"],
        "prompt": ctx.prompt,
        "output_format": ctx.settings.output_format,
    }


class ModelRegistry:
    """Registry of provider models, keyed by model id.

    Records are registered once, looked up by name by the dispatcher and
    listed for the frontend by ``GET /api/models``.
    """

    def __init__(self) -> None:
        self._models: dict[str, ProviderModel] = {}

    def register(self, model: ProviderModel) -> None:
        if model.name in self._models:
            logger.warning(f"Provider model '{model.name}' is already registered, overwriting")
        self._models[model.name] = model
        logger.debug(f"Registered provider model: {model.name}")

    def get(self, name: str) -> ProviderModel:
        """Return a registered model.

        Raises:
            KeyError: If ``name`` is not registered.
        """
        if name not in self._models:
            available = ", ".join(self.list_available())
            raise KeyError(f"Provider model '{name}' not found. Available models: {available}")
        return self._models[name]

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def list_available(self) -> list[str]:
        return list(self._models.keys())

    def list_info(self) -> list[dict[str, Any]]:
        return [model.get_model_info() for model in self._models.values()]


def create_default_registry() -> ModelRegistry:
    """Return a registry populated with the built-in models."""
    registry = ModelRegistry()
    registry.register(
        ProviderModel(
            name="nano-banana",
            endpoint="fal-ai/nano-banana/edit",
            description="Prompt-driven edit of a single image",
            build_request=_build_nano_banana,
        )
    )
    registry.register(
        ProviderModel(
            name="flux-kontext",
            endpoint="fal-ai/flux-pro/kontext",
            description="In-context image editing with FLUX Kontext",
            build_request=_build_flux_kontext,
        )
    )
    registry.register(
        ProviderModel(
            name="pose-transfer",
            endpoint="fal-ai/leffa/pose-transfer",
            description="Re-pose the subject using a reference pose picked from the prompt",
            build_request=_build_pose_transfer,
            extra_references=_pose_references,
        )
    )
    return registry


# Built-in model table shared by the API layer.
model_registry = create_default_registry()


# ---------------------------------------------------------------------------
# Response normalisation.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageMatch:
    """The result image found in a provider response."""

    url: str
    width: int | None = None
    height: int | None = None


def _from_image_object(value: Any) -> ImageMatch | None:
    if isinstance(value, dict) and isinstance(value.get("url"), str) and value["url"]:
        width = value.get("width")
        height = value.get("height")
        return ImageMatch(
            url=value["url"],
            width=width if isinstance(width, int) else None,
            height=height if isinstance(height, int) else None,
        )
    return None


def _from_image_list(value: Any) -> ImageMatch | None:
    if isinstance(value, list):
        for item in value:
            match = _from_image_object(item)
            if match is not None:
                return match
    return None


def extract_image(payload: Any) -> ImageMatch:
    """Find the result image in a provider response.

    Raises:
        ProviderError: If no known shape matches.
    """
    if not isinstance(payload, dict):
        raise ProviderError("no image in response")

    match = _from_image_object(payload.get("image"))
    if match is None:
        match = _from_image_list(payload.get("images"))
    if match is None and isinstance(payload.get("image"), str) and payload["image"]:
        match = ImageMatch(url=payload["image"])
    if match is None:
        output = payload.get("output")
        match = _from_image_object(output) or _from_image_list(output)

    if match is None:
        raise ProviderError("no image in response")
    return match
