"""Transformation dispatcher: one provider call per work unit.

:class:`TransformationDispatcher` turns a work unit, a prompt and settings
into exactly one HTTP request against the image-transformation provider and
normalises whatever comes back into a :class:`~retouch.core.models.TransformResult`.

Dispatch Pipeline
-----------------
1. Validate required fields (unit id, prompt, source image, known model).
   Failures raise :class:`ValidationError` before any network call.
2. Resolve the source image and any model-specific extra references
   through the :class:`~retouch.core.resolver.ImageReferenceResolver`.
   A value that is still an internal path aborts with :class:`ResolutionError`.
3. Build the request body from the model table entry and POST it.
4. Normalise the response via :func:`~retouch.core.providers.extract_image`.

All failures are raised, never retried here.  The dispatcher does not
touch persistence; status bookkeeping belongs to the orchestrator.

Usage
-----
::

    dispatcher = TransformationDispatcher(config.provider_settings(), resolver)
    result = await dispatcher.dispatch(unit, "make it sunset", TransformationSettings())
    print(result.image_url)
    await dispatcher.aclose()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from .config import ProviderSettings
from .errors import ProviderError, ResolutionError, ValidationError
from .models import TransformationSettings, TransformResult, WorkUnit
from .providers import ModelRegistry, ProviderModel, RequestContext, extract_image, model_registry
from .resolver import ImageReferenceResolver, is_internal_reference

logger = logging.getLogger(__name__)

# Provider error bodies are truncated before being logged or stored.
_MAX_BODY_CHARS = 500


class TransformationDispatcher:
    """Issues provider requests for single work units.

    Args:
        provider: Provider connection settings.
        resolver: Image reference resolver.
        client: Shared ``httpx.AsyncClient``; one is created (and owned)
            when omitted.
        registry: Provider model table.
        default_model: Model used when settings select none.
        clock: Monotonic clock used for processing time; injectable for tests.
    """

    def __init__(
        self,
        provider: ProviderSettings,
        resolver: ImageReferenceResolver,
        client: httpx.AsyncClient | None = None,
        registry: ModelRegistry | None = None,
        default_model: str = "nano-banana",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.resolver = resolver
        self.registry = registry or model_registry
        self.default_model = default_model
        self._clock = clock

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(provider.timeout),
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._owns_client:
            await self._client.aclose()

    def select_model(self, settings: TransformationSettings) -> ProviderModel:
        """Return the model table entry for ``settings``.

        Raises:
            ValidationError: If the model id is unknown.
        """
        name = settings.model or self.default_model
        if name not in self.registry:
            available = ", ".join(self.registry.list_available())
            raise ValidationError(f"Unknown model: {name} (available: {available})")
        return self.registry.get(name)

    def validate(
        self, unit: WorkUnit, prompt: str, settings: TransformationSettings
    ) -> ProviderModel:
        """Check required fields and return the selected model.

        Raises:
            ValidationError: If a required field is missing or invalid.
        """
        if unit is None or not unit.id:
            raise ValidationError("Missing required field: unit id")
        if not prompt or not prompt.strip():
            raise ValidationError("Missing required field: prompt")
        if not unit.original_image_url or not unit.original_image_url.strip():
            raise ValidationError("Missing required field: image reference")
        return self.select_model(settings)

    async def dispatch(
        self,
        unit: WorkUnit,
        prompt: str,
        settings: TransformationSettings,
    ) -> TransformResult:
        """Transform one unit's source image.

        Returns:
            The normalised provider result.

        Raises:
            ValidationError: Missing fields or unknown model (no network call made).
            ResolutionError: An image reference could not be made fetchable.
            ProviderError: Transport failure, non-2xx, invalid JSON or no image.
        """
        model = self.validate(unit, prompt, settings)
        prompt = prompt.strip()

        image_url = await self._resolve(unit.original_image_url)
        extra_urls = {
            key: await self._resolve(reference)
            for key, reference in model.extra_references(prompt).items()
        }

        body = model.build_request(
            RequestContext(
                image_url=image_url,
                prompt=prompt,
                settings=settings,
                extra_urls=extra_urls,
            )
        )

        started = self._clock()
        payload = await self._post(model, body, unit.id)
        elapsed_ms = int((self._clock() - started) * 1000)

        match = extract_image(payload)
        nsfw = payload.get("has_nsfw_concepts")
        if isinstance(nsfw, list):
            nsfw = any(bool(flag) for flag in nsfw)
        seed = payload.get("seed")

        logger.info(f"Unit {unit.id} transformed by {model.name} in {elapsed_ms} ms")
        return TransformResult(
            image_url=match.url,
            model=model.name,
            width=match.width,
            height=match.height,
            seed=seed if isinstance(seed, int) else None,
            has_nsfw_concepts=nsfw if isinstance(nsfw, bool) else None,
            processing_time_ms=elapsed_ms,
        )

    async def _resolve(self, reference: str) -> str:
        url = await self.resolver.resolve(reference)
        if is_internal_reference(url):
            raise ResolutionError(reference, "no fetchable URL could be produced")
        return url

    async def _post(self, model: ProviderModel, body: dict[str, Any], unit_id: str) -> dict:
        if not self.provider.api_key:
            raise ProviderError("Provider API key not configured")

        url = f"{self.provider.base_url.rstrip('/')}/{model.endpoint}"
        headers = {
            "Authorization": f"Key {self.provider.api_key}",
            "Content-Type": "application/json",
        }
        logger.debug(f"POST {url} for unit {unit_id}")

        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Provider request for unit {unit_id} timed out: {e}")
            raise ProviderError("Provider request timed out") from e
        except httpx.RequestError as e:
            error_type = type(e).__name__
            logger.error(f"Provider request for unit {unit_id} failed: {error_type}: {e}")
            raise ProviderError(f"Provider request failed: {error_type}: {e}") from e

        text = response.text[:_MAX_BODY_CHARS]
        if not response.is_success:
            logger.error(
                f"Provider returned HTTP {response.status_code} for unit {unit_id}: {text}"
            )
            raise ProviderError("Provider returned an error", response.status_code, text)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError("Provider returned invalid JSON", response.status_code, text) from e

        if not isinstance(payload, dict):
            raise ProviderError("no image in response", response.status_code, text)
        return payload
