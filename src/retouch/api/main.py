"""Retouch — FastAPI Application.

This module is the single entry point for the web application.  It defines
the application factory :func:`create_app`, the module-level ``app``
instance, all REST API routes, and the ``main()`` CLI function that launches
the uvicorn server.

Architecture
------------
- **Configuration** comes from :class:`~retouch.core.config.RetouchConfig`.
- **Core services** (object store, signing, resolver, dispatcher,
  orchestrator, session store) are built once in the lifespan handler and
  stored on ``app.state.services``.
- **Outbound HTTP** (provider, signing sidecar, image proxy) shares one
  ``httpx.AsyncClient``.
- **Authorization** is a pluggable principal: the owner id is read from the
  configured request header and scopes every session query.

Endpoints
---------
========  ===================================  ================================
Method    Path                                 Purpose
========  ===================================  ================================
GET       ``/api/config``                      Version, models, client settings
GET       ``/api/models``                      Provider model table
POST      ``/api/objects/upload``              Store an uploaded image
GET       ``/objects/{path}``                  Signed private object download
GET       ``/public-objects/{path}``           Public object download
GET       ``/api/image-proxy``                 Signed fetch-and-stream proxy
POST      ``/api/sessions``                    Create a work unit
GET       ``/api/sessions``                    List work units
GET       ``/api/sessions/batch/{batch_id}``   Batch snapshot + progress
GET       ``/api/sessions/{id}``               Single work unit
PATCH     ``/api/sessions/{id}``               Partial update
GET       ``/api/sessions/{id}/history``       Edit history
POST      ``/api/process``                     Transform one work unit
POST      ``/api/batches``                     Create a batch of work units
POST      ``/api/batches/{id}/process``        Run a batch
POST      ``/api/batches/{id}/cancel``         Cancel a background batch
GET       ``/api/batches/{id}/progress``       Batch progress
GET       ``/api/templates``                   Prompt templates
GET       ``/api/templates/{id}``              Single template
========  ===================================  ================================

Usage
-----
CLI (installed entry point)::

    retouch

Direct invocation::

    python -m retouch.api.main
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from retouch import __version__
from retouch.api.models import (
    CreateBatchRequest,
    CreateSessionRequest,
    ProcessBatchRequest,
    ProcessRequest,
    UpdateSessionRequest,
)
from retouch.core.config import RetouchConfig, config
from retouch.core.dispatcher import TransformationDispatcher
from retouch.core.errors import ObjectNotFoundError, PersistenceError, ValidationError
from retouch.core.models import (
    BatchResult,
    TransformationSettings,
    WorkUnit,
    new_batch_id,
)
from retouch.core.object_store import LocalObjectStore
from retouch.core.orchestrator import BatchOrchestrator
from retouch.core.progress import compute_progress, poll_interval_ms
from retouch.core.providers import ModelRegistry, model_registry
from retouch.core.resolver import ImageReferenceResolver, is_internal_reference
from retouch.core.signing import (
    LocalSigningService,
    SidecarSigningService,
    SigningService,
    UrlSigner,
)
from retouch.core.storage import SessionStore, create_session_store

logger = logging.getLogger(__name__)


@dataclass
class RunningBatch:
    """A batch being processed, waited on or in the background."""

    task: asyncio.Task
    cancel_event: asyncio.Event


@dataclass
class Services:
    """Core components shared by the route handlers."""

    config: RetouchConfig
    http_client: httpx.AsyncClient
    store: SessionStore
    object_store: LocalObjectStore
    local_signing: LocalSigningService
    resolver: ImageReferenceResolver
    dispatcher: TransformationDispatcher
    orchestrator: BatchOrchestrator
    registry: ModelRegistry
    running_batches: dict[str, RunningBatch] = field(default_factory=dict)
    active_units: set[str] = field(default_factory=set)


def build_services(
    cfg: RetouchConfig,
    *,
    store: SessionStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    registry: ModelRegistry | None = None,
) -> Services:
    """Wire the core components from configuration.

    Args:
        cfg: Application configuration.
        store: Session store override; built from ``cfg`` when omitted.
        transport: httpx transport override (tests use ``httpx.MockTransport``).
        registry: Provider model table override.
    """
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.provider_timeout),
        follow_redirects=True,
        transport=transport,
    )
    signer = UrlSigner(cfg.url_signing_secret)
    local_signing = LocalSigningService(cfg.public_base_url, signer)

    signing_service: SigningService = local_signing
    if cfg.signing_service_url:
        signing_service = SidecarSigningService(cfg.signing_service_url, http_client)

    resolver = ImageReferenceResolver(
        signing_service,
        signer,
        public_base_url=cfg.public_base_url,
        bucket=cfg.storage_bucket,
        ttl_seconds=cfg.signed_url_ttl,
        strategy=cfg.resolution_strategy,
        rehost_hosts=cfg.rehost_hosts,
    )
    registry = registry or model_registry
    dispatcher = TransformationDispatcher(
        cfg.provider_settings(),
        resolver,
        client=http_client,
        registry=registry,
        default_model=cfg.default_model,
    )
    store = store or create_session_store(cfg.storage_backend, cfg.data_dir)
    orchestrator = BatchOrchestrator(
        dispatcher,
        store,
        concurrency_limit=cfg.concurrency_limit,
        pacing_delay=cfg.pacing_delay,
        dispatch_timeout=cfg.dispatch_timeout,
    )
    return Services(
        config=cfg,
        http_client=http_client,
        store=store,
        object_store=LocalObjectStore(cfg.objects_dir, max_bytes=cfg.max_upload_bytes),
        local_signing=local_signing,
        resolver=resolver,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        registry=registry,
    )


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_principal(request: Request) -> str | None:
    """Return the authenticated owner id, or ``None`` for unscoped access.

    Authentication itself happens upstream (reverse proxy or auth
    middleware), which sets the configured principal header.
    """
    services: Services = request.app.state.services
    value = request.headers.get(services.config.principal_header)
    return value.strip() if value and value.strip() else None


def _progress_payload(units: list[WorkUnit], interval: float) -> dict:
    snapshot = compute_progress(units)
    return {
        **snapshot.model_dump(),
        "is_active": snapshot.is_active,
        "poll_interval_ms": poll_interval_ms(snapshot, interval),
    }


def _batch_response(result: BatchResult) -> dict:
    return {
        **result.summary(),
        "settlements": [s.model_dump(mode="json") for s in result.settlements],
    }


def _is_dispatching(services: Services, unit: WorkUnit) -> bool:
    """Whether ``unit`` already has a dispatch in flight in this process."""
    return unit.id in services.active_units or (
        unit.batch_id is not None and unit.batch_id in services.running_batches
    )


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    cfg: RetouchConfig | None = None,
    *,
    store: SessionStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    registry: ModelRegistry | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        cfg: Configuration; the global ``config`` when omitted.
        store: Session store override.
        transport: httpx transport override for outbound requests.
        registry: Provider model table override.

    Returns:
        Configured FastAPI application instance.
    """
    cfg = cfg or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build services on startup; cancel batches and close HTTP on shutdown."""
        services = build_services(cfg, store=store, transport=transport, registry=registry)
        app.state.services = services
        logger.info(
            f"Retouch {__version__} started (store={type(services.store).__name__}, "
            f"default model={cfg.default_model})"
        )

        yield

        running_batches = list(services.running_batches.items())
        for batch_id, running in running_batches:
            running.cancel_event.set()
            running.task.cancel()
            logger.info(f"Cancelled background batch {batch_id} on shutdown")
        # In-flight units record their error state before the tasks finish.
        await asyncio.gather(*(r.task for _, r in running_batches), return_exceptions=True)
        await services.http_client.aclose()

    app = FastAPI(
        title="Retouch",
        description="AI-assisted image editing with batch processing.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # -----------------------------------------------------------------------
    # Configuration.
    # -----------------------------------------------------------------------

    @app.get("/api/config")
    async def get_config(services: Services = Depends(get_services)) -> dict:
        """Return the client-facing configuration."""
        cfg = services.config
        return {
            "version": __version__,
            "models": services.registry.list_info(),
            "default_model": cfg.default_model,
            "default_settings": TransformationSettings().model_dump(),
            "concurrency_limit": cfg.concurrency_limit,
            "poll_interval_ms": int(cfg.poll_interval * 1000),
        }

    @app.get("/api/models")
    async def list_models(services: Services = Depends(get_services)) -> list[dict]:
        """Return the provider model table."""
        return services.registry.list_info()

    # -----------------------------------------------------------------------
    # Objects.
    # -----------------------------------------------------------------------

    @app.post("/api/objects/upload")
    async def upload_object(
        request: Request,
        visibility: str = Query(default="private", pattern="^(private|public)$"),
        services: Services = Depends(get_services),
    ) -> dict:
        """Store the raw request body as an image.

        Returns:
            Dictionary with the stored ``reference`` and a fetchable ``url``.

        Raises:
            HTTPException: 400 for empty, oversized or non-image payloads.
        """
        data = await request.body()
        try:
            reference = services.object_store.put(
                data,
                content_type=request.headers.get("content-type"),
                visibility=visibility,
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        url = await services.resolver.resolve(reference)
        return {"reference": reference, "url": url}

    @app.get("/objects/{object_path:path}")
    async def get_private_object(
        object_path: str,
        expires: str | None = None,
        signature: str | None = None,
        services: Services = Depends(get_services),
    ) -> FileResponse:
        """Serve a private object to holders of a valid signed URL."""
        if not services.local_signing.verify(
            services.config.storage_bucket, object_path, expires, signature
        ):
            raise HTTPException(status_code=403, detail="Invalid or expired signature")
        try:
            stored = services.object_store.get(f"/objects/{object_path}")
        except ObjectNotFoundError as e:
            raise HTTPException(status_code=404, detail="Object not found") from e
        return FileResponse(stored.path, media_type=stored.content_type)

    @app.get("/public-objects/{file_path:path}")
    async def get_public_object(
        file_path: str, services: Services = Depends(get_services)
    ) -> FileResponse:
        """Serve a public object."""
        try:
            stored = services.object_store.get(f"/public-objects/{file_path}")
        except ObjectNotFoundError as e:
            raise HTTPException(status_code=404, detail="File not found") from e
        return FileResponse(stored.path, media_type=stored.content_type)

    @app.get("/api/image-proxy")
    async def image_proxy(
        src: str,
        expires: str | None = None,
        signature: str | None = None,
        services: Services = Depends(get_services),
    ):
        """Fetch and stream an image on behalf of the provider.

        Stored objects are read from the object store; external URLs are
        fetched with the configured re-hosting credentials.
        """
        if not services.resolver.verify_proxy(src, expires, signature):
            raise HTTPException(status_code=403, detail="Invalid or expired signature")

        if is_internal_reference(src):
            try:
                stored = services.object_store.get(src)
            except ObjectNotFoundError as e:
                raise HTTPException(status_code=404, detail="Object not found") from e
            return FileResponse(stored.path, media_type=stored.content_type)

        headers = {}
        auth_header = services.config.rehost_auth_header
        if auth_header and ":" in auth_header:
            name, value = auth_header.split(":", 1)
            headers[name.strip()] = value.strip()

        upstream_request = services.http_client.build_request("GET", src, headers=headers)
        try:
            upstream = await services.http_client.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            logger.error(f"Image proxy failed to fetch {src}: {type(e).__name__}: {e}")
            raise HTTPException(status_code=502, detail="Upstream fetch failed") from e

        if not upstream.is_success:
            await upstream.aclose()
            logger.error(f"Image proxy upstream returned HTTP {upstream.status_code} for {src}")
            raise HTTPException(status_code=502, detail="Upstream fetch failed")

        return StreamingResponse(
            upstream.aiter_bytes(),
            media_type=upstream.headers.get("content-type", "application/octet-stream"),
            background=BackgroundTask(upstream.aclose),
        )

    # -----------------------------------------------------------------------
    # Sessions.
    # -----------------------------------------------------------------------

    @app.post("/api/sessions")
    async def create_session(
        req: CreateSessionRequest,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> WorkUnit:
        """Create a work unit for an uploaded image."""
        unit = WorkUnit(
            original_image_url=req.original_image_url,
            prompt=req.prompt,
            settings=req.settings,
            batch_id=req.batch_id,
            file_name=req.file_name,
            owner_id=principal,
        )
        return await services.store.create(unit)

    @app.get("/api/sessions")
    async def list_sessions(
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> list[WorkUnit]:
        """List the caller's work units, newest first."""
        return await services.store.list_all(owner_id=principal)

    @app.get("/api/sessions/batch/{batch_id}")
    async def get_batch_sessions(
        batch_id: str,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> dict:
        """Return a batch's unit snapshot with its progress projection.

        ``progress.poll_interval_ms`` tells the client when to poll again;
        it is ``null`` once no unit is processing.
        """
        units = await services.store.list_by_batch_id(batch_id, owner_id=principal)
        return {
            "batch_id": batch_id,
            "sessions": [u.model_dump(mode="json") for u in units],
            "progress": _progress_payload(units, services.config.poll_interval),
        }

    @app.get("/api/sessions/{session_id}")
    async def get_session(
        session_id: str,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> WorkUnit:
        unit = await services.store.get_by_id(session_id, owner_id=principal)
        if unit is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return unit

    @app.patch("/api/sessions/{session_id}")
    async def update_session(
        session_id: str,
        req: UpdateSessionRequest,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> WorkUnit:
        """Apply the fields present in the body to a work unit."""
        updates = req.model_dump(exclude_unset=True)
        try:
            unit = await services.store.update_by_id(session_id, updates, owner_id=principal)
        except PersistenceError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if unit is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return unit

    @app.get("/api/sessions/{session_id}/history")
    async def get_session_history(
        session_id: str,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> list[dict]:
        unit = await services.store.get_by_id(session_id, owner_id=principal)
        if unit is None:
            raise HTTPException(status_code=404, detail="Session not found")
        history = await services.store.list_history(session_id)
        return [entry.model_dump(mode="json") for entry in history]

    # -----------------------------------------------------------------------
    # Processing.
    # -----------------------------------------------------------------------

    @app.post("/api/process")
    async def process_image(
        req: ProcessRequest,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ):
        """Transform a single work unit and wait for the result.

        Raises:
            HTTPException: 400 for validation failures, 404 for an unknown
                session, 409 while the unit is already being processed.
                Provider failures return 500 with details.
        """
        unit = await services.store.get_by_id(req.session_id, owner_id=principal)
        if unit is None:
            raise HTTPException(status_code=404, detail="Session not found")
        if _is_dispatching(services, unit):
            raise HTTPException(status_code=409, detail="Session is already processing")
        if req.image_url:
            unit = unit.model_copy(update={"original_image_url": req.image_url})

        services.active_units.add(unit.id)
        try:
            settlement = await services.orchestrator.run_unit(unit, req.prompt, req.settings)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        finally:
            services.active_units.discard(unit.id)

        updated = await services.store.get_by_id(req.session_id)
        if not settlement.fulfilled:
            return JSONResponse(
                status_code=500,
                content={"error": "Failed to process image", "details": settlement.error},
            )
        return {
            "success": True,
            "session": updated.model_dump(mode="json") if updated else None,
            "result": settlement.value.image_url,
            "processing_time": settlement.value.processing_time_ms,
        }

    # -----------------------------------------------------------------------
    # Batches.
    # -----------------------------------------------------------------------

    @app.post("/api/batches")
    async def create_batch(
        req: CreateBatchRequest,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> dict:
        """Create a batch id and one work unit per image reference."""
        if req.file_names is not None and len(req.file_names) != len(req.image_urls):
            raise HTTPException(
                status_code=400,
                detail="file_names must have the same length as image_urls",
            )

        batch_id = new_batch_id()
        sessions = []
        for index, image_url in enumerate(req.image_urls):
            if not image_url.strip():
                raise HTTPException(status_code=400, detail=f"image_urls[{index}] is empty")
            unit = WorkUnit(
                original_image_url=image_url,
                batch_id=batch_id,
                owner_id=principal,
                file_name=req.file_names[index] if req.file_names else None,
            )
            sessions.append(await services.store.create(unit))

        logger.info(f"Created batch {batch_id} with {len(sessions)} sessions")
        return {
            "batch_id": batch_id,
            "sessions": [s.model_dump(mode="json") for s in sessions],
        }

    @app.post("/api/batches/{batch_id}/process")
    async def process_batch(
        batch_id: str,
        req: ProcessBatchRequest,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ):
        """Run every work unit of a batch.

        With ``wait`` the response carries the settlement summary; otherwise
        the batch runs in the background (202) and clients poll
        ``GET /api/sessions/batch/{batch_id}``.
        """
        units = await services.store.list_by_batch_id(batch_id, owner_id=principal)
        if not units:
            raise HTTPException(status_code=404, detail="Batch not found")
        if batch_id in services.running_batches or any(
            unit.id in services.active_units for unit in units
        ):
            raise HTTPException(status_code=409, detail="Batch is already processing")

        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            services.orchestrator.run_batch(
                units,
                req.prompt,
                req.settings,
                concurrency_limit=req.concurrency_limit,
                cancel_event=cancel_event,
            )
        )
        services.running_batches[batch_id] = RunningBatch(task=task, cancel_event=cancel_event)

        def _finished(done: asyncio.Task) -> None:
            services.running_batches.pop(batch_id, None)
            if not done.cancelled() and done.exception() is not None:
                logger.error(f"Batch {batch_id} failed: {done.exception()}")

        task.add_done_callback(_finished)

        if req.wait:
            try:
                result = await task
            except ValidationError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            result.batch_id = batch_id
            return _batch_response(result)

        return JSONResponse(
            status_code=202,
            content={
                "batch_id": batch_id,
                "status": "started",
                "total": len(units),
                "poll_interval_ms": int(services.config.poll_interval * 1000),
            },
        )

    @app.post("/api/batches/{batch_id}/cancel")
    async def cancel_batch(
        batch_id: str,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> dict:
        """Stop a running batch before its next chunk starts."""
        running = services.running_batches.get(batch_id)
        if running is None or not await services.store.list_by_batch_id(
            batch_id, owner_id=principal
        ):
            raise HTTPException(status_code=404, detail="Batch is not processing")
        running.cancel_event.set()
        return {"batch_id": batch_id, "cancelled": True}

    @app.get("/api/batches/{batch_id}/progress")
    async def get_batch_progress(
        batch_id: str,
        services: Services = Depends(get_services),
        principal: str | None = Depends(get_principal),
    ) -> dict:
        units = await services.store.list_by_batch_id(batch_id, owner_id=principal)
        return {
            "batch_id": batch_id,
            "running": bool(units) and batch_id in services.running_batches,
            **_progress_payload(units, services.config.poll_interval),
        }

    # -----------------------------------------------------------------------
    # Templates.
    # -----------------------------------------------------------------------

    @app.get("/api/templates")
    async def list_templates(
        category: str | None = None, services: Services = Depends(get_services)
    ) -> list[dict]:
        templates = await services.store.list_templates(category)
        return [t.model_dump(mode="json") for t in templates]

    @app.get("/api/templates/{template_id}")
    async def get_template(template_id: str, services: Services = Depends(get_services)) -> dict:
        template = await services.store.get_template(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Template not found")
        return template.model_dump(mode="json")


# Module-level application for uvicorn.
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~retouch.core.config.config`
    (``RETOUCH_SERVER_HOST``, ``RETOUCH_SERVER_PORT``, ``RETOUCH_LOG_LEVEL``).

    This function is registered as the ``retouch`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "retouch.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
