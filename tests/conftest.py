"""Shared pytest fixtures for Retouch tests.

No test talks to a real provider: outbound HTTP goes through
``httpx.MockTransport`` backed by :class:`ProviderStub`.
"""

from __future__ import annotations

import asyncio
import io
import json
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from retouch.api.main import create_app
from retouch.core.config import ProviderSettings, RetouchConfig
from retouch.core.dispatcher import TransformationDispatcher
from retouch.core.resolver import ImageReferenceResolver
from retouch.core.signing import LocalSigningService, UrlSigner
from retouch.core.storage import InMemorySessionStore

PROVIDER_URL = "https://provider.test"
PUBLIC_BASE_URL = "http://testserver"
RESULT_URL = "https://cdn.provider.test/result.png"


class ProviderStub:
    """Fake image-transformation provider for ``httpx.MockTransport``.

    Every request is recorded.  Requests whose JSON body mentions one of
    ``fail_for`` get an HTTP 500; all other provider calls return
    ``response_body``.  GET requests (image proxy fetches) return
    ``fetch_body``.  Provider calls wait ``delay`` seconds before answering.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail_for: set[str] = set()
        self.response_body: dict = {
            "images": [{"url": RESULT_URL, "width": 4, "height": 4}],
            "seed": 42,
            "has_nsfw_concepts": [False],
        }
        self.fetch_body = b"external-image-bytes"
        self.delay = 0.0

    @property
    def provider_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == "provider.test"]

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.provider_requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(
                200, content=self.fetch_body, headers={"content-type": "image/png"}
            )

        if self.delay:
            await asyncio.sleep(self.delay)

        content = request.content.decode("utf-8")
        if any(marker in content for marker in self.fail_for):
            return httpx.Response(500, text="upstream exploded")
        return httpx.Response(200, json=self.response_body)


def make_png(width: int = 4, height: int = 4, color: str = "red") -> bytes:
    """Return the bytes of a small PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> RetouchConfig:
    """Create a test configuration with temporary directories.

    Uses the in-memory store, no pacing delay and a fixed signing secret.
    """
    return RetouchConfig(
        _env_file=None,
        provider_base_url=PROVIDER_URL,
        provider_api_key="test-key",
        storage_backend="memory",
        data_dir=temp_dir / "data",
        objects_dir=temp_dir / "objects",
        pacing_delay=0.0,
        public_base_url=PUBLIC_BASE_URL,
        url_signing_secret="test-secret",
    )


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def signer() -> UrlSigner:
    return UrlSigner("test-secret", clock=lambda: 1_700_000_000.0)


@pytest.fixture
def resolver(signer: UrlSigner) -> ImageReferenceResolver:
    """Resolver signing private objects locally against the test origin."""
    return ImageReferenceResolver(
        LocalSigningService(PUBLIC_BASE_URL, signer),
        signer,
        public_base_url=PUBLIC_BASE_URL,
        bucket="test-bucket",
        rehost_hosts=["private.cdn.test"],
    )


@pytest.fixture
def dispatcher(provider_stub: ProviderStub, resolver: ImageReferenceResolver):
    """Dispatcher whose HTTP client is served by ``provider_stub``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider_stub.handler))
    return TransformationDispatcher(
        ProviderSettings(base_url=PROVIDER_URL, api_key="test-key"),
        resolver,
        client=client,
    )


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def test_client(
    test_config: RetouchConfig, provider_stub: ProviderStub
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the provider stub and an in-memory store."""
    app = create_app(
        test_config,
        store=InMemorySessionStore(),
        transport=httpx.MockTransport(provider_stub.handler),
    )
    with TestClient(app) as client:
        yield client
