"""Short-lived URL signing for private objects.

The resolver asks a signing service for a URL that grants temporary
read access to one private object:

    sign(bucket, object_name, method, ttl_seconds) -> url

Two implementations exist:

- :class:`LocalSigningService` signs URLs for this server's own
  ``/objects/...`` route with an HMAC secret.  The route verifies the
  signature with the same service before streaming the object.
- :class:`SidecarSigningService` delegates to an external signing sidecar
  over HTTP (the object-storage sidecar protocol: ``POST
  /object-storage/signed-object-url``).

:class:`UrlSigner` is the HMAC primitive shared by local object URLs and
same-origin proxy URLs.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from urllib.parse import quote, urlencode

import httpx

logger = logging.getLogger(__name__)


class UrlSigner:
    """HMAC-SHA256 signatures with an expiry timestamp.

    Args:
        secret: Shared secret.
        clock: Returns the current UNIX time; injectable for tests.
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        self._secret = secret.encode("utf-8")
        self._clock = clock

    def expiry(self, ttl_seconds: int) -> int:
        """Return the UNIX timestamp ``ttl_seconds`` from now."""
        return int(self._clock()) + ttl_seconds

    def signature(self, payload: str, expires: int) -> str:
        message = f"{payload}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, payload: str, expires: int | str | None, signature: str | None) -> bool:
        """Return ``True`` if the signature matches and has not expired."""
        if expires is None or not signature:
            return False
        try:
            expires_at = int(expires)
        except (TypeError, ValueError):
            return False
        if expires_at < int(self._clock()):
            return False
        return hmac.compare_digest(self.signature(payload, expires_at), signature)


class SigningService(ABC):
    """Produces short-lived URLs for private objects."""

    @abstractmethod
    async def sign(
        self,
        bucket: str,
        object_name: str,
        method: str = "GET",
        ttl_seconds: int = 3600,
    ) -> str:
        """Return a URL granting ``method`` access to the object.

        Raises:
            Exception: Any transport or protocol failure; the resolver
                treats every failure as recoverable.
        """


class LocalSigningService(SigningService):
    """Signs URLs for this server's ``/objects/`` route.

    Args:
        public_base_url: Externally reachable origin of this server.
        signer: HMAC signer shared with the route that verifies the URLs.
    """

    def __init__(self, public_base_url: str, signer: UrlSigner) -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self.signer = signer

    @staticmethod
    def payload(bucket: str, object_name: str, method: str) -> str:
        return f"{method.upper()}\n{bucket}/{object_name}"

    async def sign(
        self,
        bucket: str,
        object_name: str,
        method: str = "GET",
        ttl_seconds: int = 3600,
    ) -> str:
        expires = self.signer.expiry(ttl_seconds)
        signature = self.signer.signature(self.payload(bucket, object_name, method), expires)
        query = urlencode({"expires": expires, "signature": signature})
        return f"{self.public_base_url}/objects/{quote(object_name)}?{query}"

    def verify(
        self,
        bucket: str,
        object_name: str,
        expires: int | str | None,
        signature: str | None,
        method: str = "GET",
    ) -> bool:
        return self.signer.verify(self.payload(bucket, object_name, method), expires, signature)


class SidecarSigningService(SigningService):
    """Requests signed URLs from an external object-storage sidecar.

    Args:
        sidecar_url: Base URL of the sidecar.
        client: Shared ``httpx.AsyncClient``.
        clock: Returns the current UNIX time; injectable for tests.
    """

    def __init__(
        self,
        sidecar_url: str,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sidecar_url = sidecar_url.rstrip("/")
        self._client = client
        self._clock = clock

    async def sign(
        self,
        bucket: str,
        object_name: str,
        method: str = "GET",
        ttl_seconds: int = 3600,
    ) -> str:
        expires_at = datetime.fromtimestamp(self._clock() + ttl_seconds, tz=timezone.utc)
        url = f"{self.sidecar_url}/object-storage/signed-object-url"
        response = await self._client.post(
            url,
            json={
                "bucket_name": bucket,
                "object_name": object_name,
                "method": method.upper(),
                "expires_at": expires_at.isoformat(),
            },
        )
        if response.status_code != 200:
            logger.error(f"Signing sidecar returned HTTP {response.status_code} for {object_name}")
            response.raise_for_status()
        signed_url = response.json().get("signed_url")
        if not signed_url:
            raise ValueError(f"Signing sidecar returned no signed_url for {object_name}")
        return signed_url
