"""Image reference resolution.

Work units store *references* to images, not URLs the provider can fetch.
:class:`ImageReferenceResolver` turns a reference into such a URL:

==============================  ==========================================
Reference                       Resolution
==============================  ==========================================
``/objects/<name>``             signed URL (``"signed"`` strategy) or
                                signed same-origin proxy URL (``"proxy"``)
``/public-objects/<name>``      ``{public_base_url}/public-objects/<name>``
``http(s)://<rehost host>/...`` signed same-origin proxy URL
other ``http(s)://`` / data:    unchanged
anything else                   unchanged (logged)
==============================  ==========================================

Resolution never raises.  When the signing service fails the original
reference is returned and a warning is logged; callers detect the failure
with :func:`is_internal_reference` and abort their dispatch.
"""

from __future__ import annotations

import logging
from typing import Literal
from urllib.parse import urlencode, urlparse

from .errors import ResolutionError
from .object_store import PRIVATE_PREFIX, PUBLIC_PREFIX
from .signing import SigningService, UrlSigner

logger = logging.getLogger(__name__)

PROXY_PATH = "/api/image-proxy"


def is_internal_reference(value: str) -> bool:
    """Return ``True`` if ``value`` is a storage path no provider can fetch."""
    return value.startswith(PRIVATE_PREFIX) or value.startswith(PUBLIC_PREFIX)


def proxy_payload(source: str) -> str:
    """Return the string signed for a proxy URL of ``source``."""
    return f"proxy\n{source}"


class ImageReferenceResolver:
    """Converts stored image references into provider-fetchable URLs.

    Args:
        signing_service: Produces signed URLs for private objects.
        proxy_signer: Signs same-origin proxy URLs.
        public_base_url: Externally reachable origin of this server.
        bucket: Bucket name passed to the signing service.
        ttl_seconds: Lifetime of signed and proxy URLs.
        strategy: How private object paths are resolved.
        rehost_hosts: Hosts whose URLs must be re-hosted through the proxy.
    """

    def __init__(
        self,
        signing_service: SigningService,
        proxy_signer: UrlSigner,
        public_base_url: str,
        bucket: str,
        ttl_seconds: int = 3600,
        strategy: Literal["signed", "proxy"] = "signed",
        rehost_hosts: list[str] | None = None,
    ) -> None:
        self.signing_service = signing_service
        self.proxy_signer = proxy_signer
        self.public_base_url = public_base_url.rstrip("/")
        self.bucket = bucket
        self.ttl_seconds = ttl_seconds
        self.strategy = strategy
        self.rehost_hosts = {host.lower() for host in (rehost_hosts or [])}

    async def resolve(self, reference: str) -> str:
        """Return a URL for ``reference``, or ``reference`` itself on failure."""
        if not isinstance(reference, str) or not reference.strip():
            logger.warning(f"Cannot resolve empty image reference: {reference!r}")
            return reference

        reference = reference.strip()

        if reference.startswith(PRIVATE_PREFIX):
            if self.strategy == "proxy":
                return self.proxy_url(reference)
            return await self._signed_url(reference)

        if reference.startswith(PUBLIC_PREFIX):
            return f"{self.public_base_url}{reference}"

        if reference.startswith("data:"):
            return reference

        parsed = urlparse(reference)
        if parsed.scheme in ("http", "https") and parsed.hostname:
            if parsed.hostname.lower() in self.rehost_hosts:
                return self.proxy_url(reference)
            return reference

        logger.warning(f"Unrecognised image reference left unchanged: {reference}")
        return reference

    def proxy_url(self, source: str) -> str:
        """Build a signed same-origin proxy URL for ``source``."""
        expires = self.proxy_signer.expiry(self.ttl_seconds)
        signature = self.proxy_signer.signature(proxy_payload(source), expires)
        query = urlencode({"src": source, "expires": expires, "signature": signature})
        return f"{self.public_base_url}{PROXY_PATH}?{query}"

    def verify_proxy(self, source: str, expires: str | None, signature: str | None) -> bool:
        """Check a proxy URL's signature before streaming ``source``."""
        return self.proxy_signer.verify(proxy_payload(source), expires, signature)

    async def _signed_url(self, reference: str) -> str:
        object_name = reference[len(PRIVATE_PREFIX):]
        try:
            return await self.signing_service.sign(
                self.bucket, object_name, method="GET", ttl_seconds=self.ttl_seconds
            )
        except Exception as e:
            error = ResolutionError(reference, str(e) or type(e).__name__)
            logger.warning(f"{error}; falling back to the original reference")
            return reference
