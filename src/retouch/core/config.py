"""Configuration management for Retouch.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the RETOUCH_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (RETOUCH_* prefix)
2. .env file in the project root
3. Default values defined in RetouchConfig

The provider API key is additionally read from ``FAL_API_KEY`` or ``FAL_KEY``
so existing fal.ai deployments work without renaming their secrets.

Example .env file:
    RETOUCH_PROVIDER_API_KEY=fal-xxxxxxxx
    RETOUCH_DEFAULT_MODEL=nano-banana
    RETOUCH_CONCURRENCY_LIMIT=3
    RETOUCH_PUBLIC_BASE_URL=https://retouch.example.com

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time and
is used by the API layer.  Core components never read it directly: the
dispatcher receives a :class:`ProviderSettings` value and the orchestrator
receives its timing parameters explicitly, so tests can build them freely.

Usage Example
-------------
    from retouch.core.config import config

    print(config.provider_base_url)
    provider = config.provider_settings()

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: JSON session store, history and templates
- objects_dir: Uploaded and generated image blobs (public/ and private/)
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseModel):
    """Immutable connection settings for the image-transformation provider.

    Injected into :class:`~retouch.core.dispatcher.TransformationDispatcher`
    at construction time instead of a process-wide client singleton.

    Attributes:
        base_url: Provider root URL (e.g. ``https://fal.run``).
        api_key: Secret sent as ``Authorization: Key <api_key>``.
        timeout: Transport timeout in seconds for one provider call.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://fal.run"
    api_key: str | None = None
    timeout: float = 120.0


class RetouchConfig(BaseSettings):
    """Main configuration for Retouch.

    Attributes
    ----------
    Provider Settings:
        provider_base_url : str
            Root URL of the image-transformation provider
        provider_api_key : str | None
            Provider API key (RETOUCH_PROVIDER_API_KEY, FAL_API_KEY or FAL_KEY)
        default_model : str
            Model id used when a request does not select one
        provider_timeout : float
            HTTP timeout for one provider request, in seconds

    Batch Settings:
        concurrency_limit : int
            Number of work units dispatched concurrently per chunk
        pacing_delay : float
            Pause between chunks, in seconds (skipped after the last chunk)
        dispatch_timeout : float
            Upper bound on one unit's resolve + dispatch, in seconds
        poll_interval : float
            Interval clients should poll batch progress while work is active

    Image Reference Settings:
        resolution_strategy : Literal["signed", "proxy"]
            How private object paths are turned into fetchable URLs
        signing_service_url : str | None
            Optional external signing sidecar; local HMAC signing when unset
        storage_bucket : str
            Bucket name passed to the signing service
        signed_url_ttl : int
            Lifetime of signed and proxy URLs, in seconds
        url_signing_secret : str
            HMAC secret for locally signed URLs
        public_base_url : str
            Externally reachable origin of this server
        rehost_hosts : list[str]
            Hosts whose URLs the provider cannot fetch directly
        rehost_auth_header : str | None
            ``Name: value`` header sent when proxying re-hosted URLs

    Storage Settings:
        storage_backend : Literal["memory", "json"]
            Session store implementation
        data_dir : Path
            Directory for the JSON session store
        objects_dir : Path
            Directory for stored image blobs
        max_upload_bytes : int
            Maximum accepted upload size

    Server Settings:
        principal_header : str
            Request header carrying the authenticated owner id
        server_host : str
            Server bind address
        server_port : int
            Server port (1024-65535)
        log_level : str
            Root logging level

    Examples
    --------
    Create a custom configuration:

        >>> custom_config = RetouchConfig(
        ...     storage_backend="memory",
        ...     concurrency_limit=5,
        ...     pacing_delay=0.0,
        ... )
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="RETOUCH_",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Provider settings
    provider_base_url: str = Field(
        default="https://fal.run",
        description="Root URL of the image-transformation provider",
    )
    provider_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "provider_api_key", "RETOUCH_PROVIDER_API_KEY", "FAL_API_KEY", "FAL_KEY"
        ),
        description="Provider API key",
    )
    default_model: str = Field(
        default="nano-banana",
        description="Model id used when a request does not select one",
    )
    provider_timeout: float = Field(default=120.0, gt=0)

    # Batch settings
    concurrency_limit: int = Field(default=3, ge=1, le=16)
    pacing_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Pause between chunks in seconds",
    )
    dispatch_timeout: float = Field(default=120.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)

    # Image reference settings
    resolution_strategy: Literal["signed", "proxy"] = Field(
        default="signed",
        description="How private object paths are made fetchable",
    )
    signing_service_url: str | None = Field(
        default=None,
        description="External signing sidecar URL (local HMAC signing when unset)",
    )
    storage_bucket: str = Field(default="retouch-private")
    signed_url_ttl: int = Field(default=3600, ge=1)
    url_signing_secret: str = Field(
        default="change-me",
        description="HMAC secret for locally signed object and proxy URLs",
    )
    public_base_url: str = Field(
        default="http://localhost:5000",
        description="Externally reachable origin of this server",
    )
    rehost_hosts: list[str] = Field(
        default_factory=list,
        description="Hosts the provider cannot fetch from directly",
    )
    rehost_auth_header: str | None = Field(
        default=None,
        description="'Name: value' header used when fetching re-hosted URLs",
    )

    # Storage settings
    storage_backend: Literal["memory", "json"] = Field(default="json")
    data_dir: Path = Field(default=Path("data"))
    objects_dir: Path = Field(default=Path("objects"))
    max_upload_bytes: int = Field(default=20 * 1024 * 1024, ge=1)

    # Server settings
    principal_header: str = Field(default="X-User-Id")
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=5000, ge=1024, le=65535)
    log_level: str = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    def provider_settings(self) -> ProviderSettings:
        """Return the provider connection settings as an immutable value."""
        return ProviderSettings(
            base_url=self.provider_base_url,
            api_key=self.provider_api_key,
            timeout=self.provider_timeout,
        )


# Global configuration instance, loaded from RETOUCH_* environment variables
# and the .env file.
config = RetouchConfig()
