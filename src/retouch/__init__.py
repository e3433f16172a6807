"""Retouch - AI-assisted image editing backend with batch processing."""

__version__ = "0.3.0"

from retouch.core.config import RetouchConfig, config
from retouch.core.orchestrator import BatchOrchestrator
from retouch.core.providers import model_registry

__all__ = [
    "BatchOrchestrator",
    "model_registry",
    "RetouchConfig",
    "config",
]
