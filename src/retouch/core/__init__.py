"""Core engine for Retouch.

This package holds everything that does not depend on HTTP routing:

1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - All settings prefixed with RETOUCH_ in .env files

2. **Reference Layer** (object_store.py, signing.py, resolver.py):
   - Local object storage with public/private visibility
   - Signed URLs and signed same-origin proxy URLs
   - Resolution of stored references into provider-fetchable URLs

3. **Provider Layer** (providers.py, dispatcher.py):
   - Model table mapping model ids to endpoints and request builders
   - One provider call per work unit with response normalisation

4. **Batch Layer** (orchestrator.py, progress.py, storage.py):
   - Chunked, paced, failure-isolated batch processing
   - Progress projection and polling
   - Work-unit, history and template persistence

Usage Example
-------------
    from retouch.core import BatchOrchestrator, TransformationSettings

    result = await orchestrator.run_batch(units, "make it sunset", TransformationSettings())
    print(result.succeeded, result.failed)
"""

from retouch.core.config import ProviderSettings, RetouchConfig, config
from retouch.core.dispatcher import TransformationDispatcher
from retouch.core.errors import (
    BatchCancelledError,
    ObjectNotFoundError,
    PersistenceError,
    ProviderError,
    ResolutionError,
    RetouchError,
    ValidationError,
)
from retouch.core.models import (
    BatchResult,
    Settlement,
    StatusEvent,
    TransformationSettings,
    TransformResult,
    UnitStatus,
    WorkUnit,
)
from retouch.core.orchestrator import BatchOrchestrator
from retouch.core.progress import ProgressSnapshot, compute_progress, poll_progress
from retouch.core.resolver import ImageReferenceResolver

__all__ = [
    "BatchCancelledError",
    "BatchOrchestrator",
    "BatchResult",
    "ImageReferenceResolver",
    "ObjectNotFoundError",
    "PersistenceError",
    "ProgressSnapshot",
    "ProviderError",
    "ProviderSettings",
    "ResolutionError",
    "RetouchConfig",
    "RetouchError",
    "Settlement",
    "StatusEvent",
    "TransformResult",
    "TransformationDispatcher",
    "TransformationSettings",
    "UnitStatus",
    "ValidationError",
    "WorkUnit",
    "compute_progress",
    "config",
    "poll_progress",
]
