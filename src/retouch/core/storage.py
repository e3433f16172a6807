"""Work-unit persistence for Retouch.

The orchestrator and dispatcher depend only on the abstract
:class:`SessionStore` interface; two implementations are provided:

- :class:`InMemorySessionStore` keeps everything in dictionaries.  Data is
  lost on restart, which is what tests and local development want.
- :class:`JsonSessionStore` extends the in-memory store and mirrors every
  mutation to ``sessions.json``, ``history.json`` and ``templates.json`` in
  the data directory.

All access methods accept an optional ``owner_id``.  When given, records
owned by a different principal are invisible: reads return ``None`` (or
omit them) and updates are refused.  This is the authorization boundary
for the API layer.

Every method is a coroutine so the store is a suspension point, matching a
remote database in production.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .errors import PersistenceError
from .models import EditHistory, Template, WorkUnit, utcnow

logger = logging.getLogger(__name__)

# Fields that callers may never overwrite through update_by_id().
_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "owner_id"})

DEFAULT_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "Professional Headshot",
        "description": "Studio lighting, clean background, business professional",
        "category": "professional",
        "prompt": (
            "Transform into a professional headshot with studio lighting, clean white "
            "or gray background, business attire, professional lighting setup"
        ),
        "settings": {"quality": "high", "style": "professional"},
    },
    {
        "name": "Product Showcase",
        "description": "Clean backgrounds, perfect lighting, e-commerce ready",
        "category": "product",
        "prompt": (
            "Create a product photography setup with clean white background, "
            "professional lighting, shadow removal, e-commerce ready format"
        ),
        "settings": {"quality": "ultra", "background": "white"},
    },
    {
        "name": "Social Media",
        "description": "Instagram-ready, square format, trending styles",
        "category": "social",
        "prompt": (
            "Optimize for social media with vibrant colors, trendy aesthetic, square "
            "aspect ratio, engaging composition"
        ),
        "settings": {"format": "square", "style": "vibrant"},
    },
    {
        "name": "Artistic Style",
        "description": "Creative artistic transformations",
        "category": "artistic",
        "prompt": (
            "Apply artistic style transformation with enhanced colors, creative "
            "composition, artistic filters"
        ),
        "settings": {"style": "artistic", "enhancement": "creative"},
    },
]


class SessionStore(ABC):
    """Abstract persistence interface for work units, history and templates."""

    @abstractmethod
    async def create(self, unit: WorkUnit) -> WorkUnit:
        """Persist a new work unit and return it."""

    @abstractmethod
    async def get_by_id(self, unit_id: str, owner_id: str | None = None) -> WorkUnit | None:
        """Return a work unit, or ``None`` if missing or not visible."""

    @abstractmethod
    async def update_by_id(
        self,
        unit_id: str,
        updates: dict[str, Any],
        owner_id: str | None = None,
    ) -> WorkUnit | None:
        """Apply a partial update and return the updated unit.

        Returns ``None`` when the unit does not exist or is not visible.

        Raises:
            PersistenceError: If the update is invalid or cannot be stored.
        """

    @abstractmethod
    async def list_all(self, owner_id: str | None = None) -> list[WorkUnit]:
        """Return all visible work units, newest first."""

    @abstractmethod
    async def list_by_batch_id(
        self, batch_id: str, owner_id: str | None = None
    ) -> list[WorkUnit]:
        """Return the visible work units of a batch in creation order."""

    @abstractmethod
    async def add_history(self, entry: EditHistory) -> EditHistory:
        """Append an edit history entry."""

    @abstractmethod
    async def list_history(self, session_id: str) -> list[EditHistory]:
        """Return a session's edit history, newest first."""

    @abstractmethod
    async def list_templates(self, category: str | None = None) -> list[Template]:
        """Return active templates, optionally filtered by category."""

    @abstractmethod
    async def get_template(self, template_id: str) -> Template | None:
        """Return a template by id."""


def _visible(unit: WorkUnit, owner_id: str | None) -> bool:
    return owner_id is None or unit.owner_id == owner_id


class InMemorySessionStore(SessionStore):
    """Dictionary-backed session store.

    Args:
        seed_templates: Whether to create the default templates.
    """

    def __init__(self, seed_templates: bool = True) -> None:
        self._sessions: dict[str, WorkUnit] = {}
        self._history: dict[str, EditHistory] = {}
        self._templates: dict[str, Template] = {}
        if seed_templates:
            for data in DEFAULT_TEMPLATES:
                template = Template(**data)
                self._templates[template.id] = template

    async def create(self, unit: WorkUnit) -> WorkUnit:
        self._sessions[unit.id] = unit
        self._flush("sessions")
        logger.debug(f"Created work unit {unit.id} (batch={unit.batch_id})")
        return unit

    async def get_by_id(self, unit_id: str, owner_id: str | None = None) -> WorkUnit | None:
        unit = self._sessions.get(unit_id)
        if unit is None or not _visible(unit, owner_id):
            return None
        return unit

    async def update_by_id(
        self,
        unit_id: str,
        updates: dict[str, Any],
        owner_id: str | None = None,
    ) -> WorkUnit | None:
        unit = self._sessions.get(unit_id)
        if unit is None or not _visible(unit, owner_id):
            return None

        merged = unit.model_dump()
        merged.update({k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS})
        merged["updated_at"] = utcnow()

        try:
            updated = WorkUnit.model_validate(merged)
        except PydanticValidationError as e:
            raise PersistenceError(f"Invalid update for work unit {unit_id}: {e}") from e

        self._sessions[unit_id] = updated
        self._flush("sessions")
        return updated

    async def list_all(self, owner_id: str | None = None) -> list[WorkUnit]:
        units = [u for u in self._sessions.values() if _visible(u, owner_id)]
        return sorted(units, key=lambda u: u.created_at, reverse=True)

    async def list_by_batch_id(
        self, batch_id: str, owner_id: str | None = None
    ) -> list[WorkUnit]:
        units = [
            u
            for u in self._sessions.values()
            if u.batch_id == batch_id and _visible(u, owner_id)
        ]
        return sorted(units, key=lambda u: u.created_at)

    async def add_history(self, entry: EditHistory) -> EditHistory:
        self._history[entry.id] = entry
        self._flush("history")
        return entry

    async def list_history(self, session_id: str) -> list[EditHistory]:
        entries = [h for h in self._history.values() if h.session_id == session_id]
        return sorted(entries, key=lambda h: h.created_at, reverse=True)

    async def list_templates(self, category: str | None = None) -> list[Template]:
        return [
            t
            for t in self._templates.values()
            if t.is_active and (category is None or t.category == category)
        ]

    async def get_template(self, template_id: str) -> Template | None:
        return self._templates.get(template_id)

    def _flush(self, *names: str) -> None:
        """Persist the named collections.  No-op for the in-memory store."""


class JsonSessionStore(InMemorySessionStore):
    """Session store mirrored to JSON files in ``data_dir``.

    Files are read once at construction.  A mutation rewrites only the file
    of the collection it touched.  Missing or unreadable files start empty;
    templates are seeded only when ``templates.json`` does not exist yet.

    Args:
        data_dir: Directory holding the JSON files.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_path = self.data_dir / "sessions.json"
        self.history_path = self.data_dir / "history.json"
        self.templates_path = self.data_dir / "templates.json"

        super().__init__(seed_templates=not self.templates_path.exists())

        self._sessions.update(_load_records(self.sessions_path, WorkUnit))
        self._history.update(_load_records(self.history_path, EditHistory))
        self._templates.update(_load_records(self.templates_path, Template))
        self._flush()

        logger.info(
            f"Loaded JSON session store from {self.data_dir}: "
            f"{len(self._sessions)} sessions, {len(self._templates)} templates"
        )

    def _flush(self, *names: str) -> None:
        collections = {
            "sessions": (self.sessions_path, self._sessions),
            "history": (self.history_path, self._history),
            "templates": (self.templates_path, self._templates),
        }
        try:
            for name in names or collections:
                path, records = collections[name]
                _save_records(path, records.values())
        except OSError as e:
            raise PersistenceError(f"Failed to write session store: {e}") from e


def _load_records(path: Path, model: type) -> dict[str, Any]:
    """Load a JSON list of records, skipping entries that fail validation."""
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as handle:
            raw_entries = json.load(handle)
    except Exception as e:
        logger.warning(f"Ignoring unreadable store file {path}: {e}")
        return {}

    if not isinstance(raw_entries, list):
        return {}

    records: dict[str, Any] = {}
    for entry in raw_entries:
        try:
            record = model.model_validate(entry)
        except PydanticValidationError:
            logger.warning(f"Dropping invalid record in {path.name}: {entry!r}")
            continue
        records[record.id] = record
    return records


def _save_records(path: Path, records) -> None:
    """Write records as a JSON list with 2-space indentation."""
    data = [record.model_dump(mode="json") for record in records]
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
    tmp_path.replace(path)


def create_session_store(backend: str, data_dir: Path) -> SessionStore:
    """Build the session store selected by configuration.

    Args:
        backend: ``"memory"`` or ``"json"``.
        data_dir: Directory for the JSON store.

    Raises:
        ValueError: If ``backend`` is unknown.
    """
    if backend == "memory":
        logger.info("Using in-memory session store (data will not persist)")
        return InMemorySessionStore()
    if backend == "json":
        return JsonSessionStore(data_dir)
    raise ValueError(f"Unknown storage backend: {backend}")
