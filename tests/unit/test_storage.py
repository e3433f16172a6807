"""Tests for retouch.core.storage — session stores.

Tests cover:
- CRUD on the in-memory store, including immutable fields.
- Owner scoping of reads and updates.
- Batch listing in creation order.
- History and template access.
- JSON persistence across store instances and corrupt-file recovery.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from retouch.core.errors import PersistenceError
from retouch.core.models import EditHistory, UnitStatus, WorkUnit, utcnow
from retouch.core.storage import (
    InMemorySessionStore,
    JsonSessionStore,
    create_session_store,
)


def _run(coro):
    return asyncio.run(coro)


def _unit(**fields) -> WorkUnit:
    fields.setdefault("original_image_url", "/objects/uploads/a.png")
    return WorkUnit(**fields)


class TestInMemoryCrud:
    """Create, read and update work units."""

    def test_create_and_get(self, store: InMemorySessionStore):
        unit = _run(store.create(_unit()))
        assert _run(store.get_by_id(unit.id)) == unit

    def test_get_missing_returns_none(self, store: InMemorySessionStore):
        assert _run(store.get_by_id("missing")) is None

    def test_update_merges_fields(self, store: InMemorySessionStore):
        unit = _run(store.create(_unit()))
        updated = _run(store.update_by_id(unit.id, {"status": "processing", "prompt": "p"}))

        assert updated.status == UnitStatus.PROCESSING
        assert updated.prompt == "p"
        assert updated.original_image_url == unit.original_image_url
        assert updated.updated_at >= unit.updated_at

    def test_update_ignores_immutable_fields(self, store: InMemorySessionStore):
        unit = _run(store.create(_unit(owner_id="alice")))
        updated = _run(store.update_by_id(unit.id, {"id": "other", "owner_id": "mallory"}))

        assert updated.id == unit.id
        assert updated.owner_id == "alice"

    def test_update_missing_returns_none(self, store: InMemorySessionStore):
        assert _run(store.update_by_id("missing", {"prompt": "p"})) is None

    def test_invalid_update_raises(self, store: InMemorySessionStore):
        unit = _run(store.create(_unit()))
        with pytest.raises(PersistenceError):
            _run(store.update_by_id(unit.id, {"status": "exploded"}))
        assert _run(store.get_by_id(unit.id)).status == UnitStatus.IDLE


class TestOwnerScoping:
    """Records owned by someone else are invisible."""

    def test_get_scoped(self, store: InMemorySessionStore):
        unit = _run(store.create(_unit(owner_id="alice")))

        assert _run(store.get_by_id(unit.id, owner_id="alice")) is not None
        assert _run(store.get_by_id(unit.id, owner_id="bob")) is None

    def test_update_scoped(self, store: InMemorySessionStore):
        unit = _run(store.create(_unit(owner_id="alice")))

        assert _run(store.update_by_id(unit.id, {"prompt": "x"}, owner_id="bob")) is None
        assert _run(store.get_by_id(unit.id)).prompt is None

    def test_list_all_scoped(self, store: InMemorySessionStore):
        _run(store.create(_unit(owner_id="alice")))
        _run(store.create(_unit(owner_id="bob")))

        assert len(_run(store.list_all())) == 2
        assert [u.owner_id for u in _run(store.list_all(owner_id="bob"))] == ["bob"]


class TestBatchListing:
    """list_by_batch_id returns a batch in creation order."""

    def test_creation_order(self, store: InMemorySessionStore):
        base = utcnow()
        ids = []
        for offset in (0, 1, 2):
            unit = _unit(batch_id="b1", created_at=base + timedelta(seconds=offset))
            ids.append(_run(store.create(unit)).id)
        _run(store.create(_unit(batch_id="b2")))

        assert [u.id for u in _run(store.list_by_batch_id("b1"))] == ids

    def test_unknown_batch_is_empty(self, store: InMemorySessionStore):
        assert _run(store.list_by_batch_id("nope")) == []


class TestHistoryAndTemplates:
    """Edit history and prompt templates."""

    def test_history_newest_first(self, store: InMemorySessionStore):
        base = utcnow()
        for offset in (0, 1):
            _run(
                store.add_history(
                    EditHistory(
                        session_id="s1",
                        image_url=f"https://x/{offset}.png",
                        prompt="p",
                        created_at=base + timedelta(seconds=offset),
                    )
                )
            )

        history = _run(store.list_history("s1"))
        assert [h.image_url for h in history] == ["https://x/1.png", "https://x/0.png"]
        assert _run(store.list_history("other")) == []

    def test_default_templates_seeded(self, store: InMemorySessionStore):
        templates = _run(store.list_templates())
        assert {t.category for t in templates} == {"professional", "product", "social", "artistic"}

    def test_templates_by_category(self, store: InMemorySessionStore):
        templates = _run(store.list_templates("product"))
        assert [t.name for t in templates] == ["Product Showcase"]

    def test_get_template(self, store: InMemorySessionStore):
        template = _run(store.list_templates())[0]
        assert _run(store.get_template(template.id)) == template
        assert _run(store.get_template("missing")) is None

    def test_seeding_can_be_disabled(self):
        assert _run(InMemorySessionStore(seed_templates=False).list_templates()) == []


class TestJsonSessionStore:
    """JSON-file persistence."""

    def test_persists_across_instances(self, temp_dir: Path):
        first = JsonSessionStore(temp_dir)
        unit = _run(first.create(_unit(batch_id="b1")))
        _run(first.update_by_id(unit.id, {"status": "completed", "current_image_url": "u"}))

        second = JsonSessionStore(temp_dir)
        loaded = _run(second.get_by_id(unit.id))
        assert loaded.status == UnitStatus.COMPLETED
        assert loaded.current_image_url == "u"

    def test_templates_not_reseeded(self, temp_dir: Path):
        """Reopening the store must not duplicate the default templates."""
        JsonSessionStore(temp_dir)
        reopened = JsonSessionStore(temp_dir)
        assert len(_run(reopened.list_templates())) == 4

    def test_status_update_rewrites_only_sessions(self, temp_dir: Path):
        store = JsonSessionStore(temp_dir)
        (temp_dir / "history.json").unlink()
        (temp_dir / "templates.json").unlink()

        unit = _run(store.create(_unit()))
        _run(store.update_by_id(unit.id, {"status": "processing"}))

        assert (temp_dir / "sessions.json").exists()
        assert not (temp_dir / "history.json").exists()
        assert not (temp_dir / "templates.json").exists()

    def test_corrupt_file_starts_empty(self, temp_dir: Path):
        (temp_dir / "sessions.json").write_text("{not json")
        store = JsonSessionStore(temp_dir)
        assert _run(store.list_all()) == []

    def test_invalid_records_dropped(self, temp_dir: Path):
        (temp_dir / "sessions.json").write_text(json.dumps([{"id": "x"}]))
        store = JsonSessionStore(temp_dir)
        assert _run(store.get_by_id("x")) is None


class TestCreateSessionStore:
    """Backend selection."""

    def test_memory_backend(self, temp_dir: Path):
        store = create_session_store("memory", temp_dir)
        assert type(store) is InMemorySessionStore

    def test_json_backend(self, temp_dir: Path):
        assert isinstance(create_session_store("json", temp_dir), JsonSessionStore)

    def test_unknown_backend(self, temp_dir: Path):
        with pytest.raises(ValueError):
            create_session_store("redis", temp_dir)
