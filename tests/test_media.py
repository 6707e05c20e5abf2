"""
tests/test_media.py — Unit Tests for Event Media Split/Merge
=============================================================

Pure split/merge helpers plus the side-record store against the SQLite
document table, including the permission-denied fallback.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from rostersync.engine.media import EventMediaStore, extract_media, merge_media, strip_media
from rostersync.gateway.errors import ErrorKind, GatewayError

LOGO = "data:image/png;base64,AAAA"
MAP = "data:image/webp;base64,BBBB"


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _events():
    return {
        "desert_storm": {"name": "Desert Storm", "logoDataUrl": LOGO, "mapDataUrl": ""},
        "canyon_battlefield": {"name": "Canyon Storm", "logoDataUrl": "", "mapDataUrl": ""},
        "custom": {"name": "Custom", "logoDataUrl": LOGO, "mapDataUrl": MAP},
    }


def _denied() -> GatewayError:
    return GatewayError(ErrorKind.PERMISSION_DENIED, "Missing or insufficient permissions.")


# ===========================================================================
# Pure helpers
# ===========================================================================
class TestSplitMerge:
    def test_extract_only_events_with_images(self):
        assert extract_media(_events()) == {
            "desert_storm": {"logoDataUrl": LOGO, "mapDataUrl": ""},
            "custom": {"logoDataUrl": LOGO, "mapDataUrl": MAP},
        }

    def test_strip_blanks_images_and_copies(self):
        events = _events()
        stripped = strip_media(events)
        assert all(e["logoDataUrl"] == "" and e["mapDataUrl"] == "" for e in stripped.values())
        assert events["custom"]["mapDataUrl"] == MAP

    @pytest.mark.parametrize("events", [
        {},
        _events(),
        {"x": {"name": "no media"}},
        {"x": {"logoDataUrl": 5}, "y": "garbage"},
    ])
    def test_round_trip(self, events):
        stripped = strip_media(events)
        assert strip_media(merge_media(stripped, extract_media(events))) == stripped

    def test_merge_restores_extracted_images(self):
        events = _events()
        assert merge_media(strip_media(events), extract_media(events)) == events

    def test_side_record_wins(self):
        events = _events()
        merged = merge_media(events, {"desert_storm": {"logoDataUrl": "", "mapDataUrl": MAP}})
        assert merged["desert_storm"]["logoDataUrl"] == ""
        assert merged["desert_storm"]["mapDataUrl"] == MAP
        assert merged["custom"] == events["custom"]

    def test_orphan_side_records_ignored(self):
        assert merge_media({}, {"ghost": {"logoDataUrl": LOGO}}) == {}


# ===========================================================================
# EventMediaStore
# ===========================================================================
class TestEventMediaStore:
    def test_diff_write_and_load(self, open_gateway):
        async def _inner():
            store = EventMediaStore(open_gateway)
            media = extract_media(_events())
            assert await store.diff_write("u1", {}, media) is True
            assert await store.load("u1") == media

            # Clearing the custom event's images deletes its side-record
            updated = copy.deepcopy(media)
            del updated["custom"]
            assert await store.diff_write("u1", media, updated) is True
            assert await store.load("u1") == updated
            snapshot = await open_gateway.get("users/u1/event_media/custom")
            assert not snapshot.exists
        run_async(_inner())

    def test_nothing_to_write(self, open_gateway):
        async def _inner():
            store = EventMediaStore(open_gateway)
            media = extract_media(_events())
            assert await store.diff_write("u1", media, copy.deepcopy(media)) is None
        run_async(_inner())

    def test_one_batch_with_one_op_per_changed_event(self):
        async def _inner():
            batch = MagicMock()
            batch.commit = AsyncMock()
            gateway = MagicMock()
            gateway.batch.return_value = batch
            store = EventMediaStore(gateway)

            previous = {"a": {"logoDataUrl": LOGO, "mapDataUrl": ""}, "b": {"logoDataUrl": LOGO, "mapDataUrl": ""}}
            current = {"a": {"logoDataUrl": LOGO, "mapDataUrl": MAP}, "c": {"logoDataUrl": LOGO, "mapDataUrl": ""}}
            assert await store.diff_write("u1", previous, current) is True

            gateway.batch.assert_called_once()
            batch.commit.assert_awaited_once()
            set_paths = [c.args[0] for c in batch.set.call_args_list]
            deleted = [c.args[0] for c in batch.delete.call_args_list]
            assert set_paths == ["users/u1/event_media/a", "users/u1/event_media/c"]
            assert deleted == ["users/u1/event_media/b"]
        run_async(_inner())

    def test_denial_disables_side_records_once(self, caplog):
        async def _inner():
            batch = MagicMock()
            batch.commit = AsyncMock(side_effect=_denied())
            gateway = MagicMock()
            gateway.batch.return_value = batch
            store = EventMediaStore(gateway)

            media = {"a": {"logoDataUrl": LOGO, "mapDataUrl": ""}}
            with caplog.at_level(logging.WARNING, logger="rostersync.engine.media"):
                assert await store.diff_write("u1", {}, media) is False
                assert store.side_records_enabled is False
                # Later calls are no-ops
                assert await store.diff_write("u1", {}, media) is None
            assert store.fallback_count == 1
            warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
            assert len(warnings) == 1
        run_async(_inner())

    def test_transient_errors_propagate(self):
        async def _inner():
            batch = MagicMock()
            batch.commit = AsyncMock(side_effect=GatewayError(ErrorKind.TRANSIENT, "offline"))
            gateway = MagicMock()
            gateway.batch.return_value = batch
            store = EventMediaStore(gateway)
            with pytest.raises(GatewayError):
                await store.diff_write("u1", {}, {"a": {"logoDataUrl": LOGO, "mapDataUrl": ""}})
            assert store.side_records_enabled is True
        run_async(_inner())

    def test_load_denied_disables(self):
        async def _inner():
            gateway = MagicMock()
            gateway.query = AsyncMock(side_effect=_denied())
            store = EventMediaStore(gateway)
            assert await store.load("u1") == {}
            assert store.side_records_enabled is False
        run_async(_inner())

    def test_load_denied_by_rules_for_other_user(self, rules_gateway, alice):
        async def _inner():
            store = EventMediaStore(rules_gateway.with_principal(alice))
            assert await store.load("bob") == {}
            assert store.side_records_enabled is False
        run_async(_inner())

    def test_migrate_inline_is_best_effort(self):
        async def _inner():
            batch = MagicMock()
            batch.commit = AsyncMock(side_effect=GatewayError(ErrorKind.TRANSIENT, "offline"))
            gateway = MagicMock()
            gateway.batch.return_value = batch
            store = EventMediaStore(gateway)
            assert await store.migrate_inline("u1", _events()) is False
            # Only attempted once per user
            assert await store.migrate_inline("u1", _events()) is False
            batch.commit.assert_awaited_once()
        run_async(_inner())

    def test_migrate_inline_writes_side_records(self, open_gateway):
        async def _inner():
            store = EventMediaStore(open_gateway)
            assert await store.migrate_inline("u1", _events()) is True
            assert set(await store.load("u1")) == {"desert_storm", "custom"}
        run_async(_inner())

    def test_delete_all(self, open_gateway):
        async def _inner():
            store = EventMediaStore(open_gateway)
            await store.diff_write("u1", {}, extract_media(_events()))
            assert await store.delete_all("u1") == 2
            assert await store.load("u1") == {}
        run_async(_inner())
