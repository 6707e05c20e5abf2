"""
tests/test_session.py — End-to-End Tests for the Sync Session
==============================================================

Signs users in against the SQLite document store and checks what ends up
persisted: first-run defaults, legacy migration, debounced mutator saves,
the media fallback and account deletion.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from rostersync.config import SyncConfig
from rostersync.constants import MAX_UPLOAD_BYTES
from rostersync.engine.media import EventMediaStore
from rostersync.gateway.documents import DocumentGateway
from rostersync.gateway.errors import ErrorKind, GatewayError
from rostersync.services.defaults_service import DEFAULTS_DOCUMENTS, DefaultsKind
from rostersync.services.save_scheduler import SaveState
from rostersync.services.session_service import SyncSession

LOGO = "data:image/png;base64,iVBORw0KGgo="


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _session(gateway: DocumentGateway) -> SyncSession:
    return SyncSession().init(SyncConfig(save_debounce_ms=10), gateway)


class _DenyPaths:
    """Allow everything except paths containing one of *fragments*."""

    def __init__(self, *fragments: str) -> None:
        self.fragments = fragments

    def allows(self, request) -> bool:
        return not any(fragment in request.path for fragment in self.fragments)


# ===========================================================================
# Sign-in & loading
# ===========================================================================
class TestSignIn:
    def test_new_user_gets_defaults_written(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            record = await session.sign_in(alice)
            await session.scheduler.wait_idle()

            assert record.player_database == {}
            assert set(record.events) == {"desert_storm", "canyon_battlefield"}
            assert record.player_source == "personal"

            stored = (await open_gateway.get("users/alice")).data
            assert stored["playerDatabase"] == {}
            assert set(stored["events"]) == {"desert_storm", "canyon_battlefield"}
            assert stored["metadata"]["totalPlayers"] == 0
        run_async(_inner())

    def test_auth_changed_before_data_loaded(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            calls = []
            session.auth_changed.subscribe(lambda signed_in, principal: calls.append(("auth", signed_in)))
            session.data_loaded.subscribe(lambda players: calls.append(("data", players)))
            await session.sign_in(alice)
            assert calls == [("auth", True), ("data", {})]
        run_async(_inner())

    def test_sign_in_requires_init(self, alice):
        with pytest.raises(RuntimeError):
            run_async(SyncSession().sign_in(alice))

    def test_clean_document_is_not_rewritten(self, open_gateway, alice):
        async def _inner():
            first = _session(open_gateway)
            await first.sign_in(alice)
            await first.upsert_player("Ann", 31.5, troops="Tank")
            await first.sign_out()

            second = _session(open_gateway)
            record = await second.sign_in(alice)
            assert record.player_database["Ann"]["power"] == 31.5
            assert record.player_database["Ann"]["troops"] == "Tank"
            assert second.scheduler.state is SaveState.IDLE
            assert second.scheduler.last_acknowledged is not None
        run_async(_inner())

    def test_legacy_document_is_migrated(self, open_gateway, alice):
        async def _inner():
            await open_gateway.set("users/alice", {
                "playerDatabase": {"Ann": {"power": 10, "troops": "Aero"}},
                "buildingConfig": [{"name": "HQ", "priority": 2, "slots": 3}],
                "buildingConfigVersion": 4,
            })
            session = _session(open_gateway)
            record = await session.sign_in(alice)
            await session.scheduler.wait_idle()

            desert = record.events["desert_storm"]
            assert [b["name"] for b in desert["buildingConfig"]] == ["HQ"]
            assert desert["buildingConfigVersion"] == 4

            stored = (await open_gateway.get("users/alice")).data
            assert "buildingConfig" not in stored
            assert "buildingConfigVersion" not in stored
            assert stored["events"]["desert_storm"]["buildingConfig"][0]["slots"] == 3
            assert stored["playerDatabase"]["Ann"]["power"] == 10
        run_async(_inner())

    def test_inline_media_moves_to_side_records(self, open_gateway, alice):
        async def _inner():
            await open_gateway.set("users/alice", {
                "events": {"desert_storm": {"name": "Desert Storm", "logoDataUrl": LOGO}},
            })
            session = _session(open_gateway)
            record = await session.sign_in(alice)
            await session.scheduler.wait_idle()

            assert record.events["desert_storm"]["logoDataUrl"] == LOGO
            side = (await open_gateway.get("users/alice/event_media/desert_storm")).data
            assert side == {"logoDataUrl": LOGO, "mapDataUrl": ""}
            stored = (await open_gateway.get("users/alice")).data
            assert stored["events"]["desert_storm"]["logoDataUrl"] == ""
        run_async(_inner())

    def test_failed_migration_retries_on_next_save(self, open_gateway, alice):
        async def _inner():
            first = _session(open_gateway)
            await first.sign_in(alice)
            await first.sign_out()
            await open_gateway.update("users/alice", {"events.desert_storm.logoDataUrl": LOGO})

            real_diff_write = EventMediaStore.diff_write
            calls = []

            async def flaky_diff_write(store, uid, previous, current):
                calls.append(uid)
                if len(calls) == 1:
                    raise GatewayError(ErrorKind.TRANSIENT, "offline")
                return await real_diff_write(store, uid, previous, current)

            with patch.object(EventMediaStore, "diff_write", flaky_diff_write):
                session = _session(open_gateway)
                record = await session.sign_in(alice)
                assert session.scheduler.state is SaveState.IDLE
                assert record.events["desert_storm"]["logoDataUrl"] == LOGO

                result = await session.upsert_event("desert_storm", {"name": "Renamed"})
            assert result.success is True
            assert len(calls) == 2

            side = (await open_gateway.get("users/alice/event_media/desert_storm")).data
            assert side == {"logoDataUrl": LOGO, "mapDataUrl": ""}
            stored = (await open_gateway.get("users/alice")).data
            assert stored["events"]["desert_storm"]["name"] == "Renamed"
            assert stored["events"]["desert_storm"]["logoDataUrl"] == ""
        run_async(_inner())

    def test_denied_read_falls_back_to_defaults(self, db_engine, alice):
        async def _inner():
            gateway = DocumentGateway(db_engine, policy=_DenyPaths("users/"))
            session = _session(gateway)
            record = await session.sign_in(alice)
            assert session.fallback_read_hit_count == 1
            assert set(record.events) == {"desert_storm", "canyon_battlefield"}
            assert session.scheduler.state is SaveState.IDLE

            result = await session.upsert_player("Ann", 1)
            assert result.success is False
            assert "permissions" in result.error

            session.reset_counters()
            assert session.fallback_read_hit_count == 0
        run_async(_inner())

    def test_shared_positions_fill_empty_layouts(self, open_gateway, alice):
        async def _inner():
            await open_gateway.set(
                DEFAULTS_DOCUMENTS[DefaultsKind.POSITIONS],
                {"events": {"canyon_battlefield": {"HQ": [5, 6]}}, "version": 3},
            )
            session = _session(open_gateway)
            record = await session.sign_in(alice)
            await session.scheduler.wait_idle()

            assert record.events["canyon_battlefield"]["buildingPositions"] == {"HQ": [5, 6]}
            stored = (await open_gateway.get("users/alice")).data
            assert stored["events"]["canyon_battlefield"]["buildingPositions"] == {"HQ": [5, 6]}
            # Layouts the user already has are left alone
            assert "Science Hub" in record.events["desert_storm"]["buildingPositions"]
        run_async(_inner())


# ===========================================================================
# Mutators
# ===========================================================================
class TestMutators:
    def test_requires_signed_in_user(self, open_gateway):
        session = _session(open_gateway)
        with pytest.raises(RuntimeError):
            session.upsert_player("Ann", 1)

    def test_player_mutations_are_coalesced(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            await session.scheduler.wait_idle()

            first = session.upsert_player("Ann", 10)
            second = session.upsert_player("Ben", 20)
            third = session.remove_player("Ann")
            assert first is second is third
            result = await third
            assert result.changed_fields == ("playerDatabase",)

            stored = (await open_gateway.get("users/alice")).data
            assert list(stored["playerDatabase"]) == ["Ben"]
            assert stored["metadata"]["totalPlayers"] == 1

            await session.clear_players()
            assert (await open_gateway.get("users/alice")).data["playerDatabase"] == {}
        run_async(_inner())

    def test_upsert_player_rejects_empty_name(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            with pytest.raises(ValueError):
                session.upsert_player("   ", 1)
        run_async(_inner())

    def test_replace_player_database(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            with pytest.raises(ValueError, match="File too large"):
                session.replace_player_database({}, source_size_bytes=MAX_UPLOAD_BYTES + 1)

            await session.replace_player_database(
                {" Ann ": {"power": "12.5"}, "": {"power": 1}}, source_size_bytes=1024
            )
            assert session.record.player_database == {
                "Ann": {"power": 12.5, "troops": "", "lastUpdated": ""},
            }
        run_async(_inner())

    def test_active_player_database_follows_source(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            await session.upsert_player("Ann", 10)
            assert session.active_player_database == session.record.player_database
            assert session.alliance_player_database == {}

            await session.alliance.create_alliance("Wolves")
            with pytest.raises(ValueError, match="File too large"):
                await session.upload_alliance_player_database(
                    {}, source_size_bytes=MAX_UPLOAD_BYTES + 1
                )
            uploaded = await session.upload_alliance_player_database(
                {"Zed": {"power": 5}}, source_size_bytes=2048
            )
            assert uploaded.success is True
            assert set(session.alliance_player_database) == {"Zed"}
            assert set(session.active_player_database) == {"Ann"}

            assert (await session.alliance.set_player_source("alliance")).success is True
            assert set(session.active_player_database) == {"Zed"}

            await session.alliance.leave_alliance()
            assert set(session.active_player_database) == {"Ann"}
        run_async(_inner())

    def test_profile_validation(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            with pytest.raises(ValueError):
                session.set_user_profile(display_name="x" * 61)
            with pytest.raises(ValueError):
                session.set_user_profile(avatar_data_url="https://example.com/a.png")
            with pytest.raises(ValueError, match="displayName must be a string"):
                session.set_user_profile(display_name=123)
            with pytest.raises(ValueError, match="avatarDataUrl must be a string"):
                session.set_user_profile(avatar_data_url=b"data:image/png")

            await session.set_user_profile(display_name=" Alice ", nickname="Al")
            stored = (await open_gateway.get("users/alice")).data
            assert stored["userProfile"] == {"displayName": "Alice", "nickname": "Al", "avatarDataUrl": ""}
        run_async(_inner())

    def test_add_and_remove_events(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)

            event_id = session.add_event("Frost Raid", {"buildingConfig": [{"name": "Gate"}]})
            assert event_id == "frost_raid"
            assert session.add_event("Frost Raid") == "frost_raid_2"
            assert session.remove_event("desert_storm") is False
            assert session.remove_event("nope") is False
            assert session.remove_event("frost_raid_2") is True
            await session.scheduler.wait_idle()

            stored = (await open_gateway.get("users/alice")).data
            assert set(stored["events"]) == {"desert_storm", "canyon_battlefield", "frost_raid"}
            assert stored["events"]["frost_raid"]["buildingConfig"][0]["label"] == "Gate"
        run_async(_inner())

    def test_layout_mutators(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)

            with pytest.raises(KeyError):
                session.set_building_config("unknown", [])
            with pytest.raises(ValueError):
                session.set_building_config("desert_storm", "not a list")
            with pytest.raises(ValueError):
                session.set_building_config_version("desert_storm", -1)

            session.set_building_positions("Desert Storm", {"HQ": [1.4, 2.6]})
            await session.set_building_positions_version("desert_storm", 7)
            desert = (await open_gateway.get("users/alice")).data["events"]["desert_storm"]
            assert desert["buildingPositions"] == {"HQ": [1, 3]}
            assert desert["buildingPositionsVersion"] == 7

            # An emptied legacy config is re-seeded
            await session.set_building_config("desert_storm", [])
            assert session.record.events["desert_storm"]["buildingConfig"]
        run_async(_inner())


# ===========================================================================
# Media fallback
# ===========================================================================
class TestMediaFallback:
    def test_denied_side_records_keep_images_inline(self, db_engine, alice):
        async def _inner():
            gateway = DocumentGateway(db_engine, policy=_DenyPaths("event_media"))
            session = _session(gateway)
            await session.sign_in(alice)
            await session.scheduler.wait_idle()
            assert session.media_fallback_count == 1
            assert session.scheduler.side_records_enabled is False

            await session.upsert_event("desert_storm", {"logoDataUrl": LOGO})
            stored = (await gateway.get("users/alice")).data
            assert stored["events"]["desert_storm"]["logoDataUrl"] == LOGO
            assert stored["events"]["desert_storm"]["buildingConfig"]

            session.reset_counters()
            assert session.media_fallback_count == 0
        run_async(_inner())


# ===========================================================================
# Sign-out & account deletion
# ===========================================================================
class TestAccount:
    def test_sign_out_flushes_pending_save(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            listener = MagicMock()
            session.auth_changed.subscribe(listener)

            session.upsert_player("Ann", 5)
            await session.sign_out()
            listener.assert_called_once_with(False, None)
            assert session.is_signed_in is False
            assert session.scheduler is None
            assert "Ann" in (await open_gateway.get("users/alice")).data["playerDatabase"]
        run_async(_inner())

    def test_delete_user_data(self, open_gateway, alice):
        async def _inner():
            session = _session(open_gateway)
            await session.sign_in(alice)
            await session.upsert_event("desert_storm", {"logoDataUrl": LOGO})
            assert (await open_gateway.get("users/alice/event_media/desert_storm")).exists

            listener = MagicMock()
            session.auth_changed.subscribe(listener)
            result = await session.delete_user_data()
            assert result.success is True
            listener.assert_called_once_with(False, None)
            assert not (await open_gateway.get("users/alice")).exists
            assert not (await open_gateway.get("users/alice/event_media/desert_storm")).exists
            assert session.is_signed_in is False
        run_async(_inner())

    def test_reset_drops_observers(self, open_gateway):
        session = _session(open_gateway)
        session.auth_changed.subscribe(MagicMock())
        session.reset()
        assert len(session.auth_changed) == 0
        assert session.record.player_database == {}
