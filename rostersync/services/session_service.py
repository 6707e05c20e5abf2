"""
rostersync.services.session_service — Sync Session Lifecycle
=============================================================

:class:`SyncSession` is the one object the application talks to.  It owns
the in-memory :class:`~rostersync.engine.schema.UserRecord` of the
signed-in user and wires the per-user collaborators together:

    SyncSession
      ├── SaveScheduler            debounced diff-aware writes of users/{uid}
      ├── EventMediaStore          users/{uid}/event_media/* side-records
      ├── AllianceService          alliances + invitations (+ throttle)
      │     └── MembershipReconciler
      └── GlobalDefaultsPublisher  app_config/* shared layouts

Lifecycle::

    session = SyncSession().init(config, gateway)
    await session.sign_in(principal)     # auth_changed → load → data_loaded
    session.upsert_player("Ann", 31.5)   # → request_save()
    await session.sign_out()
    session.reset()

Observer channels: ``auth_changed(is_signed_in, principal)``,
``data_loaded(player_database)``, ``alliance_data_changed()``.  For one
sign-in, ``auth_changed`` is always delivered before ``data_loaded``.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from rostersync.config import SyncConfig
from rostersync.constants import (
    LEGACY_EVENT_IDS,
    MAX_AVATAR_DATA_URL_LENGTH,
    MAX_PROFILE_TEXT_LENGTH,
    MAX_UPLOAD_BYTES,
    PLAYER_SOURCE_ALLIANCE,
    user_path,
)
from rostersync.engine.media import EventMediaStore, extract_media, merge_media
from rostersync.engine.observers import EventChannel
from rostersync.engine.schema import (
    UserRecord,
    ensure_legacy_defaults,
    normalize,
    normalize_event_id,
    sanitize_building_config,
    sanitize_event_entry,
    sanitize_player_database,
    sanitize_player_entry,
    sanitize_positions,
    sanitize_profile,
    slugify_event_id,
)
from rostersync.engine.throttle import InvitationThrottle
from rostersync.gateway.documents import DocumentGateway
from rostersync.gateway.errors import GatewayError
from rostersync.gateway.rules import Principal
from rostersync.services.alliance_service import AllianceService, OperationResult
from rostersync.services.defaults_service import DefaultsKind, GlobalDefaultsPublisher
from rostersync.services.reconciliation_service import MembershipReconciler
from rostersync.services.save_scheduler import SaveResult, SaveScheduler

__all__ = ["SyncSession"]

logger = logging.getLogger(__name__)


def _check_upload_size(source_size_bytes: int | None) -> None:
    if source_size_bytes is not None and source_size_bytes > MAX_UPLOAD_BYTES:
        raise ValueError(
            f"File too large: {source_size_bytes} bytes "
            f"(max {MAX_UPLOAD_BYTES // 1024 // 1024}MB)"
        )


class SyncSession:
    """Explicit state-sync session for one application instance."""

    def __init__(self) -> None:
        self.auth_changed = EventChannel("auth_changed")
        self.data_loaded = EventChannel("data_loaded")
        self.alliance_data_changed = EventChannel("alliance_data_changed")

        self.config = SyncConfig()
        self._base_gateway: DocumentGateway | None = None
        self._clear_user_state()

    def _clear_user_state(self) -> None:
        self.principal: Principal | None = None
        self.gateway: DocumentGateway | None = None
        self.record = UserRecord()
        self.scheduler: SaveScheduler | None = None
        self.media_store: EventMediaStore | None = None
        self.alliance: AllianceService | None = None
        self.defaults: GlobalDefaultsPublisher | None = None
        self.fallback_read_hit_count = 0

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def init(self, config: SyncConfig, gateway: DocumentGateway) -> SyncSession:
        """Bind configuration and the (unauthenticated) gateway.  Returns self."""
        self.config = config
        self._base_gateway = gateway.with_principal(None)
        return self

    def reset(self) -> None:
        """Drop all user state, pending saves and observers."""
        if self.scheduler is not None:
            self.scheduler.cancel()
        self._clear_user_state()
        self.auth_changed.clear()
        self.data_loaded.clear()
        self.alliance_data_changed.clear()

    @property
    def is_signed_in(self) -> bool:
        return self.principal is not None

    def _require_user(self) -> SaveScheduler:
        if self.scheduler is None or self.principal is None:
            raise RuntimeError("No user is signed in")
        return self.scheduler

    async def sign_in(self, principal: Principal) -> UserRecord:
        """Bind *principal*, load and normalize their document."""
        if self._base_gateway is None:
            raise RuntimeError("SyncSession.init() must be called before sign_in()")
        if self.principal is not None:
            await self.sign_out()

        cfg = self.config
        self.principal = principal
        self.gateway = self._base_gateway.with_principal(principal)
        self.media_store = EventMediaStore(self.gateway)
        self.scheduler = SaveScheduler(
            self.gateway,
            principal.uid,
            lambda: self.record,
            media_store=self.media_store,
            debounce_seconds=cfg.save_debounce_seconds,
        )
        self.alliance = AllianceService(
            self.gateway,
            lambda: self.record,
            throttle=InvitationThrottle(cfg.free_invites, cfg.invite_cooldown_seconds * 1000),
            reconciler=MembershipReconciler(self.gateway),
            changed=self.alliance_data_changed,
        )
        self.defaults = GlobalDefaultsPublisher(self.gateway, cfg.defaults_owner_email)
        logger.info("User %s signed in", principal.uid)

        self.auth_changed.publish(True, principal)
        await self._load_user_data()
        self.data_loaded.publish(self.record.player_database)

        await self._apply_shared_defaults()
        if self.record.alliance_id:
            await self.alliance.load_alliance_data()
        return self.record

    async def sign_out(self) -> None:
        if self.principal is None:
            return
        uid = self.principal.uid
        if self.scheduler is not None:
            await self.scheduler.wait_idle()
        self._clear_user_state()
        logger.info("User %s signed out", uid)
        self.auth_changed.publish(False, None)

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    async def _load_user_data(self) -> None:
        uid = self.principal.uid
        raw: dict[str, Any] | None = None
        readable = True
        try:
            snapshot = await self.gateway.get(user_path(uid))
            raw = snapshot.data
        except GatewayError as exc:
            readable = False
            if exc.permission_denied:
                self.fallback_read_hit_count += 1
            logger.warning("Reading data for %s failed, using defaults: %s", uid, exc)

        media: dict[str, dict[str, str]] = {}
        if readable:
            try:
                media = await self.media_store.load(uid)
            except GatewayError as exc:
                logger.warning("Reading event media for %s failed: %s", uid, exc)

        stored_events = (raw or {}).get("events")
        inline_media = extract_media(stored_events) if isinstance(stored_events, Mapping) else {}
        if raw is not None and isinstance(stored_events, Mapping):
            raw = {**raw, "events": merge_media(stored_events, media)}

        self.record = normalize(raw, legacy_event_id=self.config.legacy_event_id)
        self.alliance.throttle.apply(self.record.invite_throttle)

        if not readable:
            # Nothing we write would be readable either; keep local defaults.
            self.scheduler.acknowledge(self.scheduler.current_shape())
            return

        needs_write = raw is None or self.record.defaults_changed or bool(self.record.pending_deletes)
        media_unmigrated = False
        if inline_media and self.media_store.side_records_enabled:
            migrated = await self.media_store.migrate_inline(uid, self.record.events)
            needs_write = needs_write or migrated
            media_unmigrated = not migrated

        if needs_write:
            if raw is None:
                logger.info("Creating initial document for %s", uid)
            self.scheduler.acknowledge(None)
            self.scheduler.request_save(immediate=True)
        else:
            baseline = self.scheduler.current_shape()
            if media_unmigrated:
                # The images only exist inline; the next flush writes their side-records.
                baseline = replace(baseline, event_media={})
            self.scheduler.acknowledge(baseline)

    async def _apply_shared_defaults(self) -> None:
        events = self.record.events
        await self.defaults.load(DefaultsKind.CONFIG, events)
        positions = await self.defaults.load(DefaultsKind.POSITIONS, events)
        filled = False
        for event_id, layout in positions.events.items():
            entry = events.get(event_id)
            if entry is not None and not entry.get("buildingPositions"):
                entry["buildingPositions"] = copy.deepcopy(layout)
                filled = True
        if filled:
            self.scheduler.request_save()

    # -------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------
    @property
    def media_fallback_count(self) -> int:
        return self.media_store.fallback_count if self.media_store else 0

    @property
    def reconciled_member_count(self) -> int:
        return self.alliance.reconciler.reconciled_count if self.alliance else 0

    def reset_counters(self) -> None:
        self.fallback_read_hit_count = 0
        if self.media_store is not None:
            self.media_store.fallback_count = 0
        if self.alliance is not None:
            self.alliance.reconciler.reconciled_count = 0

    # -------------------------------------------------------------------
    # Profile & roster mutators
    # -------------------------------------------------------------------
    def set_user_profile(
        self,
        display_name: str | None = None,
        nickname: str | None = None,
        avatar_data_url: str | None = None,
    ) -> asyncio.Future[SaveResult]:
        scheduler = self._require_user()
        profile = dict(self.record.user_profile)
        for key, value in (("displayName", display_name), ("nickname", nickname)):
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"{key} must be a string")
            if len(value.strip()) > MAX_PROFILE_TEXT_LENGTH:
                raise ValueError(f"{key} is longer than {MAX_PROFILE_TEXT_LENGTH} characters")
            profile[key] = value
        if avatar_data_url is not None:
            if not isinstance(avatar_data_url, str):
                raise ValueError("avatarDataUrl must be a string")
            if len(avatar_data_url) > MAX_AVATAR_DATA_URL_LENGTH:
                raise ValueError("Avatar image is too large")
            profile["avatarDataUrl"] = avatar_data_url
        cleaned = sanitize_profile(profile)
        if avatar_data_url and not cleaned["avatarDataUrl"]:
            raise ValueError("Avatar must be an encoded image")
        self.record.user_profile = cleaned
        return scheduler.request_save()

    def upsert_player(
        self,
        name: str,
        power: float,
        troops: str = "",
        last_updated: str | None = None,
    ) -> asyncio.Future[SaveResult]:
        scheduler = self._require_user()
        name = (name or "").strip()
        if not name:
            raise ValueError("Player name is required")
        self.record.player_database[name] = sanitize_player_entry({
            "power": power,
            "troops": troops,
            "lastUpdated": last_updated or datetime.now(UTC).isoformat(),
        })
        return scheduler.request_save()

    def remove_player(self, name: str) -> asyncio.Future[SaveResult]:
        scheduler = self._require_user()
        self.record.player_database.pop((name or "").strip(), None)
        return scheduler.request_save()

    def clear_players(self) -> asyncio.Future[SaveResult]:
        scheduler = self._require_user()
        self.record.player_database = {}
        return scheduler.request_save()

    def replace_player_database(
        self,
        players: Mapping[str, Any],
        *,
        source_size_bytes: int | None = None,
    ) -> asyncio.Future[SaveResult]:
        """Adopt a roster parsed from an uploaded spreadsheet."""
        scheduler = self._require_user()
        _check_upload_size(source_size_bytes)
        self.record.player_database = sanitize_player_database(players)
        logger.info(
            "Roster for %s replaced with %d player(s)",
            self.principal.uid, len(self.record.player_database),
        )
        return scheduler.request_save()

    # -------------------------------------------------------------------
    # Alliance roster
    # -------------------------------------------------------------------
    @property
    def alliance_player_database(self) -> dict[str, Any]:
        return self.alliance.alliance_player_database if self.alliance else {}

    @property
    def active_player_database(self) -> dict[str, Any]:
        """The roster the planner works from, chosen by ``playerSource``."""
        if self.record.player_source == PLAYER_SOURCE_ALLIANCE:
            return self.alliance_player_database
        return self.record.player_database

    async def upload_alliance_player_database(
        self,
        players: Mapping[str, Any],
        *,
        source_size_bytes: int | None = None,
    ) -> OperationResult:
        self._require_user()
        _check_upload_size(source_size_bytes)
        return await self.alliance.upload_alliance_player_database(players)

    # -------------------------------------------------------------------
    # Event mutators
    # -------------------------------------------------------------------
    def _event(self, event_id: str) -> dict[str, Any]:
        key = normalize_event_id(event_id)
        if key not in self.record.events:
            raise KeyError(f"Unknown event: {event_id!r}")
        return self.record.events[key]

    def _commit_events(self, events: dict[str, Any]) -> asyncio.Future[SaveResult]:
        self.record.events, _changed = ensure_legacy_defaults(events)
        return self.scheduler.request_save()

    def upsert_event(self, event_id: str, payload: Mapping[str, Any]) -> asyncio.Future[SaveResult]:
        self._require_user()
        key = normalize_event_id(event_id)
        if not key:
            raise ValueError(f"Invalid event id: {event_id!r}")
        events = dict(self.record.events)
        events[key] = sanitize_event_entry(key, payload, events.get(key))
        return self._commit_events(events)

    def add_event(self, name: str, payload: Mapping[str, Any] | None = None) -> str:
        """Create a new event with an id derived from *name*; returns the id."""
        self._require_user()
        event_id = slugify_event_id(name, self.record.events)
        self.upsert_event(event_id, {**(payload or {}), "name": name})
        return event_id

    def remove_event(self, event_id: str) -> bool:
        self._require_user()
        key = normalize_event_id(event_id)
        if key in LEGACY_EVENT_IDS or key not in self.record.events:
            return False
        events = dict(self.record.events)
        del events[key]
        self._commit_events(events)
        return True

    def set_building_config(self, event_id: str, config: list[Any]) -> asyncio.Future[SaveResult]:
        self._require_user()
        cleaned = sanitize_building_config(config)
        if cleaned is None:
            raise ValueError("Building config must be a list")
        self._event(event_id)["buildingConfig"] = cleaned
        return self._commit_events(dict(self.record.events))

    def set_building_positions(
        self, event_id: str, positions: Mapping[str, Any]
    ) -> asyncio.Future[SaveResult]:
        self._require_user()
        cleaned = sanitize_positions(positions)
        if cleaned is None:
            raise ValueError("Building positions must be a mapping")
        self._event(event_id)["buildingPositions"] = cleaned
        return self.scheduler.request_save()

    def set_building_config_version(self, event_id: str, version: int) -> asyncio.Future[SaveResult]:
        return self._set_version(event_id, "buildingConfigVersion", version)

    def set_building_positions_version(
        self, event_id: str, version: int
    ) -> asyncio.Future[SaveResult]:
        return self._set_version(event_id, "buildingPositionsVersion", version)

    def _set_version(self, event_id: str, field_name: str, version: int) -> asyncio.Future[SaveResult]:
        scheduler = self._require_user()
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise ValueError(f"{field_name} must be a non-negative integer")
        self._event(event_id)[field_name] = version
        return scheduler.request_save()

    # -------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------
    async def delete_user_data(self) -> OperationResult:
        """Remove the user's side-records and document, then sign out."""
        scheduler = self._require_user()
        scheduler.cancel()
        await scheduler.wait_idle()
        uid = self.principal.uid
        try:
            removed = 0
            if self.media_store.side_records_enabled:
                removed = await self.media_store.delete_all(uid)
            await self.gateway.delete(user_path(uid))
        except GatewayError as exc:
            logger.warning("Deleting data for %s failed: %s", uid, exc)
            return OperationResult(success=False, error=str(exc))
        logger.info("Deleted data for %s (%d media side-record(s))", uid, removed)
        self._clear_user_state()
        self.auth_changed.publish(False, None)
        return OperationResult(success=True)
