"""
rostersync.services.defaults_service — Shared default layouts
==============================================================

New users start from a shared default building layout.  Two documents
hold it, one per kind:

    app_config/default_event_building_config  →  {events: {id: [building…]}, version}
    app_config/default_event_positions        →  {events: {id: {name: [x, y]}}, version}

Exactly one account (``defaults_owner_email`` in config) writes them.
When the shared document is absent or empty and the owner is signed in,
the owner's own event data is published with
``version = max(now_ms, existing_version)``.  Everyone else only reads.
Newest ``version`` wins; the in-memory cache never goes backwards.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from rostersync.constants import APP_CONFIG_COLLECTION
from rostersync.engine.schema import (
    normalize_event_id,
    sanitize_building_config,
    sanitize_positions,
)
from rostersync.engine.throttle import now_ms
from rostersync.gateway.errors import GatewayError

if TYPE_CHECKING:
    from rostersync.gateway.documents import DocumentGateway

__all__ = ["DefaultsKind", "GlobalDefaults", "GlobalDefaultsPublisher"]

logger = logging.getLogger(__name__)


class DefaultsKind(enum.StrEnum):
    CONFIG = "config"
    POSITIONS = "positions"


DEFAULTS_DOCUMENTS: dict[DefaultsKind, str] = {
    DefaultsKind.CONFIG: f"{APP_CONFIG_COLLECTION}/default_event_building_config",
    DefaultsKind.POSITIONS: f"{APP_CONFIG_COLLECTION}/default_event_positions",
}

# Event-entry field each kind is derived from.
_EVENT_FIELDS: dict[DefaultsKind, str] = {
    DefaultsKind.CONFIG: "buildingConfig",
    DefaultsKind.POSITIONS: "buildingPositions",
}


@dataclass(frozen=True, slots=True)
class GlobalDefaults:
    events: dict[str, Any] = field(default_factory=dict)
    version: int = 0


def _clean_events(kind: DefaultsKind, raw: Any) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        return {}
    clean = sanitize_building_config if kind is DefaultsKind.CONFIG else sanitize_positions
    events: dict[str, Any] = {}
    for raw_id, value in raw.items():
        event_id = normalize_event_id(raw_id)
        cleaned = clean(value)
        if event_id and cleaned:
            events[event_id] = cleaned
    return events


def _parse(kind: DefaultsKind, data: Mapping[str, Any] | None) -> GlobalDefaults:
    if not data:
        return GlobalDefaults()
    version = data.get("version")
    if isinstance(version, bool) or not isinstance(version, int | float) or version < 0:
        version = 0
    return GlobalDefaults(events=_clean_events(kind, data.get("events")), version=int(version))


def derive_from_events(kind: DefaultsKind, local_events: Mapping[str, Any]) -> dict[str, Any]:
    """Pull this kind's layout out of a user's events map."""
    source_field = _EVENT_FIELDS[kind]
    return _clean_events(
        kind,
        {
            event_id: entry.get(source_field)
            for event_id, entry in local_events.items()
            if isinstance(entry, Mapping)
        },
    )


class GlobalDefaultsPublisher:
    """Single-writer, many-reader cache of the shared default layouts."""

    def __init__(self, gateway: DocumentGateway, owner_email: str = "") -> None:
        self.gateway = gateway
        self.owner_email = owner_email.strip().lower()
        self._cache: dict[DefaultsKind, GlobalDefaults] = {}

    @property
    def is_owner(self) -> bool:
        principal = self.gateway.principal
        return bool(
            self.owner_email
            and principal is not None
            and principal.normalized_email == self.owner_email
        )

    def cached(self, kind: DefaultsKind | str) -> GlobalDefaults:
        return self._cache.get(DefaultsKind(kind), GlobalDefaults())

    def _remember(self, kind: DefaultsKind, defaults: GlobalDefaults) -> None:
        if defaults.version >= self.cached(kind).version:
            self._cache[kind] = defaults

    async def load(
        self,
        kind: DefaultsKind | str,
        local_events: Mapping[str, Any] | None = None,
    ) -> GlobalDefaults:
        """Read the shared document; the owner seeds it when it is empty."""
        kind = DefaultsKind(kind)
        try:
            snapshot = await self.gateway.get(DEFAULTS_DOCUMENTS[kind])
        except GatewayError as exc:
            logger.warning("Could not read shared %s defaults: %s", kind, exc)
            return self.cached(kind)

        remote = _parse(kind, snapshot.data)
        self._remember(kind, remote)
        if not remote.events and local_events is not None:
            await self.maybe_publish(kind, local_events)
        return self.cached(kind)

    async def maybe_publish(
        self,
        kind: DefaultsKind | str,
        local_events: Mapping[str, Any],
    ) -> bool:
        """Publish *local_events* as the shared default.  Owner only."""
        kind = DefaultsKind(kind)
        if not self.is_owner:
            return False
        events = derive_from_events(kind, local_events)
        if not events:
            return False

        defaults = GlobalDefaults(events=events, version=max(now_ms(), self.cached(kind).version))
        try:
            await self.gateway.set(
                DEFAULTS_DOCUMENTS[kind], {"events": events, "version": defaults.version}
            )
        except GatewayError as exc:
            logger.warning("Publishing shared %s defaults failed: %s", kind, exc)
            return False
        self._remember(kind, defaults)
        logger.info(
            "Published shared %s defaults for %d event(s) at version %d",
            kind, len(events), defaults.version,
        )
        return True
