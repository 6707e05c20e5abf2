"""
rostersync.engine.schema — Schema Normalizer & Legacy Migration
================================================================

Converts any stored user document into the canonical in-memory
:class:`UserRecord`, whatever schema generation wrote it:

1. **Absent documents** — a brand-new account gets an empty roster,
   ``playerSource='personal'`` and both legacy events seeded.
2. **Pre-event-scoped documents** — ``buildingConfig``,
   ``buildingPositions`` and their version counters used to live at the
   top level.  They are folded into the legacy event's entry (only where
   that entry is still empty) and the top-level fields are queued for
   deletion on the next write.
3. **Partial event maps** — every event entry goes through
   :func:`sanitize_event_entry`, which is total: each field comes from the
   candidate if valid, else from the fallback, else a zero value.

Normalization is idempotent: ``normalize(normalize(d)) == normalize(d)``.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from rostersync.constants import (
    DEFAULT_LEGACY_EVENT_ID,
    IMAGE_DATA_URL_RE,
    LEGACY_EVENT_BUILDINGS,
    LEGACY_EVENT_IDS,
    LEGACY_EVENT_NAMES,
    LEGACY_EVENT_POSITIONS,
    LEGACY_TOP_LEVEL_FIELDS,
    MAX_AVATAR_DATA_URL_LENGTH,
    MAX_BUILDING_PRIORITY,
    MAX_EVENT_ID_LENGTH,
    MAX_EVENT_LOGO_DATA_URL_LENGTH,
    MAX_EVENT_MAP_DATA_URL_LENGTH,
    MAX_EVENT_NAME_LENGTH,
    MAX_PROFILE_TEXT_LENGTH,
    MIN_BUILDING_PRIORITY,
    PLAYER_SOURCE_PERSONAL,
    PLAYER_SOURCES,
)
from rostersync.engine.media import extract_media, strip_media

__all__ = [
    "PersistedShape",
    "UserRecord",
    "ensure_legacy_defaults",
    "normalize",
    "normalize_event_id",
    "sanitize_building_config",
    "sanitize_event_entry",
    "sanitize_positions",
    "slugify_event_id",
    "to_persisted_shape",
]

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Canonical record types
# ---------------------------------------------------------------------------
def _default_profile() -> dict[str, str]:
    return {"displayName": "", "nickname": "", "avatarDataUrl": ""}


def _default_throttle() -> dict[str, int]:
    return {"sentCount": 0, "cooldownUntilMs": 0}


@dataclass(slots=True)
class UserRecord:
    """Canonical in-memory shape of ``users/{uid}``.

    ``pending_deletes`` and ``defaults_changed`` describe work the next
    save must do; they are not part of the record's identity.
    """

    player_database: dict[str, dict[str, Any]] = field(default_factory=dict)
    events: dict[str, dict[str, Any]] = field(default_factory=dict)
    alliance_id: str | None = None
    alliance_name: str | None = None
    player_source: str = PLAYER_SOURCE_PERSONAL
    user_profile: dict[str, str] = field(default_factory=_default_profile)
    invite_throttle: dict[str, int] = field(default_factory=_default_throttle)
    pending_deletes: tuple[str, ...] = field(default=(), compare=False)
    defaults_changed: bool = field(default=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """The document as persisted (camelCase field names)."""
        return {
            "playerDatabase": copy.deepcopy(self.player_database),
            "events": copy.deepcopy(self.events),
            "allianceId": self.alliance_id,
            "allianceName": self.alliance_name,
            "playerSource": self.player_source,
            "userProfile": dict(self.user_profile),
            "inviteThrottle": dict(self.invite_throttle),
        }


@dataclass(slots=True)
class PersistedShape:
    """The part of a :class:`UserRecord` the save scheduler owns.

    Compared field by field; ``event_media`` is diffed separately because
    it may be written through the side-record path.
    """

    TOP_LEVEL_FIELDS: ClassVar[dict[str, str]] = {
        "playerDatabase": "player_database",
        "events": "events",
        "userProfile": "user_profile",
    }

    player_database: dict[str, dict[str, Any]]
    events: dict[str, dict[str, Any]]
    user_profile: dict[str, str]
    event_media: dict[str, dict[str, str]]
    pending_deletes: tuple[str, ...] = ()

    def value(self, field_name: str) -> Any:
        return getattr(self, self.TOP_LEVEL_FIELDS[field_name])

    def changed_fields(self, previous: PersistedShape | None) -> list[str]:
        """Top-level persisted field names whose value differs from *previous*."""
        if previous is None:
            return list(self.TOP_LEVEL_FIELDS)
        return [
            name for name in self.TOP_LEVEL_FIELDS
            if self.value(name) != previous.value(name)
        ]

    def media_changed(self, previous: PersistedShape | None) -> bool:
        if previous is None:
            return bool(self.event_media)
        return self.event_media != previous.event_media

    def copy(self) -> PersistedShape:
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Scalar validators
# ---------------------------------------------------------------------------
def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _round(number: float) -> int:
    # Half-up rounding, matching what older clients stored.
    return int(math.floor(number + 0.5))


def _clean_text(value: Any, max_length: int) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip()[:max_length].rstrip()


def _clean_image(value: Any, max_length: int) -> str | None:
    """``None`` if *value* is not a string; ``""`` if it is not an acceptable image."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return ""
    if len(text) > max_length or not IMAGE_DATA_URL_RE.match(text):
        return ""
    return text


def _clean_version(value: Any) -> int | None:
    number = _as_number(value)
    if number is None or number < 0:
        return None
    return _round(number)


def _first(*candidates: Any, default: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return default


# ---------------------------------------------------------------------------
# Event ids
# ---------------------------------------------------------------------------
def normalize_event_id(value: Any) -> str:
    """Lower-case slug: ``"Desert Storm!"`` → ``"desert_storm"``."""
    if not isinstance(value, str):
        return ""
    return _NON_SLUG_RE.sub("_", value.strip().lower()).strip("_")


def slugify_event_id(name: str, existing_ids: Iterable[str]) -> str:
    """Derive a new unique event id from a display name."""
    existing = set(existing_ids)
    base = normalize_event_id(name)[:MAX_EVENT_ID_LENGTH] or "event"
    candidate = base
    counter = 2
    while candidate in existing:
        suffix = f"_{counter}"
        candidate = f"{base[:max(1, MAX_EVENT_ID_LENGTH - len(suffix))]}{suffix}"
        counter += 1
    return candidate


# ---------------------------------------------------------------------------
# Buildings & positions
# ---------------------------------------------------------------------------
def _sanitize_building(item: Any) -> dict[str, Any] | None:
    if not isinstance(item, Mapping):
        return None
    name = item.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    name = name.strip()
    label = item.get("label")
    label = label.strip() if isinstance(label, str) and label.strip() else name
    slots = _as_number(item.get("slots"))
    priority = _as_number(item.get("priority"))
    return {
        "name": name,
        "label": label,
        "slots": max(0, _round(slots)) if slots is not None else 0,
        "priority": (
            min(MAX_BUILDING_PRIORITY, max(MIN_BUILDING_PRIORITY, _round(priority)))
            if priority is not None else MIN_BUILDING_PRIORITY
        ),
        "showOnMap": item.get("showOnMap") is not False,
    }


def sanitize_building_config(value: Any) -> list[dict[str, Any]] | None:
    """Sanitized building list, or ``None`` if *value* is not a list."""
    if not isinstance(value, list | tuple):
        return None
    buildings = (_sanitize_building(item) for item in value)
    return [b for b in buildings if b is not None]


def sanitize_positions(value: Any) -> dict[str, list[int]] | None:
    if not isinstance(value, Mapping):
        return None
    positions: dict[str, list[int]] = {}
    for name, coords in value.items():
        if not isinstance(name, str) or not name.strip():
            continue
        if not isinstance(coords, list | tuple) or len(coords) != 2:
            continue
        x, y = _as_number(coords[0]), _as_number(coords[1])
        if x is None or y is None:
            continue
        positions[name.strip()] = [_round(x), _round(y)]
    return positions


# ---------------------------------------------------------------------------
# Event entries
# ---------------------------------------------------------------------------
def sanitize_event_entry(event_id: str, candidate: Any, fallback: Any = None) -> dict[str, Any]:
    """Build a valid EventEntry from *candidate*, falling back field by field.

    Never raises; unknown keys are dropped.
    """
    source = candidate if isinstance(candidate, Mapping) else {}
    prev = fallback if isinstance(fallback, Mapping) else {}

    def pick(key: str, clean, *args):
        return _first(clean(source.get(key), *args), clean(prev.get(key), *args), default=None)

    name = _first(
        _non_empty(_clean_text(source.get("name"), MAX_EVENT_NAME_LENGTH)),
        _non_empty(_clean_text(prev.get("name"), MAX_EVENT_NAME_LENGTH)),
        default=(LEGACY_EVENT_NAMES.get(event_id) or event_id or "Event")[:MAX_EVENT_NAME_LENGTH],
    )
    return {
        "name": name,
        "logoDataUrl": pick("logoDataUrl", _clean_image, MAX_EVENT_LOGO_DATA_URL_LENGTH) or "",
        "mapDataUrl": pick("mapDataUrl", _clean_image, MAX_EVENT_MAP_DATA_URL_LENGTH) or "",
        "buildingConfig": pick("buildingConfig", sanitize_building_config) or [],
        "buildingConfigVersion": pick("buildingConfigVersion", _clean_version) or 0,
        "buildingPositions": pick("buildingPositions", sanitize_positions) or {},
        "buildingPositionsVersion": pick("buildingPositionsVersion", _clean_version) or 0,
    }


def _non_empty(text: str | None) -> str | None:
    return text if text else None


def _sanitize_events(value: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(value, Mapping):
        return {}
    events: dict[str, dict[str, Any]] = {}
    for raw_id, entry in value.items():
        event_id = normalize_event_id(raw_id)
        if not event_id:
            continue
        events[event_id] = sanitize_event_entry(event_id, entry, events.get(event_id))
    return events


def ensure_legacy_defaults(
    events: Mapping[str, Any],
) -> tuple[dict[str, dict[str, Any]], bool]:
    """Guarantee both legacy events exist with a non-empty building config.

    Returns ``(events, changed)``; ``changed`` tells the caller to persist
    the correction.
    """
    result = {k: v for k, v in events.items()}
    changed = False
    for event_id in LEGACY_EVENT_IDS:
        entry = result.get(event_id)
        config = sanitize_building_config(entry.get("buildingConfig")) if isinstance(entry, Mapping) else None
        if config:
            continue
        seed = copy.deepcopy(LEGACY_EVENT_BUILDINGS[event_id])
        base = dict(entry) if isinstance(entry, Mapping) else {}
        base["buildingConfig"] = seed
        if not sanitize_positions(base.get("buildingPositions")):
            base["buildingPositions"] = copy.deepcopy(LEGACY_EVENT_POSITIONS[event_id])
        result[event_id] = sanitize_event_entry(event_id, base)
        changed = True
    return result, changed


# ---------------------------------------------------------------------------
# Legacy top-level fields
# ---------------------------------------------------------------------------
def _merge_legacy_fields(
    raw: Mapping[str, Any],
    events: dict[str, Any],
    legacy_event_id: str,
) -> tuple[dict[str, Any], tuple[str, ...]]:
    """Fold pre-event-scoped layout fields into *legacy_event_id*.

    Only fills fields the event entry does not already have, so running it
    twice is a no-op.  Returns the events map and the top-level field names
    to delete.
    """
    present = tuple(f for f in LEGACY_TOP_LEVEL_FIELDS if f in raw)
    if not present:
        return events, ()

    target = events.get(legacy_event_id)
    merged = dict(target) if isinstance(target, Mapping) else {}

    legacy_config = sanitize_building_config(raw.get("buildingConfig"))
    if legacy_config and not sanitize_building_config(merged.get("buildingConfig")):
        merged["buildingConfig"] = legacy_config

    legacy_positions = sanitize_positions(raw.get("buildingPositions"))
    if legacy_positions and not sanitize_positions(merged.get("buildingPositions")):
        merged["buildingPositions"] = legacy_positions

    for version_field in ("buildingConfigVersion", "buildingPositionsVersion"):
        legacy_version = _clean_version(raw.get(version_field))
        if legacy_version and _clean_version(merged.get(version_field)) is None:
            merged[version_field] = legacy_version

    result = dict(events)
    result[legacy_event_id] = merged
    return result, present


# ---------------------------------------------------------------------------
# Roster, profile, throttle
# ---------------------------------------------------------------------------
def _clean_power(value: Any) -> int | float:
    number = _as_number(value)
    if number is None or number < 0:
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return number


def sanitize_player_entry(entry: Any) -> dict[str, Any]:
    source = entry if isinstance(entry, Mapping) else {}
    troops = source.get("troops")
    last_updated = source.get("lastUpdated")
    if isinstance(last_updated, bool) or not isinstance(last_updated, str | int | float):
        last_updated = ""
    return {
        "power": _clean_power(source.get("power")),
        "troops": troops.strip() if isinstance(troops, str) else "",
        "lastUpdated": last_updated if isinstance(last_updated, str) else str(last_updated),
    }


def sanitize_player_database(value: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(value, Mapping):
        return {}
    roster: dict[str, dict[str, Any]] = {}
    for name, entry in value.items():
        if not isinstance(name, str) or not name.strip():
            continue
        roster[name.strip()] = sanitize_player_entry(entry)
    return roster


def sanitize_profile(value: Any) -> dict[str, str]:
    source = value if isinstance(value, Mapping) else {}
    return {
        "displayName": _clean_text(source.get("displayName"), MAX_PROFILE_TEXT_LENGTH) or "",
        "nickname": _clean_text(source.get("nickname"), MAX_PROFILE_TEXT_LENGTH) or "",
        "avatarDataUrl": _clean_image(source.get("avatarDataUrl"), MAX_AVATAR_DATA_URL_LENGTH) or "",
    }


def sanitize_throttle(value: Any) -> dict[str, int]:
    source = value if isinstance(value, Mapping) else {}
    sent = _clean_version(source.get("sentCount"))
    until = _clean_version(source.get("cooldownUntilMs"))
    return {"sentCount": sent or 0, "cooldownUntilMs": until or 0}


def _clean_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
def normalize(
    raw: Mapping[str, Any] | UserRecord | None,
    *,
    legacy_event_id: str = DEFAULT_LEGACY_EVENT_ID,
) -> UserRecord:
    """Convert any stored user document into a canonical :class:`UserRecord`."""
    if isinstance(raw, UserRecord):
        raw = raw.to_dict()
    source: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}

    raw_events = source.get("events")
    raw_events = dict(raw_events) if isinstance(raw_events, Mapping) else {}
    raw_events = {normalize_event_id(k) or k: v for k, v in raw_events.items()}
    raw_events, pending_deletes = _merge_legacy_fields(source, raw_events, legacy_event_id)

    events, defaults_changed = ensure_legacy_defaults(_sanitize_events(raw_events))

    alliance_id = _clean_id(source.get("allianceId"))
    player_source = source.get("playerSource")
    if player_source not in PLAYER_SOURCES:
        player_source = PLAYER_SOURCE_PERSONAL

    return UserRecord(
        player_database=sanitize_player_database(source.get("playerDatabase")),
        events=events,
        alliance_id=alliance_id,
        alliance_name=_clean_id(source.get("allianceName")) if alliance_id else None,
        player_source=player_source,
        user_profile=sanitize_profile(source.get("userProfile")),
        invite_throttle=sanitize_throttle(source.get("inviteThrottle")),
        pending_deletes=pending_deletes,
        defaults_changed=defaults_changed,
    )


def to_persisted_shape(record: UserRecord, *, side_records_enabled: bool = True) -> PersistedShape:
    """Canonical shape the save scheduler diffs and writes.

    With side-records enabled, image fields leave the event entries and
    travel in ``event_media``; otherwise they stay inline.
    """
    events = copy.deepcopy(record.events)
    if side_records_enabled:
        media = extract_media(events)
        events = strip_media(events)
    else:
        media = {}
    return PersistedShape(
        player_database=copy.deepcopy(record.player_database),
        events=events,
        user_profile=dict(record.user_profile),
        event_media=media,
        pending_deletes=tuple(record.pending_deletes),
    )
