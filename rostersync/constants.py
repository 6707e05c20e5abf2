"""
rostersync.constants — Shared Constants
========================================

Single source of truth for the compatibility contract: persisted field
names, the two legacy event ids, boundary limits, and the seed building
lists used when a legacy event is missing.  Import from here instead of
duplicating values in the engine and services.
"""

from __future__ import annotations

import re
from typing import Any

# ---------------------------------------------------------------------------
# Legacy events (ids are part of the persisted contract)
# ---------------------------------------------------------------------------
DESERT_STORM_ID = "desert_storm"
CANYON_BATTLEFIELD_ID = "canyon_battlefield"
LEGACY_EVENT_IDS: tuple[str, ...] = (DESERT_STORM_ID, CANYON_BATTLEFIELD_ID)

# Pre-event-scoped documents stored the layout of this event at top level.
DEFAULT_LEGACY_EVENT_ID = DESERT_STORM_ID

LEGACY_TOP_LEVEL_FIELDS: tuple[str, ...] = (
    "buildingConfig",
    "buildingConfigVersion",
    "buildingPositions",
    "buildingPositionsVersion",
)

# ---------------------------------------------------------------------------
# Boundary limits
# ---------------------------------------------------------------------------
MAX_UPLOAD_BYTES = 5 * 1024 * 1024  # 5 MB
MAX_PROFILE_TEXT_LENGTH = 60
MAX_EVENT_NAME_LENGTH = 30
MAX_EVENT_ID_LENGTH = 30
MAX_ALLIANCE_NAME_LENGTH = 40
MAX_AVATAR_DATA_URL_LENGTH = 400_000
MAX_EVENT_LOGO_DATA_URL_LENGTH = 300_000
MAX_EVENT_MAP_DATA_URL_LENGTH = 950_000

MIN_BUILDING_PRIORITY = 1
MAX_BUILDING_PRIORITY = 6

IMAGE_DATA_URL_RE = re.compile(r"^data:image/[a-z0-9.+-]+;base64,", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Enumerated values
# ---------------------------------------------------------------------------
PLAYER_SOURCE_PERSONAL = "personal"
PLAYER_SOURCE_ALLIANCE = "alliance"
PLAYER_SOURCES: frozenset[str] = frozenset({PLAYER_SOURCE_PERSONAL, PLAYER_SOURCE_ALLIANCE})

# ---------------------------------------------------------------------------
# Document paths
# ---------------------------------------------------------------------------
USERS_COLLECTION = "users"
EVENT_MEDIA_SUBCOLLECTION = "event_media"
ALLIANCES_COLLECTION = "alliances"
INVITATIONS_COLLECTION = "invitations"
APP_CONFIG_COLLECTION = "app_config"


def user_path(uid: str) -> str:
    return f"{USERS_COLLECTION}/{uid}"


def event_media_collection(uid: str) -> str:
    return f"{user_path(uid)}/{EVENT_MEDIA_SUBCOLLECTION}"


def alliance_path(alliance_id: str) -> str:
    return f"{ALLIANCES_COLLECTION}/{alliance_id}"


def invitation_path(invitation_id: str) -> str:
    return f"{INVITATIONS_COLLECTION}/{invitation_id}"


# ---------------------------------------------------------------------------
# Seed layouts for the legacy events
# ---------------------------------------------------------------------------
LEGACY_EVENT_NAMES: dict[str, str] = {
    DESERT_STORM_ID: "Desert Storm",
    CANYON_BATTLEFIELD_ID: "Canyon Storm",
}

LEGACY_EVENT_BUILDINGS: dict[str, list[dict[str, Any]]] = {
    DESERT_STORM_ID: [
        {"name": "Bomb Squad", "priority": 1, "slots": 4},
        {"name": "Oil Refinery 1", "priority": 3, "slots": 2},
        {"name": "Oil Refinery 2", "priority": 3, "slots": 2},
        {"name": "Field Hospital 1", "priority": 4, "slots": 2},
        {"name": "Field Hospital 2", "priority": 4, "slots": 2},
        {"name": "Field Hospital 3", "priority": 4, "slots": 2},
        {"name": "Field Hospital 4", "priority": 4, "slots": 2},
        {"name": "Info Center", "priority": 5, "slots": 2},
        {"name": "Science Hub", "priority": 5, "slots": 2},
    ],
    CANYON_BATTLEFIELD_ID: [
        {"name": "Bomb Squad", "priority": 1, "slots": 4},
        {"name": "Missile Silo 1", "priority": 2, "slots": 2},
        {"name": "Missile Silo 2", "priority": 2, "slots": 2},
        {"name": "Radar Station 1", "priority": 3, "slots": 2},
        {"name": "Radar Station 2", "priority": 3, "slots": 2},
        {"name": "Watchtower 1", "priority": 4, "slots": 1},
        {"name": "Watchtower 2", "priority": 4, "slots": 1},
        {"name": "Watchtower 3", "priority": 4, "slots": 1},
        {"name": "Watchtower 4", "priority": 4, "slots": 1},
        {"name": "Command Center", "priority": 3, "slots": 2},
        {"name": "Supply Depot", "priority": 5, "slots": 1},
        {"name": "Armory", "priority": 5, "slots": 1},
        {"name": "Comm Tower", "priority": 5, "slots": 0},
    ],
}

LEGACY_EVENT_POSITIONS: dict[str, dict[str, list[int]]] = {
    DESERT_STORM_ID: {
        "Info Center": [366, 38],
        "Field Hospital 4": [785, 139],
        "Oil Refinery 1": [194, 260],
        "Field Hospital 2": [951, 247],
        "Oil Refinery 2": [914, 472],
        "Field Hospital 1": [161, 458],
        "Field Hospital 3": [314, 654],
        "Science Hub": [774, 656],
    },
    CANYON_BATTLEFIELD_ID: {},
}
