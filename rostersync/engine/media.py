"""
rostersync.engine.media — Event Media Split / Merge
====================================================

Event logos and maps are large encoded images.  To keep ``users/{uid}``
small they are stored as one side-record per event at
``users/{uid}/event_media/{eventId}``.

The pure helpers move image fields between the two shapes:

* :func:`extract_media` — ``{eventId: {logoDataUrl, mapDataUrl}}`` for
  every event that carries at least one image.
* :func:`strip_media`   — the events map with both image fields blanked.
* :func:`merge_media`   — put side-record images back into the events
  (side-record wins per event).

:class:`EventMediaStore` owns the side-record I/O and the session-wide
switch: the first permission denial on a side-record disables them for the
rest of the session and the caller falls back to writing images inline.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from rostersync.constants import event_media_collection
from rostersync.gateway.errors import GatewayError

if TYPE_CHECKING:
    from rostersync.gateway.documents import DocumentGateway

__all__ = [
    "MEDIA_FIELDS",
    "EventMediaStore",
    "extract_media",
    "merge_media",
    "strip_media",
]

logger = logging.getLogger(__name__)

MEDIA_FIELDS: tuple[str, ...] = ("logoDataUrl", "mapDataUrl")


# ---------------------------------------------------------------------------
# Pure split / merge
# ---------------------------------------------------------------------------
def _media_of(entry: Any) -> dict[str, str] | None:
    if not isinstance(entry, Mapping):
        return None
    media = {}
    for name in MEDIA_FIELDS:
        value = entry.get(name)
        media[name] = value if isinstance(value, str) else ""
    return media if any(media.values()) else None


def extract_media(events: Mapping[str, Any]) -> dict[str, dict[str, str]]:
    """Image fields of every event that has at least one image."""
    result: dict[str, dict[str, str]] = {}
    for event_id, entry in events.items():
        media = _media_of(entry)
        if media is not None:
            result[event_id] = media
    return result


def strip_media(events: Mapping[str, Any]) -> dict[str, Any]:
    """Deep copy of *events* with every image field set to ``""``."""
    stripped: dict[str, Any] = {}
    for event_id, entry in events.items():
        entry = copy.deepcopy(entry)
        if isinstance(entry, dict):
            for name in MEDIA_FIELDS:
                entry[name] = ""
        stripped[event_id] = entry
    return stripped


def merge_media(
    events: Mapping[str, Any],
    media: Mapping[str, Mapping[str, Any]],
) -> dict[str, Any]:
    """Overlay side-record *media* onto *events*.

    Events without a side-record keep whatever is inline (documents written
    before side-records existed).  Side-records for unknown events are
    ignored.
    """
    merged: dict[str, Any] = {}
    for event_id, entry in events.items():
        entry = copy.deepcopy(entry)
        side = media.get(event_id)
        if isinstance(entry, dict) and isinstance(side, Mapping):
            for name in MEDIA_FIELDS:
                value = side.get(name)
                entry[name] = value if isinstance(value, str) else ""
        merged[event_id] = entry
    return merged


# ---------------------------------------------------------------------------
# Side-record store
# ---------------------------------------------------------------------------
class EventMediaStore:
    """Reads and writes ``users/{uid}/event_media/*`` through the gateway.

    ``side_records_enabled`` starts ``True`` and only ever flips to
    ``False``; a new session gets a new store.
    """

    def __init__(self, gateway: DocumentGateway) -> None:
        self.gateway = gateway
        self.side_records_enabled = True
        self.fallback_count = 0
        self._migrated: set[str] = set()

    def _disable(self, uid: str, exc: GatewayError) -> None:
        if self.side_records_enabled:
            logger.warning(
                "Event media side-records denied for %s (%s); storing images inline",
                uid, exc,
            )
        self.side_records_enabled = False
        self.fallback_count += 1

    async def load(self, uid: str) -> dict[str, dict[str, str]]:
        """All side-records of *uid*, keyed by event id."""
        if not self.side_records_enabled:
            return {}
        try:
            snapshots = await self.gateway.query(event_media_collection(uid))
        except GatewayError as exc:
            if not exc.permission_denied:
                raise
            self._disable(uid, exc)
            return {}
        media: dict[str, dict[str, str]] = {}
        for snapshot in snapshots:
            entry = _media_of(snapshot.data)
            if entry is not None:
                media[snapshot.id] = entry
        return media

    async def diff_write(
        self,
        uid: str,
        previous: Mapping[str, Mapping[str, str]],
        current: Mapping[str, Mapping[str, str]],
    ) -> bool | None:
        """Write the side-records that differ between *previous* and *current*.

        Returns ``True`` after a write, ``None`` when there was nothing to
        write (or side-records are off), and ``False`` when the write was
        denied.  Other gateway failures propagate.
        """
        if not self.side_records_enabled:
            return None
        changed = sorted(
            event_id
            for event_id in set(previous) | set(current)
            if previous.get(event_id) != current.get(event_id)
        )
        if not changed:
            return None

        collection = event_media_collection(uid)
        batch = self.gateway.batch()
        for event_id in changed:
            path = f"{collection}/{event_id}"
            entry = current.get(event_id)
            if entry and any(entry.get(name) for name in MEDIA_FIELDS):
                batch.set(path, {name: entry.get(name, "") for name in MEDIA_FIELDS})
            else:
                batch.delete(path)
        try:
            await batch.commit()
        except GatewayError as exc:
            if not exc.permission_denied:
                raise
            self._disable(uid, exc)
            return False
        logger.debug("Wrote %d event media side-record(s) for %s", len(changed), uid)
        return True

    async def migrate_inline(self, uid: str, events: Mapping[str, Any]) -> bool:
        """One-time copy of inline images into side-records.

        Best effort: failures are logged and reported as ``False``.
        """
        if not self.side_records_enabled or uid in self._migrated:
            return False
        media = extract_media(events)
        if not media:
            return False
        self._migrated.add(uid)
        try:
            written = await self.diff_write(uid, {}, media)
        except GatewayError:
            logger.exception("Inline event media migration failed for %s", uid)
            return False
        return bool(written)

    async def delete_all(self, uid: str) -> int:
        """Remove every side-record of *uid*.  Returns the number deleted."""
        snapshots = await self.gateway.query(event_media_collection(uid))
        if not snapshots:
            return 0
        batch = self.gateway.batch()
        for snapshot in snapshots:
            batch.delete(snapshot.path)
        await batch.commit()
        return len(snapshots)
