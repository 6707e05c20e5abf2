"""
rostersync.services.save_scheduler — Debounced, diff-aware saves
=================================================================

Every local mutation calls :meth:`SaveScheduler.request_save`.  Rapid
mutations are coalesced into one remote write after a quiet period, and
only the top-level fields that actually changed since the last
acknowledged write are sent.

State machine::

    IDLE ──request_save()──▶ QUEUED ──timer / immediate──▶ FLUSHING ──▶ IDLE
                               ▲                              │
                               └────── request_save() ◀───────┘

* One debounce timer.  Further non-immediate requests while QUEUED return
  the same future and do not push the timer back.
* ``immediate=True`` cancels the timer and flushes now.
* A request made while FLUSHING queues a follow-up flush that starts only
  after the in-flight one settles, so it diffs against the new baseline.
* A failed flush leaves ``last_acknowledged`` untouched; the next flush
  retries with the same (minimal) diff.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rostersync.constants import user_path
from rostersync.engine.media import merge_media
from rostersync.engine.schema import PersistedShape, UserRecord, to_persisted_shape
from rostersync.gateway.documents import DELETE_FIELD
from rostersync.gateway.errors import GatewayError

if TYPE_CHECKING:
    from rostersync.engine.media import EventMediaStore
    from rostersync.gateway.documents import DocumentGateway

__all__ = ["SaveResult", "SaveScheduler", "SaveState"]

logger = logging.getLogger(__name__)


class SaveState(enum.StrEnum):
    IDLE = "idle"
    QUEUED = "queued"
    FLUSHING = "flushing"


@dataclass(frozen=True, slots=True)
class SaveResult:
    success: bool
    skipped: bool = False
    cancelled: bool = False
    changed_fields: tuple[str, ...] = ()
    error: str | None = None


class SaveScheduler:
    """Coalesces save requests for one signed-in user.

    Parameters
    ----------
    gateway:
        Gateway bound to the user.
    uid:
        Owner of ``users/{uid}``.
    record_provider:
        Returns the current in-memory :class:`UserRecord`.
    media_store:
        Side-record writer; ``None`` keeps images inline.
    debounce_seconds:
        Quiet period before a queued save flushes.
    """

    def __init__(
        self,
        gateway: DocumentGateway,
        uid: str,
        record_provider: Callable[[], UserRecord],
        *,
        media_store: EventMediaStore | None = None,
        debounce_seconds: float = 0.25,
    ) -> None:
        self.gateway = gateway
        self.uid = uid
        self.record_provider = record_provider
        self.media_store = media_store
        self.debounce_seconds = debounce_seconds
        self.last_acknowledged: PersistedShape | None = None

        self._pending: asyncio.Future[SaveResult] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------
    @property
    def state(self) -> SaveState:
        if self._task is not None and not self._task.done():
            return SaveState.FLUSHING
        if self._pending is not None:
            return SaveState.QUEUED
        return SaveState.IDLE

    @property
    def side_records_enabled(self) -> bool:
        return self.media_store is not None and self.media_store.side_records_enabled

    def current_shape(self) -> PersistedShape:
        return to_persisted_shape(
            self.record_provider(), side_records_enabled=self.side_records_enabled
        )

    def acknowledge(self, shape: PersistedShape | None) -> None:
        """Set the diff baseline, e.g. right after loading the remote document.

        ``None`` makes the next flush write every persisted field.
        """
        self.last_acknowledged = shape.copy() if shape is not None else None

    # -------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------
    def request_save(self, immediate: bool = False) -> asyncio.Future[SaveResult]:
        """Queue a save and return the future of the flush that will cover it.

        Must be called from the running event loop.
        """
        loop = asyncio.get_running_loop()
        if self._pending is None:
            self._pending = loop.create_future()
            if not immediate:
                self._timer = loop.call_later(self.debounce_seconds, self._on_timer)
        future = self._pending
        if immediate:
            self._cancel_timer()
            self._start_flush()
        return future

    async def flush_now(self) -> SaveResult:
        return await self.request_save(immediate=True)

    def cancel(self) -> bool:
        """Drop the queued (not yet flushing) save.  In-flight writes are not
        cancellable.
        """
        self._cancel_timer()
        future, self._pending = self._pending, None
        if future is None or future.done():
            return False
        future.set_result(SaveResult(success=False, cancelled=True))
        return True

    async def wait_idle(self) -> None:
        """Wait until no flush is in flight or queued."""
        while self.state is not SaveState.IDLE:
            if self._task is not None and not self._task.done():
                await asyncio.shield(self._task)
            elif self._pending is not None:
                await asyncio.shield(self._pending)

    # -------------------------------------------------------------------
    # Timer & task plumbing
    # -------------------------------------------------------------------
    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._start_flush()

    def _start_flush(self) -> None:
        if self._task is not None and not self._task.done():
            # Picked up by _run() when the in-flight flush settles.
            return
        future, self._pending = self._pending, None
        if future is None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(future), name=f"save-flush-{self.uid}"
        )

    async def _run(self, future: asyncio.Future[SaveResult]) -> None:
        try:
            result = await self._flush()
        except Exception as exc:
            logger.exception("Save flush for %s failed unexpectedly", self.uid)
            result = SaveResult(success=False, error=str(exc) or type(exc).__name__)
        if not future.done():
            future.set_result(result)
        self._task = None
        if self._pending is not None and self._timer is None:
            self._start_flush()

    # -------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------
    async def _flush(self) -> SaveResult:
        previous = self.last_acknowledged
        current = self.current_shape()

        changed = current.changed_fields(previous)
        acknowledged_deletes = previous.pending_deletes if previous is not None else ()
        deletes = [f for f in current.pending_deletes if f not in acknowledged_deletes]
        media_changed = self.side_records_enabled and current.media_changed(previous)

        if not changed and not deletes and not media_changed:
            logger.debug("Save for %s skipped: nothing changed", self.uid)
            return SaveResult(success=True, skipped=True)

        try:
            # Side-records are written before the document that drops the
            # inline copies.
            if media_changed:
                written = await self.media_store.diff_write(
                    self.uid,
                    previous.event_media if previous is not None else {},
                    current.event_media,
                )
                if written is False:
                    current = replace(
                        current,
                        events=merge_media(current.events, current.event_media),
                        event_media={},
                    )
                    if "events" not in changed:
                        changed.append("events")
            if changed or deletes:
                await self.gateway.set(
                    user_path(self.uid), self._payload(current, changed, deletes), merge=True
                )
        except GatewayError as exc:
            logger.warning("Save for %s failed (%s): %s", self.uid, exc.kind, exc)
            return SaveResult(success=False, error=str(exc))

        self.last_acknowledged = current.copy()
        logger.debug("Saved %s for %s", changed or "media", self.uid)
        return SaveResult(success=True, changed_fields=tuple(changed))

    @staticmethod
    def _payload(
        shape: PersistedShape, changed: list[str], deletes: list[str]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {name: shape.value(name) for name in changed}
        for name in deletes:
            payload[name] = DELETE_FIELD
        payload["metadata"] = {
            "totalPlayers": len(shape.player_database),
            "lastUpload": datetime.now(UTC).isoformat(),
        }
        return payload
