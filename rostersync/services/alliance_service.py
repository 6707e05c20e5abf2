"""
rostersync.services.alliance_service — Alliance & Invitation Workflows
=======================================================================

Every user-facing alliance action returns an :class:`OperationResult`
instead of raising:

* state violations (already in an alliance, invitation already answered,
  cooldown active) → ``success=False`` with an ``error_key`` the UI can
  translate;
* gateway failures → ``success=False`` with ``error`` set.

Invitation writes and the sender's ``inviteThrottle`` update are
committed in one batch, so the cooldown can never drift from the
invitations actually sent.

Invitation lifecycle::

    pending ──accept──▶ accepted
       │
       ├──reject──▶ rejected
       └──revoke──▶ (deleted)
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rostersync.constants import (
    INVITATIONS_COLLECTION,
    MAX_ALLIANCE_NAME_LENGTH,
    PLAYER_SOURCE_ALLIANCE,
    PLAYER_SOURCE_PERSONAL,
    PLAYER_SOURCES,
    alliance_path,
    invitation_path,
    user_path,
)
from rostersync.engine.observers import EventChannel
from rostersync.engine.schema import sanitize_player_database
from rostersync.engine.throttle import InvitationThrottle, now_ms
from rostersync.gateway.documents import DELETE_FIELD
from rostersync.gateway.errors import GatewayError
from rostersync.services.reconciliation_service import MembershipReconciler, member_entry

if TYPE_CHECKING:
    from rostersync.engine.schema import UserRecord
    from rostersync.gateway.documents import DocumentGateway, DocumentSnapshot

__all__ = ["AllianceService", "OperationResult"]

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class OperationResult:
    success: bool
    error_key: str | None = None
    error: str | None = None
    retry_after_ms: int = 0
    data: Any = None


def _failed(exc: GatewayError) -> OperationResult:
    return OperationResult(success=False, error=str(exc))


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AllianceService:
    """Alliance membership and invitations for the signed-in user.

    Parameters
    ----------
    gateway:
        Gateway bound to the signed-in principal.
    record_provider:
        Returns the session's :class:`UserRecord`; alliance fields on it are
        updated in place after successful writes.
    throttle:
        The sender's invitation throttle.
    reconciler:
        Membership reconciler for the same principal.
    changed:
        Channel notified whenever the local alliance view changes.
    clock:
        Milliseconds since the epoch.
    """

    def __init__(
        self,
        gateway: DocumentGateway,
        record_provider: Callable[[], UserRecord],
        *,
        throttle: InvitationThrottle,
        reconciler: MembershipReconciler,
        changed: EventChannel | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if gateway.principal is None:
            raise ValueError("AllianceService needs a signed-in principal")
        self.gateway = gateway
        self.principal = gateway.principal
        self.record_provider = record_provider
        self.throttle = throttle
        self.reconciler = reconciler
        self.changed = changed or EventChannel("alliance_data_changed")
        self.clock = clock

        self.alliance: dict[str, Any] | None = None
        self.pending_invitations: list[dict[str, Any]] = []
        self.sent_invitations: list[dict[str, Any]] = []

    @property
    def record(self) -> UserRecord:
        return self.record_provider()

    @property
    def members(self) -> dict[str, Any]:
        if not self.alliance:
            return {}
        return self.alliance.get("members") or {}

    def _set_local_alliance(self, alliance_id: str | None, name: str | None) -> None:
        record = self.record
        record.alliance_id = alliance_id
        record.alliance_name = name if alliance_id else None
        if alliance_id is None:
            record.player_source = PLAYER_SOURCE_PERSONAL

    # -------------------------------------------------------------------
    # Alliance lifecycle
    # -------------------------------------------------------------------
    async def create_alliance(self, name: str) -> OperationResult:
        name = (name or "").strip()
        if not name or len(name) > MAX_ALLIANCE_NAME_LENGTH:
            return OperationResult(
                success=False,
                error_key="invalid_alliance_name",
                error=f"Alliance name must be 1-{MAX_ALLIANCE_NAME_LENGTH} characters",
            )
        if self.record.alliance_id:
            return OperationResult(success=False, error_key="already_in_alliance")

        uid = self.principal.uid
        alliance_id = uuid.uuid4().hex
        alliance = {
            "name": name,
            "createdBy": uid,
            "createdAt": _now_iso(),
            "members": {uid: member_entry(self.principal.email, role="admin")},
            "playerDatabase": {},
            "metadata": {"totalPlayers": 0, "lastUpload": None},
        }
        batch = self.gateway.batch()
        batch.set(alliance_path(alliance_id), alliance)
        batch.set(user_path(uid), {"allianceId": alliance_id, "allianceName": name}, merge=True)
        try:
            await batch.commit()
        except GatewayError as exc:
            logger.warning("Creating alliance %r for %s failed: %s", name, uid, exc)
            return _failed(exc)

        self._set_local_alliance(alliance_id, name)
        self.alliance = alliance
        logger.info("User %s created alliance %s (%s)", uid, alliance_id, name)
        self.changed.publish()
        return OperationResult(success=True, data={"allianceId": alliance_id})

    async def leave_alliance(self) -> OperationResult:
        alliance_id = self.record.alliance_id
        if not alliance_id:
            return OperationResult(success=False, error_key="not_in_alliance")
        uid = self.principal.uid

        try:
            await self.gateway.update(alliance_path(alliance_id), {f"members.{uid}": DELETE_FIELD})
        except GatewayError as exc:
            # The user document is authoritative for the user's own view.
            logger.warning("Removing %s from alliance %s failed: %s", uid, alliance_id, exc)

        try:
            await self.gateway.set(
                user_path(uid),
                {"allianceId": None, "allianceName": None, "playerSource": PLAYER_SOURCE_PERSONAL},
                merge=True,
            )
        except GatewayError as exc:
            return _failed(exc)

        self._set_local_alliance(None, None)
        self.alliance = None
        logger.info("User %s left alliance %s", uid, alliance_id)
        self.changed.publish()
        return OperationResult(success=True)

    async def load_alliance_data(self) -> OperationResult:
        """Refresh the local alliance view and repair membership."""
        alliance_id = self.record.alliance_id
        if not alliance_id:
            self.alliance = None
            return OperationResult(success=True)

        try:
            snapshot = await self.gateway.get(alliance_path(alliance_id))
        except GatewayError as exc:
            logger.warning("Loading alliance %s failed: %s", alliance_id, exc)
            return _failed(exc)
        if not snapshot.exists:
            logger.warning("Alliance %s no longer exists", alliance_id)
            self.alliance = None
            self.changed.publish()
            return OperationResult(success=False, error_key="alliance_not_found")

        data = snapshot.data
        members = dict(data.get("members") or {})
        uid = self.principal.uid
        if uid not in members:
            result = await self.reconciler.ensure_self_membership(alliance_id, members)
            if result.success:
                members[uid] = member_entry(self.principal.email)
        members = await self.reconciler.reconcile_from_accepted_invitations(alliance_id, members)

        self.alliance = {**data, "members": members}
        if data.get("name") and data["name"] != self.record.alliance_name:
            self.record.alliance_name = data["name"]
        self.changed.publish()
        return OperationResult(success=True, data=self.alliance)

    async def set_player_source(self, source: str) -> OperationResult:
        if source not in PLAYER_SOURCES:
            return OperationResult(success=False, error_key="invalid_player_source")
        if source == PLAYER_SOURCE_ALLIANCE and not self.record.alliance_id:
            return OperationResult(success=False, error_key="not_in_alliance")
        try:
            await self.gateway.set(
                user_path(self.principal.uid), {"playerSource": source}, merge=True
            )
        except GatewayError as exc:
            return _failed(exc)
        self.record.player_source = source
        return OperationResult(success=True)

    # -------------------------------------------------------------------
    # Shared roster
    # -------------------------------------------------------------------
    @property
    def alliance_player_database(self) -> dict[str, Any]:
        if not self.alliance:
            return {}
        return self.alliance.get("playerDatabase") or {}

    async def upload_alliance_player_database(self, players: Mapping[str, Any]) -> OperationResult:
        """Replace the alliance's shared roster.  Members only."""
        alliance_id = self.record.alliance_id
        if not alliance_id:
            return OperationResult(success=False, error_key="not_in_alliance")
        if self.alliance is None:
            loaded = await self.load_alliance_data()
            if not loaded.success:
                return loaded
        uid = self.principal.uid
        if uid not in self.members:
            return OperationResult(success=False, error_key="not_alliance_member")

        roster = sanitize_player_database(players)
        metadata = {
            "totalPlayers": len(roster),
            "lastUpload": _now_iso(),
            "uploadedBy": uid,
        }
        try:
            await self.gateway.update(
                alliance_path(alliance_id), {"playerDatabase": roster, "metadata": metadata}
            )
        except GatewayError as exc:
            logger.warning("Uploading roster to alliance %s failed: %s", alliance_id, exc)
            return _failed(exc)

        self.alliance = {**self.alliance, "playerDatabase": roster, "metadata": metadata}
        logger.info("User %s uploaded %d player(s) to alliance %s", uid, len(roster), alliance_id)
        self.changed.publish()
        return OperationResult(success=True, data={"totalPlayers": len(roster)})

    # -------------------------------------------------------------------
    # Invitations (sender side)
    # -------------------------------------------------------------------
    async def send_invitation(self, email: str) -> OperationResult:
        alliance_id = self.record.alliance_id
        if not alliance_id:
            return OperationResult(success=False, error_key="not_in_alliance")
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            return OperationResult(success=False, error_key="invalid_email")
        if email == self.principal.normalized_email:
            return OperationResult(success=False, error_key="cannot_invite_self")
        if any(
            str(m.get("email") or "").lower() == email
            for m in self.members.values() if isinstance(m, dict)
        ):
            return OperationResult(success=False, error_key="already_member")

        try:
            sent = await self.gateway.query(
                INVITATIONS_COLLECTION, [("invitedBy", "==", self.principal.uid)]
            )
        except GatewayError as exc:
            return _failed(exc)
        for snapshot in sent:
            data = snapshot.data or {}
            if (
                data.get("allianceId") == alliance_id
                and data.get("invitedEmail") == email
                and data.get("status") == STATUS_PENDING
            ):
                return OperationResult(success=False, error_key="invitation_already_pending")

        invitation_id = uuid.uuid4().hex
        invitation = {
            "allianceId": alliance_id,
            "allianceName": self.record.alliance_name,
            "invitedEmail": email,
            "invitedUserId": None,
            "invitedBy": self.principal.uid,
            "invitedByEmail": self.principal.normalized_email,
            "status": STATUS_PENDING,
            "createdAt": _now_iso(),
            "respondedAt": None,
        }
        return await self._throttled_write(
            invitation_id, lambda batch: batch.set(invitation_path(invitation_id), invitation)
        )

    async def resend_invitation(self, invitation_id: str) -> OperationResult:
        _snapshot, problem = await self._own_pending_invitation(invitation_id)
        if problem is not None:
            return problem
        stamp = _now_iso()
        return await self._throttled_write(
            invitation_id,
            lambda batch: batch.update(
                invitation_path(invitation_id), {"createdAt": stamp, "resentAt": stamp}
            ),
        )

    async def revoke_invitation(self, invitation_id: str) -> OperationResult:
        snapshot, problem = await self._own_pending_invitation(invitation_id)
        if problem is not None:
            return problem
        try:
            await self.gateway.delete(snapshot.path)
        except GatewayError as exc:
            return _failed(exc)
        logger.info("Invitation %s revoked by %s", invitation_id, self.principal.uid)
        return OperationResult(success=True)

    async def load_sent_invitations(self) -> OperationResult:
        """Invitations the signed-in user sent for the current alliance, newest first."""
        alliance_id = self.record.alliance_id
        if not alliance_id:
            self.sent_invitations = []
            return OperationResult(success=True, data=[])
        try:
            snapshots = await self.gateway.query(
                INVITATIONS_COLLECTION, [("invitedBy", "==", self.principal.uid)]
            )
        except GatewayError as exc:
            return _failed(exc)
        sent = [
            {"id": s.id, **s.data}
            for s in snapshots
            if s.data.get("allianceId") == alliance_id
        ]
        sent.sort(key=lambda inv: str(inv.get("createdAt") or ""), reverse=True)
        self.sent_invitations = sent
        return OperationResult(success=True, data=list(sent))

    async def _throttled_write(self, invitation_id: str, stage) -> OperationResult:
        decision = self.throttle.evaluate(self.clock())
        if not decision.allowed:
            return OperationResult(
                success=False,
                error_key="invite_cooldown",
                error=f"Try again in {decision.retry_after_ms // 1000 + 1}s",
                retry_after_ms=decision.retry_after_ms,
            )
        batch = self.gateway.batch()
        stage(batch)
        batch.set(user_path(self.principal.uid), {"inviteThrottle": decision.state}, merge=True)
        try:
            await batch.commit()
        except GatewayError as exc:
            logger.warning("Invitation %s write failed: %s", invitation_id, exc)
            return _failed(exc)

        self.throttle.apply(decision.state)
        self.record.invite_throttle = dict(decision.state)
        return OperationResult(
            success=True,
            data={"invitationId": invitation_id, "cooldownMs": decision.cooldown_ms},
        )

    async def _own_pending_invitation(
        self, invitation_id: str
    ) -> tuple[DocumentSnapshot | None, OperationResult | None]:
        try:
            snapshot = await self.gateway.get(invitation_path(invitation_id))
        except GatewayError as exc:
            return None, _failed(exc)
        if not snapshot.exists:
            return None, OperationResult(success=False, error_key="invitation_not_found")
        if snapshot.data.get("invitedBy") != self.principal.uid:
            return None, OperationResult(success=False, error_key="not_invitation_owner")
        if snapshot.data.get("status") != STATUS_PENDING:
            return None, OperationResult(success=False, error_key="invitation_already_responded")
        return snapshot, None

    # -------------------------------------------------------------------
    # Invitations (recipient side)
    # -------------------------------------------------------------------
    async def check_invitations(self) -> OperationResult:
        """Pending invitations addressed to the signed-in email."""
        email = self.principal.normalized_email
        if not email:
            self.pending_invitations = []
            return OperationResult(success=True, data=[])
        try:
            snapshots = await self.gateway.query(
                INVITATIONS_COLLECTION,
                [("invitedEmail", "==", email), ("status", "==", STATUS_PENDING)],
            )
        except GatewayError as exc:
            return _failed(exc)
        self.pending_invitations = [{"id": s.id, **s.data} for s in snapshots]
        return OperationResult(success=True, data=list(self.pending_invitations))

    async def _pending_for_me(
        self, invitation_id: str
    ) -> tuple[dict[str, Any] | None, OperationResult | None]:
        try:
            snapshot = await self.gateway.get(invitation_path(invitation_id))
        except GatewayError as exc:
            return None, _failed(exc)
        if not snapshot.exists:
            return None, OperationResult(success=False, error_key="invitation_not_found")
        if not self._is_recipient(snapshot.data):
            return None, OperationResult(success=False, error_key="not_invitation_recipient")
        if snapshot.data.get("status") != STATUS_PENDING:
            return None, OperationResult(success=False, error_key="invitation_already_responded")
        return snapshot.data, None

    def _is_recipient(self, invitation: dict[str, Any]) -> bool:
        invited_uid = invitation.get("invitedUserId")
        if invited_uid:
            return invited_uid == self.principal.uid
        email = str(invitation.get("invitedEmail") or "").lower()
        return bool(email) and email == self.principal.normalized_email

    def _forget_invitation(self, invitation_id: str) -> None:
        self.pending_invitations = [
            inv for inv in self.pending_invitations if inv.get("id") != invitation_id
        ]

    async def accept_invitation(self, invitation_id: str) -> OperationResult:
        invitation, problem = await self._pending_for_me(invitation_id)
        if problem is not None:
            return problem
        alliance_id = invitation.get("allianceId")
        current = self.record.alliance_id
        if current and current != alliance_id:
            return OperationResult(success=False, error_key="already_in_alliance")

        uid = self.principal.uid
        name = invitation.get("allianceName")
        batch = self.gateway.batch()
        batch.update(
            invitation_path(invitation_id),
            {"status": STATUS_ACCEPTED, "invitedUserId": uid, "respondedAt": _now_iso()},
        )
        batch.set(user_path(uid), {"allianceId": alliance_id, "allianceName": name}, merge=True)
        try:
            await batch.commit()
        except GatewayError as exc:
            logger.warning("Accepting invitation %s failed: %s", invitation_id, exc)
            return _failed(exc)

        self._set_local_alliance(alliance_id, name)
        self._forget_invitation(invitation_id)
        logger.info("User %s accepted invitation %s to alliance %s", uid, invitation_id, alliance_id)

        # A denied membership write is repaired by reconciliation on load.
        membership = await self.reconciler.ensure_self_membership(alliance_id)
        await self.load_alliance_data()
        return OperationResult(
            success=True,
            data={"allianceId": alliance_id, "membershipWritten": membership.success},
        )

    async def reject_invitation(self, invitation_id: str) -> OperationResult:
        invitation, problem = await self._pending_for_me(invitation_id)
        if problem is not None:
            return problem
        try:
            await self.gateway.update(
                invitation_path(invitation_id),
                {
                    "status": STATUS_REJECTED,
                    "invitedUserId": self.principal.uid,
                    "respondedAt": _now_iso(),
                },
            )
        except GatewayError as exc:
            return _failed(exc)
        self._forget_invitation(invitation_id)
        logger.info("User %s rejected invitation %s", self.principal.uid, invitation_id)
        return OperationResult(success=True)
