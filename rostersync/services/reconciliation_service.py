"""
rostersync.services.reconciliation_service — Alliance Membership Reconciliation
================================================================================

The authoritative membership write is a field-path update of
``alliances/{id}.members.<uid>``.  Authorization rules only let existing
members write the alliance document, so a freshly accepted invitee is
often denied.  Accepted invitations are the second source of truth:

    1. Query ``invitations`` where ``status == accepted`` and
       ``allianceId == id``.
    2. If that query is denied, fall back to the invitations this user
       sent (``invitedBy == uid``) and received (``invitedUserId == uid``),
       filtered locally.
    3. Every accepted invitee missing from ``members`` is synthesized as a
       ``member``.
    4. The synthesized members are written back best-effort; failure is
       only logged.

The reconciled map is what the UI shows, even when step 4 is denied.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rostersync.constants import INVITATIONS_COLLECTION, alliance_path
from rostersync.gateway.errors import GatewayError

if TYPE_CHECKING:
    from rostersync.gateway.documents import DocumentGateway, DocumentSnapshot

__all__ = ["MembershipReconciler", "MembershipResult", "member_entry"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MembershipResult:
    success: bool
    permission_denied: bool = False
    error: str | None = None


def member_entry(email: str, joined_at: str | None = None, role: str = "member") -> dict[str, str]:
    return {
        "email": (email or "").strip().lower(),
        "role": role,
        "joinedAt": joined_at or datetime.now(UTC).isoformat(),
    }


class MembershipReconciler:
    """Keeps the signed-in user's view of alliance membership complete."""

    def __init__(self, gateway: DocumentGateway) -> None:
        if gateway.principal is None:
            raise ValueError("MembershipReconciler needs a signed-in principal")
        self.gateway = gateway
        self.principal = gateway.principal
        self.reconciled_count = 0

    async def ensure_self_membership(
        self,
        alliance_id: str,
        members: Mapping[str, Any] | None = None,
    ) -> MembershipResult:
        """Write ``members.<uid>`` for the signed-in user unless already present."""
        uid = self.principal.uid
        if members is not None and uid in members:
            return MembershipResult(success=True)
        try:
            await self.gateway.update(
                alliance_path(alliance_id),
                {f"members.{uid}": member_entry(self.principal.email)},
            )
        except GatewayError as exc:
            if exc.permission_denied:
                logger.warning(
                    "Membership write for %s in alliance %s denied; relying on reconciliation",
                    uid, alliance_id,
                )
                return MembershipResult(success=False, permission_denied=True, error=str(exc))
            logger.warning("Membership write for %s in alliance %s failed: %s", uid, alliance_id, exc)
            return MembershipResult(success=False, error=str(exc))
        logger.info("User %s recorded as member of alliance %s", uid, alliance_id)
        return MembershipResult(success=True)

    async def reconcile_from_accepted_invitations(
        self,
        alliance_id: str,
        members: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Return *members* completed with every accepted invitee."""
        reconciled = dict(members)
        invitations = await self._accepted_invitations(alliance_id)

        added: dict[str, dict[str, str]] = {}
        for snapshot in invitations:
            data = snapshot.data or {}
            invitee = data.get("invitedUserId")
            if not invitee or invitee in reconciled:
                continue
            entry = member_entry(
                str(data.get("invitedEmail") or ""),
                data.get("respondedAt") or data.get("createdAt"),
            )
            reconciled[invitee] = entry
            added[invitee] = entry

        if not added:
            return reconciled

        self.reconciled_count += len(added)
        logger.info(
            "Reconciled %d member(s) of alliance %s from accepted invitations",
            len(added), alliance_id,
        )
        try:
            await self.gateway.update(
                alliance_path(alliance_id),
                {f"members.{uid}": entry for uid, entry in added.items()},
            )
        except GatewayError as exc:
            logger.warning(
                "Could not persist reconciled members of alliance %s: %s", alliance_id, exc
            )
        return reconciled

    async def _accepted_invitations(self, alliance_id: str) -> list[DocumentSnapshot]:
        try:
            return await self.gateway.query(
                INVITATIONS_COLLECTION,
                [("status", "==", "accepted"), ("allianceId", "==", alliance_id)],
            )
        except GatewayError as exc:
            if not exc.permission_denied:
                logger.warning("Accepted-invitation query for %s failed: %s", alliance_id, exc)
                return []

        uid = self.principal.uid
        found: dict[str, DocumentSnapshot] = {}
        for field_name in ("invitedBy", "invitedUserId"):
            try:
                snapshots = await self.gateway.query(
                    INVITATIONS_COLLECTION, [(field_name, "==", uid)]
                )
            except GatewayError as exc:
                logger.warning("Invitation fallback query on %s failed: %s", field_name, exc)
                continue
            for snapshot in snapshots:
                data = snapshot.data or {}
                if data.get("allianceId") == alliance_id and data.get("status") == "accepted":
                    found[snapshot.path] = snapshot
        return list(found.values())
