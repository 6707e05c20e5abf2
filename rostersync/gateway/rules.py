"""
rostersync.gateway.rules — Server-Side Access Policies
=======================================================

The document store evaluates an :class:`AccessPolicy` before every read,
query and write.  A denial surfaces to clients as
``GatewayError(ErrorKind.PERMISSION_DENIED)``; the sync engine never sees
the rule itself, only the denial.

Two policies ship:

* :class:`AllowAllPolicy` — dev/test default.
* :class:`AllianceRulesPolicy` — the production rules.  Users own their
  subtree, alliance documents are writable by members only, invitations
  are visible to the two parties but answered only by the invitee, and
  shared defaults are writable by a single owner account.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from rostersync.constants import (
    ALLIANCES_COLLECTION,
    APP_CONFIG_COLLECTION,
    INVITATIONS_COLLECTION,
    USERS_COLLECTION,
    alliance_path,
    user_path,
)


READ_ACTIONS = frozenset({"get", "list"})
RESPONSE_FIELDS = ("status", "invitedUserId", "respondedAt")


@dataclass(frozen=True, slots=True)
class Principal:
    """The signed-in account a gateway acts for."""

    uid: str
    email: str = ""
    display_name: str = ""

    @property
    def normalized_email(self) -> str:
        return self.email.strip().lower()


@dataclass(slots=True)
class AccessRequest:
    """Everything a policy may inspect for one operation.

    ``data`` is the document as it would look after a write; ``existing``
    is the stored document (``None`` if absent).  ``filters`` is only set
    for ``list`` and holds the equality clauses of the query.  ``lookup``
    reads another document inside the same transaction.
    """

    principal: Principal | None
    action: str
    path: str
    data: dict[str, Any] | None = None
    existing: dict[str, Any] | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    lookup: Callable[[str], dict[str, Any] | None] = lambda _path: None

    @property
    def segments(self) -> list[str]:
        return [s for s in self.path.split("/") if s]


class AccessPolicy(Protocol):
    def allows(self, request: AccessRequest) -> bool: ...


class AllowAllPolicy:
    """Grant everything.  Used by tests and single-user deployments."""

    def allows(self, request: AccessRequest) -> bool:
        return True


class AllianceRulesPolicy:
    """Production authorization rules for the planner's document tree.

    Parameters
    ----------
    owner_email:
        The one account allowed to write ``app_config/**``.
    """

    def __init__(self, owner_email: str = "") -> None:
        self.owner_email = owner_email.strip().lower()

    def allows(self, request: AccessRequest) -> bool:
        segments = request.segments
        if not segments:
            return False
        root = segments[0]

        if root == APP_CONFIG_COLLECTION:
            return self._app_config(request)
        if request.principal is None:
            return False
        if root == USERS_COLLECTION:
            return self._users(request, segments)
        if root == ALLIANCES_COLLECTION:
            return self._alliances(request)
        if root == INVITATIONS_COLLECTION:
            return self._invitations(request)
        return False

    # -------------------------------------------------------------------
    # Per-collection rules
    # -------------------------------------------------------------------
    def _app_config(self, request: AccessRequest) -> bool:
        if request.action in READ_ACTIONS:
            return True
        principal = request.principal
        return bool(
            principal is not None
            and self.owner_email
            and principal.normalized_email == self.owner_email
        )

    def _users(self, request: AccessRequest, segments: list[str]) -> bool:
        if len(segments) < 2:
            # Listing the whole users collection is never allowed.
            return False
        return segments[1] == request.principal.uid

    def _alliances(self, request: AccessRequest) -> bool:
        uid = request.principal.uid
        if request.action in READ_ACTIONS:
            return True
        if request.action == "create":
            data = request.data or {}
            return data.get("createdBy") == uid and uid in (data.get("members") or {})
        existing = request.existing or {}
        if request.action == "delete":
            return existing.get("createdBy") == uid
        # update: only recognised members (or the creator) may write
        return uid in (existing.get("members") or {}) or existing.get("createdBy") == uid

    def _invitations(self, request: AccessRequest) -> bool:
        principal = request.principal
        if request.action == "list":
            return self._invitation_query(request)
        if request.action == "create":
            data = request.data or {}
            return data.get("invitedBy") == principal.uid and data.get("status") == "pending"
        if request.existing is None:
            # A missing invitation may be looked up by any signed-in user.
            return request.action == "get"
        existing = request.existing
        if request.action == "delete":
            return existing.get("invitedBy") == principal.uid
        invitee = _is_invitee(existing, principal)
        if not invitee and existing.get("invitedBy") != principal.uid:
            return False
        if request.action == "get":
            return True
        data = request.data or {}
        if invitee:
            # The invitee may only answer.
            return all(
                data.get(key) == existing.get(key)
                for key in set(data) | set(existing)
                if key not in RESPONSE_FIELDS
            )
        # The inviter may refresh a pending invitation but never answer it.
        return all(data.get(key) == existing.get(key) for key in RESPONSE_FIELDS)

    def _invitation_query(self, request: AccessRequest) -> bool:
        principal = request.principal
        filters = request.filters
        if filters.get("invitedBy") == principal.uid:
            return True
        if filters.get("invitedUserId") == principal.uid:
            return True
        if principal.normalized_email and filters.get("invitedEmail") == principal.normalized_email:
            return True
        alliance_id = filters.get("allianceId")
        if not alliance_id:
            return False
        alliance = request.lookup(alliance_path(alliance_id)) or {}
        if principal.uid in (alliance.get("members") or {}):
            return True
        if alliance.get("createdBy") == principal.uid:
            return True
        own = request.lookup(user_path(principal.uid)) or {}
        return own.get("allianceId") == alliance_id


def _is_invitee(invitation: dict[str, Any], principal: Principal) -> bool:
    if invitation.get("invitedUserId") and invitation.get("invitedUserId") == principal.uid:
        return True
    email = str(invitation.get("invitedEmail") or "").lower()
    return bool(email) and email == principal.normalized_email
