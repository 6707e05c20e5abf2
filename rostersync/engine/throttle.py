"""
rostersync.engine.throttle — Escalating invitation cooldown
============================================================

The first ``free_invites`` invitations are free.  Every invitation after
that puts the sender on a cooldown that grows by ``cooldown_ms`` per
overtime invite::

    cooldownUntilMs = now + cooldown_ms * max(0, sentCount - free_invites)

While ``now < cooldownUntilMs`` further invitations are refused.  The
persisted state (``inviteThrottle`` on the user document) is written in
the same batch as the invitation, so :meth:`InvitationThrottle.evaluate`
is pure and :meth:`InvitationThrottle.apply` adopts the new state only
once that batch has committed.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class ThrottleResult:
    allowed: bool
    retry_after_ms: int = 0
    cooldown_ms: int = 0
    state: dict[str, int] = field(default_factory=dict)


class InvitationThrottle:
    """Per-sender invitation rate limiter."""

    def __init__(
        self,
        free_invites: int = 3,
        cooldown_ms: int = 60_000,
        state: Mapping[str, Any] | None = None,
    ) -> None:
        self.free_invites = free_invites
        self.cooldown_ms = cooldown_ms
        self.sent_count = 0
        self.cooldown_until_ms = 0
        if state:
            self.apply(state)

    @property
    def state(self) -> dict[str, int]:
        return {"sentCount": self.sent_count, "cooldownUntilMs": self.cooldown_until_ms}

    def evaluate(self, now: int | None = None) -> ThrottleResult:
        """Decide whether one more invitation may go out at *now*."""
        if now is None:
            now = now_ms()
        if now < self.cooldown_until_ms:
            return ThrottleResult(
                allowed=False,
                retry_after_ms=self.cooldown_until_ms - now,
                state=self.state,
            )
        sent = self.sent_count + 1
        overtime = max(0, sent - self.free_invites)
        cooldown = overtime * self.cooldown_ms
        return ThrottleResult(
            allowed=True,
            cooldown_ms=cooldown,
            state={"sentCount": sent, "cooldownUntilMs": now + cooldown if overtime else 0},
        )

    def apply(self, state: Mapping[str, Any]) -> None:
        self.sent_count = max(0, int(state.get("sentCount") or 0))
        self.cooldown_until_ms = max(0, int(state.get("cooldownUntilMs") or 0))

    def check_and_consume(self, now: int | None = None) -> ThrottleResult:
        """:meth:`evaluate` and, if allowed, :meth:`apply` in one step."""
        result = self.evaluate(now)
        if result.allowed:
            self.apply(result.state)
        return result
