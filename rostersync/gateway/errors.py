"""
rostersync.gateway.errors — Typed Gateway Failures
===================================================

Every failure that crosses the gateway boundary is a :class:`GatewayError`
carrying an :class:`ErrorKind`.  Callers branch on ``err.kind`` instead of
sniffing messages.

Errors raised by foreign code (a driver, a mocked client) are classified
once by :func:`classify_error`, which keeps the code/message heuristic the
hosted document store forces on its clients: a ``permission-denied`` code
or a "missing or insufficient permissions" message means the server's
authorization rules rejected the call.
"""

from __future__ import annotations

import enum

__all__ = ["ErrorKind", "GatewayError", "classify_error"]


class ErrorKind(enum.StrEnum):
    """Coarse cause of a gateway failure."""
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


class GatewayError(Exception):
    """A document-store operation failed."""

    def __init__(self, kind: ErrorKind, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.path = path

    @property
    def permission_denied(self) -> bool:
        return self.kind is ErrorKind.PERMISSION_DENIED

    def __repr__(self) -> str:
        return f"<GatewayError kind={self.kind.value} path={self.path!r} msg={str(self)!r}>"


_PERMISSION_CODES = frozenset({"permission-denied", "permission_denied", "unauthenticated"})
_PERMISSION_PHRASES = (
    "missing or insufficient permissions",
    "permission denied",
    "permission-denied",
)
_NOT_FOUND_CODES = frozenset({"not-found", "not_found"})


def classify_error(exc: BaseException, *, path: str | None = None) -> GatewayError:
    """Convert any exception into a :class:`GatewayError`.

    Already-typed errors pass through unchanged.  Otherwise the ``code``
    attribute is checked first, then the message text.
    """
    if isinstance(exc, GatewayError):
        return exc

    code = str(getattr(exc, "code", "") or "").strip().lower()
    message = str(exc) or type(exc).__name__
    lowered = message.lower()

    if code in _PERMISSION_CODES or any(p in lowered for p in _PERMISSION_PHRASES):
        kind = ErrorKind.PERMISSION_DENIED
    elif code in _NOT_FOUND_CODES:
        kind = ErrorKind.NOT_FOUND
    else:
        kind = ErrorKind.TRANSIENT
    return GatewayError(kind, message, path=path)
