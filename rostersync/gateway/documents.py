"""
rostersync.gateway.documents — Remote Document Gateway
=======================================================

The capability the sync engine uses to talk to the document store.
Documents are addressed by slash-separated paths with an even number of
segments (``users/u1``, ``users/u1/event_media/desert_storm``).

Operations:

* ``get(path)``                — snapshot, ``exists=False`` when absent
* ``set(path, data, merge=…)`` — overwrite, or replace only the given
  top-level fields when ``merge=True``
* ``update(path, fields)``     — dotted field paths on an existing document
* ``delete(path)``
* ``batch()``                  — all-or-nothing multi-document write
* ``query(collection, where)`` — equality / range filters

:data:`DELETE_FIELD` as a value removes the field.  Every operation is
checked against the configured :class:`~rostersync.gateway.rules.AccessPolicy`
for the bound principal; denials raise
``GatewayError(ErrorKind.PERMISSION_DENIED)`` and leave the store
untouched.

The SQLAlchemy work is synchronous and runs through
:func:`~rostersync.database.engine.run_db`.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rostersync.database.engine import get_session, run_db
from rostersync.database.models import Document
from rostersync.gateway.errors import ErrorKind, GatewayError, classify_error
from rostersync.gateway.rules import AccessPolicy, AccessRequest, AllowAllPolicy, Principal

__all__ = [
    "DELETE_FIELD",
    "DocumentGateway",
    "DocumentSnapshot",
    "WriteBatch",
    "split_path",
]

logger = logging.getLogger(__name__)


class _DeleteField:
    """Sentinel: remove this field on write."""

    _instance: _DeleteField | None = None

    def __new__(cls) -> _DeleteField:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"

    def __deepcopy__(self, memo: dict) -> _DeleteField:
        return self


DELETE_FIELD = _DeleteField()

_RANGE_OPS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


# ---------------------------------------------------------------------------
# Snapshots & path helpers
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    path: str
    data: dict[str, Any] | None

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]


def split_path(path: str) -> tuple[str, str]:
    """Return ``(collection, doc_id)`` for a document path.

    Raises
    ------
    ValueError
        If *path* does not address a document (odd segment count).
    """
    segments = [s for s in path.split("/") if s]
    if not segments or len(segments) % 2 != 0:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def _get_field(data: dict[str, Any], dotted: str) -> Any:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _merge_fields(existing: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(existing)
    for key, value in fields.items():
        if value is DELETE_FIELD:
            merged.pop(key, None)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _strip_sentinels(data: dict[str, Any]) -> dict[str, Any]:
    return {k: copy.deepcopy(v) for k, v in data.items() if v is not DELETE_FIELD}


def _update_fields(existing: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    updated = copy.deepcopy(existing)
    for dotted, value in fields.items():
        parts = dotted.split(".")
        node = updated
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    break
                child = {}
                node[part] = child
            node = child
        else:
            if value is DELETE_FIELD:
                node.pop(parts[-1], None)
            else:
                node[parts[-1]] = copy.deepcopy(value)
    return updated


# ---------------------------------------------------------------------------
# Batched writes
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class _WriteOp:
    kind: str  # "set" | "update" | "delete"
    path: str
    fields: dict[str, Any] | None = None
    merge: bool = False


class WriteBatch:
    """Collects writes and commits them atomically.

    Usage::

        batch = gateway.batch()
        batch.set("invitations/abc", invitation)
        batch.update("users/u1", {"inviteThrottle": state})
        await batch.commit()
    """

    def __init__(self, gateway: DocumentGateway) -> None:
        self._gateway = gateway
        self._ops: list[_WriteOp] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> WriteBatch:
        split_path(path)
        self._ops.append(_WriteOp("set", path, dict(data), merge))
        return self

    def update(self, path: str, fields: dict[str, Any]) -> WriteBatch:
        split_path(path)
        self._ops.append(_WriteOp("update", path, dict(fields)))
        return self

    def delete(self, path: str) -> WriteBatch:
        split_path(path)
        self._ops.append(_WriteOp("delete", path))
        return self

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("WriteBatch already committed")
        self._committed = True
        if not self._ops:
            return
        await self._gateway._commit(list(self._ops))


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class DocumentGateway:
    """Document-store capability bound to one principal.

    Parameters
    ----------
    engine:
        SQLAlchemy engine backing the ``documents`` table.
    principal:
        The signed-in account, or ``None`` before authentication.
    policy:
        Authorization rules; defaults to :class:`AllowAllPolicy`.
    """

    def __init__(
        self,
        engine: Engine,
        principal: Principal | None = None,
        policy: AccessPolicy | None = None,
    ) -> None:
        self.engine = engine
        self.principal = principal
        self.policy: AccessPolicy = policy or AllowAllPolicy()

    def with_principal(self, principal: Principal | None) -> DocumentGateway:
        """Return a gateway over the same store acting for *principal*."""
        return DocumentGateway(self.engine, principal, self.policy)

    # -------------------------------------------------------------------
    # Public async API
    # -------------------------------------------------------------------
    async def get(self, path: str) -> DocumentSnapshot:
        split_path(path)
        return await run_db(self._guard, self._get_sync, path, path=path)

    async def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        await self.batch().set(path, data, merge=merge).commit()

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self.batch().update(path, fields).commit()

    async def delete(self, path: str) -> None:
        await self.batch().delete(path).commit()

    async def query(
        self,
        collection: str,
        where: list[tuple[str, str, Any]] | None = None,
    ) -> list[DocumentSnapshot]:
        clauses = list(where or [])
        for _field, op, _value in clauses:
            if op != "==" and op not in _RANGE_OPS:
                raise ValueError(f"Unsupported query operator: {op!r}")
        return await run_db(self._guard, self._query_sync, collection, clauses, path=collection)

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def _commit(self, ops: list[_WriteOp]) -> None:
        path = ops[0].path if len(ops) == 1 else None
        await run_db(self._guard, self._commit_sync, ops, path=path)

    # -------------------------------------------------------------------
    # Synchronous internals (run on a worker thread)
    # -------------------------------------------------------------------
    def _guard(self, func, *args, path: str | None = None):
        try:
            return func(*args)
        except GatewayError:
            raise
        except SQLAlchemyError as exc:
            logger.warning("Document store failure at %s: %s", path, exc)
            raise GatewayError(ErrorKind.TRANSIENT, str(exc), path=path) from exc
        except Exception as exc:
            error = classify_error(exc, path=path)
            logger.warning("Document store error at %s (%s): %s", path, error.kind, exc)
            raise error from exc

    def _authorize(self, session: Session, request: AccessRequest) -> None:
        request.lookup = lambda other: _read(session, other)
        if not self.policy.allows(request):
            uid = self.principal.uid if self.principal else None
            logger.debug("Denied %s on %s for %s", request.action, request.path, uid)
            raise GatewayError(
                ErrorKind.PERMISSION_DENIED,
                "Missing or insufficient permissions.",
                path=request.path,
            )

    def _get_sync(self, path: str) -> DocumentSnapshot:
        with Session(self.engine) as session:
            data = _read(session, path)
            self._authorize(
                session,
                AccessRequest(self.principal, "get", path, data=data, existing=data),
            )
            return DocumentSnapshot(path, data)

    def _query_sync(
        self, collection: str, clauses: list[tuple[str, str, Any]]
    ) -> list[DocumentSnapshot]:
        equality = {f: v for f, op, v in clauses if op == "=="}
        with Session(self.engine) as session:
            self._authorize(
                session,
                AccessRequest(self.principal, "list", collection, filters=equality),
            )
            rows = session.scalars(
                select(Document)
                .where(Document.collection == collection.strip("/"))
                .order_by(Document.path)
            ).all()
            results: list[DocumentSnapshot] = []
            for row in rows:
                data = row.data or {}
                if all(_matches(data, f, op, v) for f, op, v in clauses):
                    results.append(DocumentSnapshot(row.path, copy.deepcopy(data)))
            return results

    def _commit_sync(self, ops: list[_WriteOp]) -> None:
        with get_session(self.engine) as session:
            # Resolve every op against a local overlay first so that a denial
            # anywhere leaves the store untouched.
            overlay: dict[str, dict[str, Any] | None] = {}

            def current(p: str) -> dict[str, Any] | None:
                if p in overlay:
                    return overlay[p]
                return _read(session, p)

            for op in ops:
                existing = current(op.path)
                if op.kind == "delete":
                    action, new_data = "delete", None
                elif op.kind == "update":
                    if existing is None:
                        raise GatewayError(
                            ErrorKind.NOT_FOUND, f"No document to update: {op.path}", path=op.path
                        )
                    action, new_data = "update", _update_fields(existing, op.fields or {})
                elif op.merge and existing is not None:
                    action, new_data = "update", _merge_fields(existing, op.fields or {})
                else:
                    action = "create" if existing is None else "update"
                    new_data = _strip_sentinels(op.fields or {})
                self._authorize(
                    session,
                    AccessRequest(self.principal, action, op.path, data=new_data, existing=existing),
                )
                overlay[op.path] = new_data

            for path, data in overlay.items():
                _write(session, path, data)


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------
def _read(session: Session, path: str) -> dict[str, Any] | None:
    row = session.get(Document, path.strip("/"))
    if row is None:
        return None
    return copy.deepcopy(row.data or {})


def _write(session: Session, path: str, data: dict[str, Any] | None) -> None:
    key = path.strip("/")
    row = session.get(Document, key)
    if data is None:
        if row is not None:
            session.delete(row)
        return
    if row is None:
        collection, doc_id = split_path(key)
        session.add(Document(path=key, collection=collection, doc_id=doc_id, data=data))
    else:
        row.data = data


def _matches(data: dict[str, Any], field: str, op: str, value: Any) -> bool:
    actual = _get_field(data, field)
    if op == "==":
        return actual == value
    if actual is None:
        return False
    try:
        return _RANGE_OPS[op](actual, value)
    except TypeError:
        return False
