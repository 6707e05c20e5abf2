"""
rostersync.database.models — SQLAlchemy 2.0 Data Models
========================================================

The remote document store is backed by a single table.  Every document
(user records, event media side-records, alliances, invitations, shared
default layouts) is one row addressed by its slash-separated path.

Tables:
- documents — JSON documents keyed by path, grouped by parent collection
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all rostersync ORM models."""


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Documents: one row per stored document
# ---------------------------------------------------------------------------
class Document(Base):
    __tablename__ = "documents"

    # e.g. "users/u1/event_media/desert_storm"
    path: Mapped[str] = mapped_column(String(512), primary_key=True)
    # parent collection path, e.g. "users/u1/event_media"
    collection: Mapped[str] = mapped_column(String(512), nullable=False)
    doc_id: Mapped[str] = mapped_column(String(256), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )

    def __repr__(self) -> str:
        return f"<Document path={self.path!r}>"
