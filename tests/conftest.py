"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from rostersync.database.models import Base
from rostersync.gateway.documents import DocumentGateway
from rostersync.gateway.rules import AllianceRulesPolicy, Principal

OWNER_EMAIL = "owner@example.com"


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with the ``documents`` table.

    Uses StaticPool so every worker thread (``asyncio.to_thread`` inside
    ``run_db``) shares the same in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def alice() -> Principal:
    return Principal(uid="alice", email="alice@example.com", display_name="Alice")


@pytest.fixture
def bob() -> Principal:
    return Principal(uid="bob", email="bob@example.com", display_name="Bob")


@pytest.fixture
def owner() -> Principal:
    return Principal(uid="owner", email=OWNER_EMAIL, display_name="Owner")


@pytest.fixture
def open_gateway(db_engine: Engine) -> DocumentGateway:
    """Gateway that allows everything (no principal)."""
    return DocumentGateway(db_engine)


@pytest.fixture
def rules_gateway(db_engine: Engine) -> DocumentGateway:
    """Unauthenticated gateway enforcing the production rules."""
    return DocumentGateway(db_engine, policy=AllianceRulesPolicy(OWNER_EMAIL))
