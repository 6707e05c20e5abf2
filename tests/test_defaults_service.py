"""
tests/test_defaults_service.py — Tests for the Global Defaults Publisher
=========================================================================
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from rostersync.engine.schema import normalize
from rostersync.gateway.errors import ErrorKind, GatewayError
from rostersync.services.defaults_service import (
    DEFAULTS_DOCUMENTS,
    DefaultsKind,
    GlobalDefaults,
    GlobalDefaultsPublisher,
)

OWNER_EMAIL = "owner@example.com"

T0 = 1_700_000_000_000
CONFIG_DOC = DEFAULTS_DOCUMENTS[DefaultsKind.CONFIG]
POSITIONS_DOC = DEFAULTS_DOCUMENTS[DefaultsKind.POSITIONS]


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _local_events():
    return normalize(None).events


class TestLoad:
    def test_non_owner_reads_nothing(self, rules_gateway, alice):
        async def _inner():
            publisher = GlobalDefaultsPublisher(rules_gateway.with_principal(alice), OWNER_EMAIL)
            result = await publisher.load("config", _local_events())
            assert result == GlobalDefaults(events={}, version=0)
            assert not (await rules_gateway.get(CONFIG_DOC)).exists
        run_async(_inner())

    def test_owner_publishes_when_missing(self, rules_gateway, owner):
        async def _inner():
            publisher = GlobalDefaultsPublisher(rules_gateway.with_principal(owner), OWNER_EMAIL)
            with patch("rostersync.services.defaults_service.now_ms", return_value=T0):
                result = await publisher.load(DefaultsKind.CONFIG, _local_events())
            assert result.version == T0
            assert set(result.events) == {"desert_storm", "canyon_battlefield"}
            stored = (await rules_gateway.get(CONFIG_DOC)).data
            assert stored["version"] == T0
            assert stored["events"]["desert_storm"][0]["name"] == "Bomb Squad"
        run_async(_inner())

    def test_owner_publishes_positions(self, rules_gateway, owner):
        async def _inner():
            publisher = GlobalDefaultsPublisher(rules_gateway.with_principal(owner), OWNER_EMAIL)
            result = await publisher.load(DefaultsKind.POSITIONS, _local_events())
            # Only events with positions are published
            assert set(result.events) == {"desert_storm"}
            assert result.events["desert_storm"]["Science Hub"] == [774, 656]
            assert (await rules_gateway.get(POSITIONS_DOC)).exists
        run_async(_inner())

    def test_version_never_goes_backwards(self, rules_gateway, open_gateway, owner):
        async def _inner():
            future_version = T0 + 10_000_000
            await open_gateway.set(CONFIG_DOC, {"events": {}, "version": future_version})
            publisher = GlobalDefaultsPublisher(rules_gateway.with_principal(owner), OWNER_EMAIL)
            with patch("rostersync.services.defaults_service.now_ms", return_value=T0):
                result = await publisher.load(DefaultsKind.CONFIG, _local_events())
            assert result.version == future_version
            assert result.events
        run_async(_inner())

    def test_existing_defaults_are_not_republished(self, open_gateway, owner):
        async def _inner():
            await open_gateway.set(CONFIG_DOC, {"events": {"x": [{"name": "HQ"}]}, "version": 5})
            publisher = GlobalDefaultsPublisher(open_gateway.with_principal(owner), OWNER_EMAIL)
            result = await publisher.load(DefaultsKind.CONFIG, _local_events())
            assert result.version == 5
            assert list(result.events) == ["x"]
            assert result.events["x"][0]["label"] == "HQ"
        run_async(_inner())

    def test_cache_keeps_higher_version(self, open_gateway, alice):
        async def _inner():
            publisher = GlobalDefaultsPublisher(open_gateway.with_principal(alice), OWNER_EMAIL)
            await open_gateway.set(POSITIONS_DOC, {"events": {"a": {"HQ": [1, 2]}}, "version": 5})
            await publisher.load("positions")
            await open_gateway.set(POSITIONS_DOC, {"events": {"a": {"HQ": [9, 9]}}, "version": 3})
            result = await publisher.load("positions")
            assert result.version == 5
            assert result.events["a"]["HQ"] == [1, 2]
        run_async(_inner())

    def test_read_failure_returns_cache(self, alice):
        gateway = MagicMock()
        gateway.principal = alice
        gateway.get = AsyncMock(side_effect=GatewayError(ErrorKind.TRANSIENT, "offline"))
        publisher = GlobalDefaultsPublisher(gateway, OWNER_EMAIL)
        assert run_async(publisher.load("config")) == GlobalDefaults()


class TestMaybePublish:
    def test_only_owner_publishes(self, open_gateway, alice, owner):
        async def _inner():
            as_alice = GlobalDefaultsPublisher(open_gateway.with_principal(alice), OWNER_EMAIL)
            assert await as_alice.maybe_publish("config", _local_events()) is False
            as_owner = GlobalDefaultsPublisher(open_gateway.with_principal(owner), OWNER_EMAIL.upper())
            assert as_owner.is_owner is True
            assert await as_owner.maybe_publish("config", _local_events()) is True
        run_async(_inner())

    def test_nothing_to_publish(self, open_gateway, owner):
        publisher = GlobalDefaultsPublisher(open_gateway.with_principal(owner), OWNER_EMAIL)
        assert run_async(publisher.maybe_publish("config", {"x": {"buildingConfig": []}})) is False

    def test_unconfigured_owner(self, open_gateway, owner):
        publisher = GlobalDefaultsPublisher(open_gateway.with_principal(owner), "")
        assert publisher.is_owner is False
