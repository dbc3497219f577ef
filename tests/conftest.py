"""Shared fixtures: fake BlueZ proxies for driving the discovery state machine"""
import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bluez_objects import classify_interface


@pytest.fixture
def make_proxy():
    """Build a proxy double with cached properties and async call mocks."""

    def _make(interface, path, **properties):
        proxy = MagicMock()
        proxy.path = path
        proxy.interface = interface
        proxy.kind = classify_interface(interface)
        proxy.get_property.side_effect = properties.get
        proxy.set_property = AsyncMock()
        proxy.call_method = AsyncMock(return_value=[])
        return proxy

    return _make


@pytest.fixture
def settle():
    """Let spawned tasks run to completion (sleeps are faked, so a few turns suffice)."""

    async def _settle(turns=20):
        for _ in range(turns):
            await asyncio.sleep(0)

    return _settle
