"""
Pytest fixtures for cl-funding-routes tests.

Provides mock plugin and RPC fixtures, a temporary database path,
and fake probe collaborators for exercising the router's decisions.
"""

import pytest
import tempfile
import os
import sys
from unittest.mock import MagicMock

# Add the package root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from funding_routes.config import Config
from funding_routes.models import ProbeHop, ProbeResult, Route, RouteHop


OUR_NODE_ID = "02" + "0" * 64
DESTINATION = "03" + "d" * 64


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    plugin.rpc.getinfo.return_value = {"id": OUR_NODE_ID, "blockheight": 800_000}
    return plugin


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def cfg(config):
    return config.snapshot()


@pytest.fixture
def destination():
    return DESTINATION


@pytest.fixture
def our_node_id():
    return OUR_NODE_ID


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "e" * 64,
    ]


@pytest.fixture
def funding_params(destination):
    """The request used by the end-to-end scenarios."""
    return {
        "cltv_delta": 40,
        "destination": destination,
        "tokens": 100_000,
        "max_fee": 1000,
    }


def make_route(fee_sats: int, tokens: int = 100_000, channel: str = "100x1x0",
               public_key: str = DESTINATION) -> Route:
    """A one-hop route paying fee_sats."""
    return Route(
        hops=[RouteHop(
            channel=channel,
            channel_capacity=1_000_000,
            fee_mtokens=0,
            forward_mtokens=tokens * 1000,
            public_key=public_key,
            timeout=800_040,
        )],
        fee_mtokens=fee_sats * 1000,
        mtokens=(tokens + fee_sats) * 1000,
        timeout=800_040,
    )


def make_probe(route_maximum: int, channels=("200x1x0",), latency_ms: int = 10) -> ProbeResult:
    hops = tuple(
        ProbeHop(channel=ch, public_key=DESTINATION, fee_mtokens=0,
                 forward_mtokens=route_maximum * 1000, timeout=9)
        for ch in channels
    )
    return ProbeResult(hops=hops, route_maximum=route_maximum, latency_ms=latency_ms)


@pytest.fixture
def route_factory():
    return make_route


@pytest.fixture
def probe_factory():
    return make_probe
