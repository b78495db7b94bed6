"""
Pytest fixtures for cl-fakechan-audit tests.

Provides mock plugin and RPC fixtures plus sample channels and forwards.
"""

import pytest
import os
import sys
from unittest.mock import MagicMock

# Add modules to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.channel_id import ShortChannelId
from modules.loss_quantifier import ForwardingEvent


SCID_A = "700000x1x0"
SCID_B = "700001x2x1"
SCID_C = "700002x3x0"


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def scid_a():
    return ShortChannelId.parse(SCID_A)


@pytest.fixture
def scid_b():
    return ShortChannelId.parse(SCID_B)


@pytest.fixture
def scid_c():
    return ShortChannelId.parse(SCID_C)


def make_graph(capacities):
    """
    Build a listchannels side effect from {scid_text: amount_msat}.

    Channels missing from the dict are unknown to the graph.
    """
    def listchannels(short_channel_id=None, **kwargs):
        if short_channel_id not in capacities:
            return {"channels": []}
        amount = capacities[short_channel_id]
        return {"channels": [
            {"short_channel_id": short_channel_id, "direction": 0, "amount_msat": amount},
            {"short_channel_id": short_channel_id, "direction": 1, "amount_msat": amount},
        ]}
    return listchannels


def peer_channel(scid, total_msat, state="CHANNELD_NORMAL"):
    return {
        "peer_id": "02" + "a" * 64,
        "short_channel_id": scid,
        "state": state,
        "total_msat": total_msat,
    }


def raw_forward(in_channel, out_channel, in_msat, out_msat, fee_msat=None,
                status="settled", created_index=None):
    fwd = {
        "in_channel": in_channel,
        "out_channel": out_channel,
        "in_msat": in_msat,
        "out_msat": out_msat,
        "status": status,
        "received_time": 1700000000.5,
        "resolved_time": 1700000001.0,
    }
    if fee_msat is not None:
        fwd["fee_msat"] = fee_msat
    if created_index is not None:
        fwd["created_index"] = created_index
    return fwd


@pytest.fixture
def mock_rpc():
    """
    Create a mock RPC interface.

    Default node: one channel A of 500,000,000 msat that the graph agrees
    with, and no forwards.
    """
    rpc = MagicMock()
    rpc.listpeerchannels.return_value = {"channels": [peer_channel(SCID_A, 500_000_000)]}
    rpc.listchannels.side_effect = make_graph({SCID_A: 500_000_000})
    rpc.listforwards.return_value = {"forwards": []}
    return rpc


@pytest.fixture
def make_event():
    """Factory for ForwardingEvent with fee defaulting to in - out."""
    def _make(in_channel, out_channel, in_msat, out_msat, fee_msat=None):
        return ForwardingEvent(
            in_channel=ShortChannelId.coerce(in_channel),
            out_channel=ShortChannelId.coerce(out_channel),
            in_msat=in_msat,
            out_msat=out_msat,
            fee_msat=in_msat - out_msat if fee_msat is None else fee_msat,
        )
    return _make
