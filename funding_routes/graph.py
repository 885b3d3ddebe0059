"""
Channel graph and wallet state accessors for cl-funding-routes

Thin readers over lightningd RPC: channel descriptors, block height,
our node id and our local channels. No graph search happens here;
pathfinding is left to lightningd's getroute.
"""

from typing import Any, Dict, List, Optional, Tuple

from pyln.client import Plugin, RpcError

from .errors import FundingRouteError
from .models import ChannelDescriptor, ChannelPolicy, normalize_scid


def parse_msat(value: Any) -> int:
    """Accept both plain ints and legacy '1234msat' strings."""
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value.replace("msat", ""))
    return int(value)


class ChannelGraph:
    """Read-only access to the public graph and our own node."""

    def __init__(self, plugin: Plugin):
        self.plugin = plugin
        self._our_node_id: Optional[str] = None

    def get_our_node_id(self) -> str:
        if self._our_node_id is None:
            self._our_node_id = self.plugin.rpc.getinfo()["id"]
        return self._our_node_id

    def get_height(self) -> int:
        """Current block height as seen by lightningd."""
        return int(self.plugin.rpc.getinfo()["blockheight"])

    def get_channel(self, channel_id: str) -> ChannelDescriptor:
        """
        Fetch one public channel with both directional policies.

        Raises:
            FundingRouteError: 503 if the graph does not know the channel
        """
        scid = normalize_scid(channel_id)
        result = self.plugin.rpc.listchannels(short_channel_id=scid)
        halves = result.get("channels", [])
        if not halves:
            raise FundingRouteError(503, 'ExpectedChannelInGraph', {"channel": scid})

        policies = []
        capacity = 0
        for half in halves:
            capacity = max(capacity, parse_msat(half.get("amount_msat")) // 1000)
            htlc_max = half.get("htlc_maximum_msat")
            policies.append(ChannelPolicy(
                public_key=half["source"],
                to_public_key=half["destination"],
                base_fee_mtokens=int(half.get("base_fee_millisatoshi", 0)),
                fee_rate=int(half.get("fee_per_millionth", 0)),
                cltv_delta=int(half.get("delay", 0)),
                max_htlc_mtokens=parse_msat(htlc_max) if htlc_max is not None else None,
                is_disabled=not half.get("active", True),
            ))

        return ChannelDescriptor(id=scid, capacity=capacity, policies=policies)

    def find_edges(self, from_public_key: str, to_public_key: str) -> List[Tuple[str, int]]:
        """Directed edges from one node to another as (scid, direction) pairs."""
        result = self.plugin.rpc.listchannels(source=from_public_key)
        return [
            (normalize_scid(ch["short_channel_id"]), int(ch.get("direction", 0)))
            for ch in result.get("channels", [])
            if ch.get("destination") == to_public_key
        ]

    def get_local_channels(self) -> List[Dict[str, Any]]:
        """
        Our channels in normal state as {short_channel_id, peer_id, direction}.

        Uses listpeerchannels, falling back to listpeers on older nodes.
        """
        try:
            raw = self.plugin.rpc.listpeerchannels().get("channels", [])
        except RpcError:
            raw = []
            for peer in self.plugin.rpc.listpeers().get("peers", []):
                for ch in peer.get("channels", []):
                    raw.append(dict(ch, peer_id=peer.get("id")))

        channels = []
        for ch in raw:
            if ch.get("state") != "CHANNELD_NORMAL" or not ch.get("short_channel_id"):
                continue
            channels.append({
                "short_channel_id": normalize_scid(ch["short_channel_id"]),
                "peer_id": ch.get("peer_id"),
                "direction": int(ch.get("direction", 0)),
            })
        return channels
