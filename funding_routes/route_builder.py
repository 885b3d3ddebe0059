"""
Route construction for cl-funding-routes

Two jobs:
1. Turn a lightningd-style path (the list getroute returns and sendpay
   accepts) into the Route shape returned to RPC callers.
2. RouteSynthesizer: split a payment over probed disjoint paths and build
   each partial path backwards through the channel policies, the way
   lightningd computes amounts and delays for getroute.

Path entries are dicts:
    {"id", "channel", "direction", "amount_msat", "delay", "style"}
where amount_msat/delay are what is offered over that channel to "id".
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pyln.client import Plugin

from .graph import parse_msat
from .models import (
    ChannelDescriptor,
    ChannelPolicy,
    ProbeSummary,
    Route,
    RouteHop,
)


@dataclass
class PathEdge:
    """A channel traversed from policy.public_key to policy.to_public_key."""
    channel: str
    policy: ChannelPolicy


def channel_direction(from_public_key: str, to_public_key: str) -> int:
    """BOLT 7 direction bit: 0 when the source has the lesser node id."""
    return 0 if from_public_key.lower() < to_public_key.lower() else 1


def plan_path(edges: List[PathEdge], deliver_mtokens: int, final_cltv: int) -> List[Dict[str, Any]]:
    """
    Compute per-hop amounts and delays for a fixed sequence of edges.

    Walks backwards from the destination: each forwarding node adds the fee
    and CLTV delta of the channel it forwards over.
    """
    count = len(edges)
    if not count:
        return []

    amounts = [0] * count
    delays = [0] * count
    amounts[-1] = deliver_mtokens
    delays[-1] = final_cltv

    for i in range(count - 2, -1, -1):
        onward = edges[i + 1].policy
        amounts[i] = amounts[i + 1] + onward.fee_for(amounts[i + 1])
        delays[i] = delays[i + 1] + onward.cltv_delta

    return [
        {
            "id": edge.policy.to_public_key,
            "channel": edge.channel,
            "direction": channel_direction(edge.policy.public_key, edge.policy.to_public_key),
            "amount_msat": amounts[i],
            "delay": delays[i],
            "style": "tlv",
        }
        for i, edge in enumerate(edges)
    ]


def build_route(path: List[Dict[str, Any]], height: int,
                capacities: Optional[Dict[str, int]] = None,
                payment: Optional[str] = None,
                total_mtokens: Optional[int] = None,
                messages: Optional[List[Dict[str, str]]] = None) -> Route:
    """
    Convert a lightningd path into a Route.

    Each hop reports what its node forwards onward and the fee it keeps;
    the final hop keeps nothing. Timeouts are absolute heights.
    """
    capacities = capacities or {}
    amounts = [parse_msat(hop["amount_msat"]) for hop in path]
    hops = []

    for i, hop in enumerate(path):
        is_final = i == len(path) - 1
        forward_mtokens = amounts[i] if is_final else amounts[i + 1]
        expiry_delay = hop["delay"] if is_final else path[i + 1]["delay"]
        hops.append(RouteHop(
            channel=hop["channel"],
            channel_capacity=capacities.get(hop["channel"], 0),
            fee_mtokens=amounts[i] - forward_mtokens,
            forward_mtokens=forward_mtokens,
            public_key=hop.get("id"),
            timeout=height + int(expiry_delay),
        ))

    total_sent = amounts[0] if amounts else 0
    delivered = amounts[-1] if amounts else 0

    return Route(
        hops=hops,
        fee_mtokens=total_sent - delivered,
        mtokens=total_sent,
        timeout=height + int(path[0]["delay"]) if path else height,
        payment=payment,
        total_mtokens=total_mtokens,
        messages=list(messages or []),
    )


class RouteSynthesizer:
    """
    Converts probed multi-path liquidity into concrete disjoint routes.

    Probes are filled largest liquidity first until the amount is covered.
    If the probes cannot cover the amount, or a channel policy needed to
    price a path is missing, no routes are produced.
    """

    def __init__(self, plugin: Plugin):
        self.plugin = plugin

    def multi_path_payment(self, channels: List[ChannelDescriptor], cltv_delta: int,
                           destination: str, height: int, max_tokens: int, mtokens: int,
                           probes: List[ProbeSummary], payment: Optional[str] = None,
                           messages: Optional[List[Dict[str, str]]] = None) -> List[Route]:
        if max_tokens * 1000 < mtokens:
            return []

        by_id = {channel.id: channel for channel in channels}
        capacities = {channel.id: channel.capacity for channel in channels}

        allocations = []
        remaining = mtokens
        for probe in sorted(probes, key=lambda p: p.liquidity, reverse=True):
            if remaining <= 0:
                break
            part = min(probe.liquidity * 1000, remaining)
            if part <= 0:
                continue
            allocations.append((probe, part))
            remaining -= part

        if remaining > 0:
            self.plugin.log(
                f"Probed liquidity cannot cover {mtokens} msat to {destination[:16]}... "
                f"({remaining} msat short)",
                level='debug'
            )
            return []

        routes = []
        for probe, part in allocations:
            edges = self._edges_for(probe, by_id)
            if edges is None:
                return []

            if edges[-1].policy.to_public_key != destination:
                self.plugin.log(
                    f"Probe path via {probe.channels} does not end at {destination[:16]}...",
                    level='warn'
                )
                return []

            path = plan_path(edges, part, cltv_delta)
            routes.append(build_route(
                path,
                height,
                capacities=capacities,
                payment=payment,
                total_mtokens=mtokens,
                messages=messages,
            ))

        return routes

    def _edges_for(self, probe: ProbeSummary,
                   by_id: Dict[str, ChannelDescriptor]) -> Optional[List[PathEdge]]:
        """Resolve each probed channel to the policy in the travelled direction."""
        edges = []
        for i, (channel_id, relay) in enumerate(zip(probe.channels, probe.relays)):
            channel = by_id.get(channel_id)
            if channel is None:
                self.plugin.log(f"Missing channel data for {channel_id}", level='warn')
                return None

            if i == 0:
                policy = next((p for p in channel.policies if p.to_public_key == relay), None)
            else:
                policy = channel.policy_from(probe.relays[i - 1])

            if policy is None or policy.to_public_key != relay:
                self.plugin.log(
                    f"No policy for {channel_id} towards {relay[:16]}...", level='warn'
                )
                return None

            edges.append(PathEdge(channel=channel_id, policy=policy))
        return edges
