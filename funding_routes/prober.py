"""
Probe adapters for cl-funding-routes

Liquidity in the network is not observable, so paths are proven by
probing: an HTLC is sent with a random payment hash that no node knows.
If the destination rejects it with incorrect_or_unknown_payment_details,
every channel on the path had enough liquidity. Any other failure names
the channel that could not forward, which is then excluded.

- ProbeExecutor: prove one path for the full amount (single-path branch)
- MultiPathProber: prove one more disjoint path and search its maximum
  deliverable amount (multi-path accumulator step)
"""

import os
import time
from typing import Any, Dict, List, Optional, Tuple

from pyln.client import Plugin, RpcError

from .config import ConfigSnapshot
from .errors import FundingRouteError, ProbeError
from .graph import ChannelGraph, parse_msat
from .models import (
    ChannelPolicy,
    IgnoreEdge,
    ProbeHop,
    ProbeOutcome,
    ProbeResult,
    Route,
    RoutingRequest,
)
from .route_builder import PathEdge, build_route, plan_path


# lightningd pay error codes
PAY_IN_PROGRESS = 200
PAY_UNPARSEABLE_ONION = 202
PAY_DESTINATION_PERM_FAIL = 203
PAY_TRY_OTHER_ROUTE = 204
PAY_ROUTE_NOT_FOUND = 205

# BOLT 4 failure: final node does not know the payment hash
WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS = 16399

# lightningd's default final CLTV for getroute
DEFAULT_FINAL_CLTV = 9

SOFT_PAY_CODES = frozenset({
    PAY_IN_PROGRESS,
    PAY_UNPARSEABLE_ONION,
    PAY_DESTINATION_PERM_FAIL,
    PAY_TRY_OTHER_ROUTE,
})


class ProbeAttempt:
    """Outcome kinds of a single probe HTLC."""
    REACHED = "reached"
    CHANNEL_FAILURE = "channel_failure"
    FAILED = "failed"


class _PathProber:
    """Shared path-finding and probing over lightningd RPC."""

    def __init__(self, plugin: Plugin, graph: ChannelGraph):
        self.plugin = plugin
        self.graph = graph

    # =========================================================================
    # Exclusions
    # =========================================================================

    def _ignore_exclusions(self, ignore: List[IgnoreEdge]) -> List[str]:
        """Translate ignore entries into getroute exclude entries."""
        exclude = []
        for entry in ignore:
            if not entry.to_public_key:
                exclude.append(entry.from_public_key)
                continue
            for scid, direction in self.graph.find_edges(entry.from_public_key, entry.to_public_key):
                exclude.append(f"{scid}/{direction}")
        return exclude

    def _local_exclusions(self, outgoing_channel: Optional[str] = None,
                          out_through: Optional[str] = None) -> List[str]:
        """Exclude our own channels so the path leaves through the pinned one."""
        if not outgoing_channel and not out_through:
            return []

        exclude = []
        for ch in self.graph.get_local_channels():
            if outgoing_channel and ch["short_channel_id"] == outgoing_channel:
                continue
            if not outgoing_channel and ch["peer_id"] == out_through:
                continue
            exclude.append(f"{ch['short_channel_id']}/{ch['direction']}")
        return exclude

    # =========================================================================
    # Path finding
    # =========================================================================

    def _getroute(self, node_id: str, amount_msat: int, cltv: int,
                  exclude: List[str], cfg: ConfigSnapshot) -> Optional[List[Dict[str, Any]]]:
        """Ask lightningd for a path. None when it knows no route."""
        try:
            result = self.plugin.rpc.call("getroute", {
                "id": node_id,
                "amount_msat": amount_msat,
                "riskfactor": cfg.riskfactor,
                "cltv": cltv,
                "exclude": exclude,
                "maxhops": cfg.max_hops,
            })
        except RpcError as e:
            if _error_code(e) == PAY_ROUTE_NOT_FOUND:
                return None
            raise
        return result.get("route") or None

    def _find_path(self, destination: str, deliver_mtokens: int, final_cltv: int,
                   exclude: List[str], cfg: ConfigSnapshot,
                   tail_edges: Optional[List[PathEdge]] = None) -> Optional[List[Dict[str, Any]]]:
        """
        Find a path delivering deliver_mtokens to destination.

        With tail_edges the path must end with those edges; lightningd is
        only asked for the path to the first tail edge's source.
        """
        if not tail_edges:
            return self._getroute(destination, deliver_mtokens, final_cltv, exclude, cfg)

        tail = plan_path(tail_edges, deliver_mtokens, final_cltv)
        entry_policy = tail_edges[0].policy
        entry = entry_policy.public_key
        if entry == self.graph.get_our_node_id():
            return tail

        entry_mtokens = tail[0]["amount_msat"] + entry_policy.fee_for(tail[0]["amount_msat"])
        entry_cltv = tail[0]["delay"] + entry_policy.cltv_delta
        head = self._getroute(entry, entry_mtokens, entry_cltv, exclude, cfg)
        if head is None:
            return None
        return head + tail

    # =========================================================================
    # Probing
    # =========================================================================

    def _probe_path(self, path: List[Dict[str, Any]],
                    cfg: ConfigSnapshot) -> Tuple[str, Optional[str]]:
        """
        Send an unpayable HTLC along path.

        Returns:
            (ProbeAttempt kind, "scid/direction" of the failing channel or None)

        Raises:
            RpcError: for failures that are not payment failures
        """
        payment_hash = os.urandom(32).hex()
        try:
            self.plugin.rpc.call("sendpay", {"route": path, "payment_hash": payment_hash})
            self.plugin.rpc.call("waitsendpay", {
                "payment_hash": payment_hash,
                "timeout": cfg.probe_timeout_seconds,
            })
        except RpcError as e:
            return self._classify_failure(e, path)

        # Only possible if someone knew the preimage; the path works regardless
        return ProbeAttempt.REACHED, None

    def _classify_failure(self, error: RpcError,
                          path: List[Dict[str, Any]]) -> Tuple[str, Optional[str]]:
        code = _error_code(error)
        data = _error_data(error)

        if (data.get("failcode") == WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS
                and data.get("erring_index") == len(path)):
            return ProbeAttempt.REACHED, None

        if code not in SOFT_PAY_CODES:
            raise error

        erring_channel = data.get("erring_channel")
        if erring_channel:
            direction = data.get("erring_direction", 0)
            return ProbeAttempt.CHANNEL_FAILURE, f"{erring_channel.replace(':', 'x')}/{direction}"

        return ProbeAttempt.FAILED, None

    def _capacities(self, path: List[Dict[str, Any]]) -> Dict[str, int]:
        capacities = {}
        for hop in path:
            try:
                capacities[hop["channel"]] = self.graph.get_channel(hop["channel"]).capacity
            except FundingRouteError:
                capacities[hop["channel"]] = 0  # Private channel, e.g. from a route hint
        return capacities


class ProbeExecutor(_PathProber):
    """Proves a single path able to carry the full requested amount."""

    def execute(self, request: RoutingRequest, cfg: ConfigSnapshot) -> Route:
        """
        Find and probe a single path for request.mtokens. Paths whose fee
        already exceeds request.max_fee are dropped without sending an HTLC.

        Raises:
            ProbeError: when no path could be proven
        """
        exclude = self._ignore_exclusions(request.ignore)
        exclude += self._local_exclusions(request.outgoing_channel, request.out_through)

        tails = [edges for edges in map(_hint_edges, request.routes) if edges] or [None]

        attempts = 0
        for tail in tails:
            path = self._prove_path(request, exclude, cfg, tail)
            attempts += 1
            if path is not None:
                height = self.graph.get_height()
                return build_route(
                    path,
                    height,
                    capacities=self._capacities(path),
                    payment=request.payment,
                    total_mtokens=request.mtokens,
                    messages=request.messages,
                )

        raise ProbeError('FailedToFindRouteToDestination', {
            "destination": request.destination,
            "tokens": request.tokens,
            "candidates": attempts,
            "excluded": len(exclude),
        })

    def _prove_path(self, request: RoutingRequest, exclude: List[str], cfg: ConfigSnapshot,
                    tail: Optional[List[PathEdge]]) -> Optional[List[Dict[str, Any]]]:
        exclude = list(exclude)
        for attempt in range(cfg.probe_max_attempts):
            path = self._find_path(
                request.destination, request.mtokens, request.cltv_delta, exclude, cfg, tail
            )
            if path is None:
                return None

            fee_mtokens = parse_msat(path[0]["amount_msat"]) - request.mtokens
            if fee_mtokens > request.max_fee * 1000:
                self.plugin.log(
                    f"Skipping path to {request.destination[:16]}... with fee {fee_mtokens} msat "
                    f"over budget of {request.max_fee} sats",
                    level='debug'
                )
                return None

            kind, erring = self._probe_path(path, cfg)
            self.plugin.log(
                f"Single-path probe {attempt + 1} to {request.destination[:16]}... "
                f"over {len(path)} hops: {kind}",
                level='debug'
            )
            if kind == ProbeAttempt.REACHED:
                return path
            if not erring or erring in exclude:
                return None
            exclude.append(erring)
        return None


class MultiPathProber(_PathProber):
    """
    Finds one more path disjoint from earlier probes and measures how much
    it can deliver. Soft failures come back as ProbeOutcome(error=...);
    RPC errors propagate as hard failures.
    """

    def probe(self, probes: List[ProbeResult], destination: str, find_max: int,
              cfg: ConfigSnapshot, ignore: Optional[List[IgnoreEdge]] = None,
              in_through: Optional[str] = None,
              out_through: Optional[str] = None) -> ProbeOutcome:
        started = time.monotonic()

        exclude = self._ignore_exclusions(ignore or [])
        exclude += self._local_exclusions(out_through=out_through)
        for prior in probes:
            for channel in prior.channels:
                exclude += [f"{channel}/0", f"{channel}/1"]

        floor_mtokens = cfg.min_probe_tokens * 1000

        for attempt in range(cfg.probe_max_attempts):
            tail = None
            if in_through:
                tail = self._last_hop_edge(in_through, destination, exclude)
                if tail is None:
                    return ProbeOutcome(error='NoAdditionalPathThroughInboundPeer')

            path = self._find_path(destination, floor_mtokens, DEFAULT_FINAL_CLTV, exclude, cfg, tail)
            if path is None:
                return ProbeOutcome(error='NoAdditionalPathFound')

            kind, erring = self._probe_path(path, cfg)
            if kind != ProbeAttempt.REACHED:
                if not erring or erring in exclude:
                    return ProbeOutcome(error='InsufficientLiquidityOnAdditionalPath')
                exclude.append(erring)
                continue

            edges = self._path_edges(path)
            best_tokens, best_path = cfg.min_probe_tokens, path
            if edges is not None:
                best_tokens, best_path = self._search_maximum(edges, path, find_max, cfg)

            latency_ms = int((time.monotonic() - started) * 1000)
            self.plugin.log(
                f"Multi-path probe #{len(probes) + 1} to {destination[:16]}... "
                f"found {best_tokens} sats over {len(best_path)} hops in {latency_ms}ms",
                level='debug'
            )
            return ProbeOutcome(probe=ProbeResult(
                hops=tuple(_probe_hops(best_path)),
                route_maximum=best_tokens,
                latency_ms=latency_ms,
            ))

        return ProbeOutcome(error='ExhaustedProbeAttempts')

    def _last_hop_edge(self, in_through: str, destination: str,
                       exclude: List[str]) -> Optional[List[PathEdge]]:
        for scid, direction in self.graph.find_edges(in_through, destination):
            if f"{scid}/{direction}" in exclude:
                continue
            policy = self.graph.get_channel(scid).policy_from(in_through)
            if policy is not None and not policy.is_disabled:
                return [PathEdge(channel=scid, policy=policy)]
        return None

    def _path_edges(self, path: List[Dict[str, Any]]) -> Optional[List[PathEdge]]:
        """Recover the policies along a path so it can be re-priced. None if any is unknown."""
        edges = []
        source = self.graph.get_our_node_id()
        for hop in path:
            try:
                channel = self.graph.get_channel(hop["channel"])
            except FundingRouteError:
                return None
            policy = channel.policy_from(source)
            if policy is None:
                return None
            edges.append(PathEdge(channel=hop["channel"], policy=policy))
            source = hop["id"]
        return edges

    def _search_maximum(self, edges: List[PathEdge], proven_path: List[Dict[str, Any]],
                        find_max: int, cfg: ConfigSnapshot) -> Tuple[int, List[Dict[str, Any]]]:
        """Binary search the largest amount the fixed path delivers, within find_max."""
        final_cltv = int(proven_path[-1]["delay"])
        ceiling = find_max
        for edge in edges:
            if edge.policy.max_htlc_mtokens:
                ceiling = min(ceiling, edge.policy.max_htlc_mtokens // 1000)

        low, high = cfg.min_probe_tokens, ceiling
        best_path = proven_path
        for _ in range(cfg.probe_search_steps):
            if high <= low:
                break
            mid = (low + high + 1) // 2
            candidate = plan_path(edges, mid * 1000, final_cltv)
            kind, _ = self._probe_path(candidate, cfg)
            if kind == ProbeAttempt.REACHED:
                low, best_path = mid, candidate
            else:
                high = mid - 1

        return low, best_path


def _error_code(error: RpcError) -> Optional[int]:
    payload = error.error if isinstance(error.error, dict) else {}
    return payload.get("code")


def _error_data(error: RpcError) -> Dict[str, Any]:
    payload = error.error if isinstance(error.error, dict) else {}
    return payload.get("data") or {}


def _hint_edges(hint) -> Optional[List[PathEdge]]:
    """
    Edges of a candidate route hint. The first hop names the entry node;
    each later hop is the channel into its public_key with the forwarding
    policy of the node before it. None if the hint cannot be routed.
    """
    if len(hint) < 2:
        return None

    edges = []
    for previous, hop in zip(hint, hint[1:]):
        if not hop.channel:
            return None
        edges.append(PathEdge(channel=hop.channel, policy=ChannelPolicy(
            public_key=previous.public_key,
            to_public_key=hop.public_key,
            base_fee_mtokens=hop.base_fee_mtokens,
            fee_rate=hop.fee_rate,
            cltv_delta=hop.cltv_delta,
        )))
    return edges


def _probe_hops(path: List[Dict[str, Any]]) -> List[ProbeHop]:
    hops = []
    for i, hop in enumerate(path):
        amount = parse_msat(hop["amount_msat"])
        forward = amount if i == len(path) - 1 else parse_msat(path[i + 1]["amount_msat"])
        hops.append(ProbeHop(
            channel=hop["channel"],
            public_key=hop["id"],
            fee_mtokens=amount - forward,
            forward_mtokens=forward,
            timeout=int(hop["delay"]),
        ))
    return hops
