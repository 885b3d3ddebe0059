"""
Data model for cl-funding-routes

Requests come in as plain RPC params and are validated into a
RoutingRequest. Probe results flow from the prober adapters into the
multi-path accumulator; routes and the final RoutingResult flow back out
to the RPC caller via to_dict().

Amount naming follows the Lightning convention used across the plugin:
- tokens: satoshis
- mtokens: millisatoshis
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import FundingRouteError


# Regex for validating 66-character hex public keys
PUBLIC_KEY_PATTERN = re.compile(r'^[0-9a-fA-F]{66}$')

# Regex for short channel ids in either 123x456x0 or 123:456:0 form
SCID_PATTERN = re.compile(r'^\d+[x:]\d+[x:]\d+$')


def tokens_as_mtokens(tokens: int) -> int:
    return int(tokens) * 1000


def mtokens_as_tokens(mtokens: int) -> int:
    """Floor millisatoshis to whole satoshis."""
    return int(mtokens) // 1000


def normalize_scid(scid: str) -> str:
    return scid.replace(':', 'x')


def _positive_int(value: Any) -> Optional[int]:
    """Coerce an RPC param to a positive int, or None if it isn't one."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _non_negative_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def _is_public_key(value: Any) -> bool:
    return isinstance(value, str) and bool(PUBLIC_KEY_PATTERN.match(value))


@dataclass
class IgnoreEdge:
    """A node, or a directed edge between two nodes, to avoid."""
    from_public_key: str
    to_public_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"from_public_key": self.from_public_key}
        if self.to_public_key:
            result["to_public_key"] = self.to_public_key
        return result


@dataclass
class RouteHintHop:
    """One edge of a caller-supplied candidate route (e.g. a BOLT11 hint)."""
    public_key: str
    channel: Optional[str] = None
    base_fee_mtokens: int = 0
    fee_rate: int = 0
    cltv_delta: int = 0


@dataclass
class RoutingRequest:
    """A validated request to find routes funding a swap off-chain."""
    cltv_delta: int
    destination: str
    tokens: int
    max_fee: int
    max_paths: Optional[int] = None
    outgoing_channel: Optional[str] = None
    out_through: Optional[str] = None
    in_through: Optional[str] = None
    ignore: List[IgnoreEdge] = field(default_factory=list)
    routes: List[List[RouteHintHop]] = field(default_factory=list)
    payment: Optional[str] = None
    messages: List[Dict[str, str]] = field(default_factory=list)

    @property
    def mtokens(self) -> int:
        return tokens_as_mtokens(self.tokens)

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> 'RoutingRequest':
        """
        Validate raw RPC params into a RoutingRequest.

        Raises:
            FundingRouteError: code 400 with the first problem found
        """
        cltv_delta = _positive_int(params.get("cltv_delta"))
        if cltv_delta is None:
            raise FundingRouteError(400, 'ExpectedCltvDeltaToGetRoutesForFunding')

        destination = params.get("destination")
        if not isinstance(destination, str) or not PUBLIC_KEY_PATTERN.match(destination):
            raise FundingRouteError(400, 'ExpectedDestinationToGetRoutesForFunding')

        tokens = _positive_int(params.get("tokens"))
        if tokens is None:
            raise FundingRouteError(400, 'ExpectedTokensToGetRoutesForFunding')

        max_fee = params.get("max_fee")
        try:
            max_fee = int(max_fee) if max_fee is not None and not isinstance(max_fee, bool) else None
        except (TypeError, ValueError):
            max_fee = None
        if max_fee is None or max_fee < 0:
            raise FundingRouteError(400, 'ExpectedMaxFeeToGetRoutesForFunding')

        max_paths = params.get("max_paths")
        if max_paths is not None:
            max_paths = _positive_int(max_paths)
            if max_paths is None:
                raise FundingRouteError(400, 'ExpectedPositiveMaxPathsToGetRoutesForFunding')

        outgoing_channel = params.get("outgoing_channel")
        if outgoing_channel is not None:
            if not isinstance(outgoing_channel, str) or not SCID_PATTERN.match(outgoing_channel):
                raise FundingRouteError(400, 'ExpectedStandardFormatOutgoingChannelId')
            outgoing_channel = normalize_scid(outgoing_channel)

        for key in ("out_through", "in_through"):
            peer = params.get(key)
            if peer is not None and not _is_public_key(peer):
                raise FundingRouteError(400, 'ExpectedPublicKeyForPeerConstraint', {"param": key})

        ignore = []
        for entry in params.get("ignore") or []:
            if not isinstance(entry, dict) or not _is_public_key(entry.get("from_public_key")):
                raise FundingRouteError(400, 'ExpectedFromPublicKeyInIgnoreEntry')
            to_public_key = entry.get("to_public_key")
            if to_public_key is not None and not _is_public_key(to_public_key):
                raise FundingRouteError(400, 'ExpectedToPublicKeyInIgnoreEntry')
            ignore.append(IgnoreEdge(
                from_public_key=entry["from_public_key"],
                to_public_key=to_public_key,
            ))

        routes = []
        for hint in params.get("routes") or []:
            if not isinstance(hint, list) or not hint:
                raise FundingRouteError(400, 'ExpectedHopsInCandidateRoute')
            hops = []
            for hop in hint:
                if not isinstance(hop, dict) or not _is_public_key(hop.get("public_key")):
                    raise FundingRouteError(400, 'ExpectedPublicKeyInCandidateRouteHop')
                policy = {}
                for key in ("base_fee_mtokens", "fee_rate", "cltv_delta"):
                    value = _non_negative_int(hop.get(key, 0) or 0)
                    if value is None:
                        raise FundingRouteError(400, 'ExpectedNumericCandidateRouteHopPolicy',
                                                {"field": key})
                    policy[key] = value
                hops.append(RouteHintHop(
                    public_key=hop["public_key"],
                    channel=normalize_scid(hop["channel"]) if hop.get("channel") else None,
                    **policy,
                ))
            routes.append(hops)

        messages = params.get("messages") or []
        if not isinstance(messages, list) or not all(
                isinstance(message, dict) and "type" in message and "value" in message
                for message in messages):
            raise FundingRouteError(400, 'ExpectedTypeAndValueInMessages')

        return cls(
            cltv_delta=cltv_delta,
            destination=destination.lower(),
            tokens=tokens,
            max_fee=max_fee,
            max_paths=max_paths,
            outgoing_channel=outgoing_channel,
            out_through=params.get("out_through"),
            in_through=params.get("in_through"),
            ignore=ignore,
            routes=routes,
            payment=params.get("payment"),
            messages=list(messages),
        )


@dataclass(frozen=True)
class ProbeHop:
    """A hop on a proven path. public_key is the node the channel leads to."""
    channel: str
    public_key: str
    fee_mtokens: int
    forward_mtokens: int
    timeout: int


@dataclass(frozen=True)
class ProbeResult:
    """A path proven to carry route_maximum tokens to the destination."""
    hops: tuple
    route_maximum: int
    latency_ms: int = 0

    @property
    def channels(self) -> List[str]:
        return [hop.channel for hop in self.hops]

    @property
    def relays(self) -> List[str]:
        return [hop.public_key for hop in self.hops]


@dataclass
class ProbeSummary:
    """What the route synthesizer needs to know about one probed path."""
    channels: List[str]
    relays: List[str]
    liquidity: int

    @classmethod
    def from_probe(cls, probe: ProbeResult) -> 'ProbeSummary':
        return cls(channels=probe.channels, relays=probe.relays, liquidity=probe.route_maximum)


@dataclass
class ProbeOutcome:
    """
    Result of a single multi-path probe attempt.

    Exactly one of probe/error is set: probe when another disjoint path
    was found, error when no further path exists (a soft failure).
    """
    probe: Optional[ProbeResult] = None
    error: Optional[str] = None


@dataclass
class MultiPathLimits:
    """Liquidity accumulated over all disjoint multi-path probes."""
    latency_ms: int
    routes_max: int
    probes: List[ProbeSummary]

    @property
    def channel_ids(self) -> List[str]:
        """Unique channel ids across all probes, in first-seen order."""
        seen = []
        for probe in self.probes:
            for channel in probe.channels:
                if channel not in seen:
                    seen.append(channel)
        return seen


@dataclass
class ChannelPolicy:
    """Forwarding policy for one direction of a channel."""
    public_key: str
    to_public_key: str
    base_fee_mtokens: int
    fee_rate: int
    cltv_delta: int
    max_htlc_mtokens: Optional[int] = None
    is_disabled: bool = False

    def fee_for(self, forward_mtokens: int) -> int:
        """Fee this node charges to forward forward_mtokens over the channel."""
        return self.base_fee_mtokens + (forward_mtokens * self.fee_rate) // 1_000_000


@dataclass
class ChannelDescriptor:
    """A public channel and its directional policies."""
    id: str
    capacity: int
    policies: List[ChannelPolicy]

    def policy_from(self, public_key: str) -> Optional[ChannelPolicy]:
        for policy in self.policies:
            if policy.public_key == public_key:
                return policy
        return None


@dataclass
class RouteHop:
    """
    One hop of an executable route.

    fee is what the node at public_key charges to forward onward; the
    final hop's fee is zero. timeout is the absolute expiry height of the
    HTLC that node offers onward over the next hop's channel (for the
    final hop, the expiry it receives).
    """
    channel: str
    channel_capacity: int
    fee_mtokens: int
    forward_mtokens: int
    public_key: Optional[str]
    timeout: int

    @property
    def fee(self) -> int:
        return mtokens_as_tokens(self.fee_mtokens)

    @property
    def forward(self) -> int:
        return mtokens_as_tokens(self.forward_mtokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "channel_capacity": self.channel_capacity,
            "fee": self.fee,
            "fee_mtokens": self.fee_mtokens,
            "forward": self.forward,
            "forward_mtokens": self.forward_mtokens,
            "public_key": self.public_key,
            "timeout": self.timeout,
        }


@dataclass
class Route:
    """An executable route: hops plus aggregate amounts and expiry."""
    hops: List[RouteHop]
    fee_mtokens: int
    mtokens: int
    timeout: int
    payment: Optional[str] = None
    total_mtokens: Optional[int] = None
    messages: List[Dict[str, str]] = field(default_factory=list)

    @property
    def fee(self) -> int:
        return mtokens_as_tokens(self.fee_mtokens)

    @property
    def tokens(self) -> int:
        return mtokens_as_tokens(self.mtokens)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "fee": self.fee,
            "fee_mtokens": self.fee_mtokens,
            "hops": [hop.to_dict() for hop in self.hops],
            "mtokens": self.mtokens,
            "timeout": self.timeout,
            "tokens": self.tokens,
        }
        if self.messages:
            result["messages"] = list(self.messages)
        if self.payment:
            result["payment"] = self.payment
        if self.total_mtokens is not None:
            result["total_mtokens"] = self.total_mtokens
        return result


@dataclass(frozen=True)
class RoutingResult:
    """Final answer: the chosen routes and their summed fee."""
    fee: int
    routes: tuple

    def to_dict(self) -> Dict[str, Any]:
        return {"fee": self.fee, "routes": [route.to_dict() for route in self.routes]}
