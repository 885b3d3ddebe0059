"""
Tests for the probe adapters.

lightningd is replaced by FakeLightningd, which answers getroute from a
queue of prepared paths and resolves probes the way a real network would:
unknown payment hash at the destination when every channel can carry the
amount, a channel failure otherwise.
"""

import pytest
from unittest.mock import MagicMock

from pyln.client import RpcError

from funding_routes.config import Config
from funding_routes.errors import FundingRouteError, ProbeError
from funding_routes.graph import parse_msat
from funding_routes.models import ChannelDescriptor, ChannelPolicy, RoutingRequest
from funding_routes.prober import (
    MultiPathProber,
    ProbeAttempt,
    ProbeExecutor,
    WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS,
)
from funding_routes.route_builder import PathEdge, plan_path

from conftest import DESTINATION, OUR_NODE_ID, make_probe


RELAY_A = "02" + "a" * 64
RELAY_B = "02" + "b" * 64

FIRST_POLICY = ChannelPolicy(public_key=OUR_NODE_ID, to_public_key=RELAY_A,
                             base_fee_mtokens=0, fee_rate=0, cltv_delta=6)
SECOND_POLICY = ChannelPolicy(public_key=RELAY_A, to_public_key=DESTINATION,
                              base_fee_mtokens=1000, fee_rate=100, cltv_delta=40)


def two_hop_path(deliver_mtokens, final_cltv=40):
    return plan_path([
        PathEdge(channel="100x1x0", policy=FIRST_POLICY),
        PathEdge(channel="200x1x0", policy=SECOND_POLICY),
    ], deliver_mtokens, final_cltv)


class FakeLightningd:
    """Callable standing in for rpc.call(method, payload)."""

    def __init__(self, routes=(), liquidity_mtokens=None, failing=()):
        self.routes = list(routes)
        self.liquidity_mtokens = liquidity_mtokens
        self.failing = set(failing)
        self.sent = {}
        self.calls = []

    def payloads(self, method):
        return [payload for name, payload in self.calls if name == method]

    def __call__(self, method, payload):
        self.calls.append((method, payload))

        if method == "getroute":
            route = self.routes.pop(0) if self.routes else None
            if isinstance(route, Exception):
                raise route
            if route is None:
                raise RpcError("getroute", payload, {"code": 205, "message": "Could not find a route"})
            return {"route": route}

        if method == "sendpay":
            self.sent[payload["payment_hash"]] = payload["route"]
            return {"status": "pending"}

        if method == "waitsendpay":
            route = self.sent[payload["payment_hash"]]
            for index, hop in enumerate(route):
                if hop["channel"] in self.failing:
                    self.failing.discard(hop["channel"])
                    raise self._channel_failure(payload, hop, index)

            delivered = parse_msat(route[-1]["amount_msat"])
            if self.liquidity_mtokens is not None and delivered > self.liquidity_mtokens:
                raise self._channel_failure(payload, route[-1], len(route) - 1)

            raise RpcError("waitsendpay", payload, {
                "code": 203,
                "message": "failed: WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS",
                "data": {
                    "failcode": WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS,
                    "erring_index": len(route),
                    "erring_node": route[-1]["id"],
                },
            })

        raise AssertionError(f"unexpected RPC {method}")

    @staticmethod
    def _channel_failure(payload, hop, index):
        return RpcError("waitsendpay", payload, {
            "code": 204,
            "message": "failed: WIRE_TEMPORARY_CHANNEL_FAILURE",
            "data": {
                "failcode": 4103,
                "erring_index": index,
                "erring_channel": hop["channel"],
                "erring_direction": hop["direction"],
            },
        })


@pytest.fixture
def channels():
    return {
        "100x1x0": ChannelDescriptor(id="100x1x0", capacity=2_000_000, policies=[FIRST_POLICY]),
        "200x1x0": ChannelDescriptor(id="200x1x0", capacity=1_000_000, policies=[SECOND_POLICY]),
    }


@pytest.fixture
def graph(channels):
    def get_channel(scid):
        if scid not in channels:
            raise FundingRouteError(503, 'ExpectedChannelInGraph', {"channel": scid})
        return channels[scid]

    graph = MagicMock()
    graph.get_our_node_id.return_value = OUR_NODE_ID
    graph.get_height.return_value = 800_000
    graph.get_channel.side_effect = get_channel
    graph.find_edges.return_value = []
    graph.get_local_channels.return_value = []
    return graph


def _prober(cls, mock_plugin, graph, lightningd):
    mock_plugin.rpc.call.side_effect = lightningd
    return cls(mock_plugin, graph)


def _request(funding_params, **overrides):
    return RoutingRequest.from_params(dict(funding_params, **overrides))


class TestClassifyFailure:
    """waitsendpay errors map to probe outcomes."""

    def _classify(self, mock_plugin, graph, error, path_length=2):
        prober = ProbeExecutor(mock_plugin, graph)
        return prober._classify_failure(error, [{}] * path_length)

    def test_unknown_payment_at_destination_is_reached(self, mock_plugin, graph):
        error = RpcError("waitsendpay", {}, {"code": 203, "data": {
            "failcode": WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS, "erring_index": 2}})
        assert self._classify(mock_plugin, graph, error) == (ProbeAttempt.REACHED, None)

    def test_unknown_payment_before_destination_is_not_reached(self, mock_plugin, graph):
        error = RpcError("waitsendpay", {}, {"code": 203, "data": {
            "failcode": WIRE_INCORRECT_OR_UNKNOWN_PAYMENT_DETAILS, "erring_index": 1}})
        assert self._classify(mock_plugin, graph, error) == (ProbeAttempt.FAILED, None)

    def test_channel_failure_names_directed_channel(self, mock_plugin, graph):
        error = RpcError("waitsendpay", {}, {"code": 204, "data": {
            "failcode": 4103, "erring_index": 1,
            "erring_channel": "100:1:0", "erring_direction": 1}})
        assert self._classify(mock_plugin, graph, error) == (ProbeAttempt.CHANNEL_FAILURE, "100x1x0/1")

    def test_non_payment_error_propagates(self, mock_plugin, graph):
        error = RpcError("sendpay", {}, {"code": -32602, "message": "bad params"})
        with pytest.raises(RpcError):
            self._classify(mock_plugin, graph, error)


class TestProbeExecutor:
    """Single path for the full amount."""

    def test_reached_path_becomes_route(self, mock_plugin, graph, funding_params, cfg):
        lightningd = FakeLightningd(routes=[two_hop_path(100_000_000)])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        route = prober.execute(_request(funding_params, payment="aa" * 32), cfg)

        assert route.mtokens == 100_011_000
        assert route.fee == 11
        assert route.hops[-1].public_key == DESTINATION
        assert route.hops[0].channel_capacity == 2_000_000
        assert route.payment == "aa" * 32
        assert route.total_mtokens == 100_000_000

        getroute = lightningd.payloads("getroute")[0]
        assert getroute["id"] == DESTINATION
        assert getroute["amount_msat"] == 100_000_000
        assert getroute["cltv"] == 40
        assert getroute["maxhops"] == cfg.max_hops

    def test_probe_uses_random_hash(self, mock_plugin, graph, funding_params, cfg):
        lightningd = FakeLightningd(routes=[two_hop_path(100_000_000)])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        prober.execute(_request(funding_params), cfg)

        sendpay = lightningd.payloads("sendpay")[0]
        waitsendpay = lightningd.payloads("waitsendpay")[0]
        assert len(sendpay["payment_hash"]) == 64
        assert waitsendpay["payment_hash"] == sendpay["payment_hash"]
        assert waitsendpay["timeout"] == cfg.probe_timeout_seconds

    def test_failing_channel_excluded_on_retry(self, mock_plugin, graph, funding_params, cfg):
        lightningd = FakeLightningd(
            routes=[two_hop_path(100_000_000), two_hop_path(100_000_000)],
            failing=["200x1x0"],
        )
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        route = prober.execute(_request(funding_params), cfg)

        assert route.mtokens == 100_011_000
        retry = lightningd.payloads("getroute")[1]
        assert "200x1x0/0" in retry["exclude"]

    def test_no_route_raises_probe_error(self, mock_plugin, graph, funding_params, cfg):
        prober = _prober(ProbeExecutor, mock_plugin, graph, FakeLightningd(routes=[None]))

        with pytest.raises(ProbeError) as exc_info:
            prober.execute(_request(funding_params), cfg)
        assert exc_info.value.reason == 'FailedToFindRouteToDestination'
        assert exc_info.value.details["candidates"] == 1

    def test_path_over_fee_budget_is_not_sent(self, mock_plugin, graph, funding_params, cfg):
        lightningd = FakeLightningd(routes=[two_hop_path(100_000_000)])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        with pytest.raises(ProbeError) as exc_info:
            prober.execute(_request(funding_params, max_fee=10), cfg)

        assert exc_info.value.reason == 'FailedToFindRouteToDestination'
        assert lightningd.payloads("sendpay") == []

    def test_path_at_fee_budget_is_sent(self, mock_plugin, graph, funding_params, cfg):
        lightningd = FakeLightningd(routes=[two_hop_path(100_000_000)])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        route = prober.execute(_request(funding_params, max_fee=11), cfg)

        assert route.fee == 11
        assert len(lightningd.payloads("sendpay")) == 1

    def test_hard_getroute_error_propagates(self, mock_plugin, graph, funding_params, cfg):
        error = RpcError("getroute", {}, {"code": -32602, "message": "bad id"})
        prober = _prober(ProbeExecutor, mock_plugin, graph, FakeLightningd(routes=[error]))

        with pytest.raises(RpcError):
            prober.execute(_request(funding_params), cfg)

    def test_ignore_entries_become_exclusions(self, mock_plugin, graph, funding_params, cfg):
        graph.find_edges.return_value = [("555x1x1", 1)]
        lightningd = FakeLightningd(routes=[None])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        with pytest.raises(ProbeError):
            prober.execute(_request(funding_params, ignore=[
                {"from_public_key": RELAY_B},
                {"from_public_key": RELAY_A, "to_public_key": DESTINATION},
            ]), cfg)

        exclude = lightningd.payloads("getroute")[0]["exclude"]
        assert RELAY_B in exclude
        assert "555x1x1/1" in exclude
        graph.find_edges.assert_called_once_with(RELAY_A, DESTINATION)

    def test_outgoing_channel_excludes_other_local_channels(self, mock_plugin, graph,
                                                             funding_params, cfg):
        graph.get_local_channels.return_value = [
            {"short_channel_id": "100x1x0", "peer_id": RELAY_A, "direction": 0},
            {"short_channel_id": "101x1x0", "peer_id": RELAY_B, "direction": 1},
        ]
        lightningd = FakeLightningd(routes=[two_hop_path(100_000_000)])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        prober.execute(_request(funding_params, outgoing_channel="100x1x0"), cfg)

        exclude = lightningd.payloads("getroute")[0]["exclude"]
        assert exclude == ["101x1x0/1"]

    def test_route_hint_is_appended(self, mock_plugin, graph, funding_params, cfg):
        head = [{"id": RELAY_A, "channel": "100x1x0", "direction": 0,
                 "amount_msat": 100_011_000, "delay": 80, "style": "tlv"}]
        lightningd = FakeLightningd(routes=[head])
        prober = _prober(ProbeExecutor, mock_plugin, graph, lightningd)

        route = prober.execute(_request(funding_params, routes=[[
            {"public_key": RELAY_A},
            {"public_key": DESTINATION, "channel": "900x2x1",
             "base_fee_mtokens": 1000, "fee_rate": 100, "cltv_delta": 40},
        ]]), cfg)

        getroute = lightningd.payloads("getroute")[0]
        assert getroute["id"] == RELAY_A
        assert getroute["amount_msat"] == 100_011_000
        assert getroute["cltv"] == 80

        assert [hop.channel for hop in route.hops] == ["100x1x0", "900x2x1"]
        assert route.hops[-1].channel_capacity == 0
        assert route.fee_mtokens == 11_000


class TestMultiPathProber:
    """One more disjoint path per call, measured for its maximum."""

    def test_measures_path_maximum(self, mock_plugin, graph, cfg):
        cfg = Config(probe_search_steps=20).snapshot()
        lightningd = FakeLightningd(routes=[two_hop_path(10_000_000, 9)],
                                    liquidity_mtokens=15_500_000)
        prober = _prober(MultiPathProber, mock_plugin, graph, lightningd)

        outcome = prober.probe([], DESTINATION, 20_000, cfg)

        assert outcome.error is None
        assert outcome.probe.route_maximum == 15_500
        assert outcome.probe.channels == ["100x1x0", "200x1x0"]
        assert outcome.probe.relays == [RELAY_A, DESTINATION]
        assert outcome.probe.hops[-1].forward_mtokens == 15_500_000

    def test_search_capped_by_htlc_maximum(self, mock_plugin, graph, channels, cfg):
        cfg = Config(probe_search_steps=20).snapshot()
        channels["200x1x0"] = ChannelDescriptor(id="200x1x0", capacity=1_000_000, policies=[
            ChannelPolicy(public_key=RELAY_A, to_public_key=DESTINATION, base_fee_mtokens=1000,
                          fee_rate=100, cltv_delta=40, max_htlc_mtokens=12_000_000),
        ])
        lightningd = FakeLightningd(routes=[two_hop_path(10_000_000, 9)])
        prober = _prober(MultiPathProber, mock_plugin, graph, lightningd)

        outcome = prober.probe([], DESTINATION, cfg.find_max, cfg)

        assert outcome.probe.route_maximum == 12_000

    def test_first_probe_uses_floor_amount(self, mock_plugin, graph, cfg):
        lightningd = FakeLightningd(routes=[None])
        prober = _prober(MultiPathProber, mock_plugin, graph, lightningd)

        prober.probe([], DESTINATION, cfg.find_max, cfg)

        getroute = lightningd.payloads("getroute")[0]
        assert getroute["amount_msat"] == cfg.min_probe_tokens * 1000

    def test_prior_probe_channels_excluded_both_ways(self, mock_plugin, graph, cfg):
        lightningd = FakeLightningd(routes=[None])
        prober = _prober(MultiPathProber, mock_plugin, graph, lightningd)

        outcome = prober.probe([make_probe(50_000, channels=("300x1x0",))], DESTINATION,
                               cfg.find_max, cfg)

        assert outcome.error == 'NoAdditionalPathFound'
        exclude = lightningd.payloads("getroute")[0]["exclude"]
        assert "300x1x0/0" in exclude
        assert "300x1x0/1" in exclude

    def test_below_floor_liquidity_excludes_and_retries(self, mock_plugin, graph, cfg):
        lightningd = FakeLightningd(routes=[two_hop_path(10_000_000, 9), None],
                                    liquidity_mtokens=5_000_000)
        prober = _prober(MultiPathProber, mock_plugin, graph, lightningd)

        outcome = prober.probe([], DESTINATION, cfg.find_max, cfg)

        assert outcome.error == 'NoAdditionalPathFound'
        assert "200x1x0/0" in lightningd.payloads("getroute")[1]["exclude"]

    def test_in_through_without_edge(self, mock_plugin, graph, cfg):
        prober = _prober(MultiPathProber, mock_plugin, graph, FakeLightningd())

        outcome = prober.probe([], DESTINATION, cfg.find_max, cfg, in_through=RELAY_B)

        assert outcome.error == 'NoAdditionalPathThroughInboundPeer'
        assert outcome.probe is None

    def test_in_through_routes_to_inbound_peer(self, mock_plugin, graph, cfg):
        graph.find_edges.return_value = [("200x1x0", 0)]
        head = [{"id": RELAY_A, "channel": "100x1x0", "direction": 0,
                 "amount_msat": 10_002_000, "delay": 49, "style": "tlv"}]
        lightningd = FakeLightningd(routes=[head])
        prober = _prober(MultiPathProber, mock_plugin, graph, lightningd)

        outcome = prober.probe([], DESTINATION, 10_000, cfg, in_through=RELAY_A)

        assert lightningd.payloads("getroute")[0]["id"] == RELAY_A
        assert outcome.probe.channels == ["100x1x0", "200x1x0"]
        assert outcome.probe.route_maximum == 10_000

    def test_hard_rpc_error_propagates(self, mock_plugin, graph, cfg):
        error = RpcError("getroute", {}, {"code": -1, "message": "internal"})
        prober = _prober(MultiPathProber, mock_plugin, graph, FakeLightningd(routes=[error]))

        with pytest.raises(RpcError):
            prober.probe([], DESTINATION, cfg.find_max, cfg)
