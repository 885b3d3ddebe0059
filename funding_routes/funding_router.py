"""
Funding Route Finder module for cl-funding-routes

Finds the route, or set of concurrent partial routes, that funds a swap
off-chain within the caller's fee budget.

Flow of one request:
1. Validate params (fail fast, no RPC)
2. Capability check and single-path probe, concurrently
3. Multi-path accumulation: repeated disjoint probes until the path
   budget is spent or no further path exists (sequential, since every
   probe excludes the channels of all earlier ones)
4. Route synthesis when accumulated liquidity covers the amount
5. Selection: multi-path routes if any, else the single path, subject
   to the fee budget

Each branch fails on its own. Only when neither produced an affordable
route does the request fail.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pyln.client import Plugin, RpcError

from .config import Config, ConfigSnapshot
from .errors import FundingRouteError, ProbeError
from .graph import ChannelGraph
from .models import (
    ChannelDescriptor,
    MultiPathLimits,
    ProbeResult,
    ProbeSummary,
    Route,
    RoutingRequest,
    RoutingResult,
)
from .prober import MultiPathProber, ProbeExecutor
from .route_builder import RouteSynthesizer

if TYPE_CHECKING:
    from .database import Database


# Max concurrent channel lookups when preparing multi-path synthesis
CHANNEL_FETCH_WORKERS = 8


class FundingRouter:
    """
    Orchestrates single-path and multi-path route discovery for swap funding.

    Collaborators are injected so the decision logic can be exercised
    without a node; by default they are the lightningd-backed adapters.
    """

    def __init__(self, plugin: Plugin, config: Config,
                 database: Optional['Database'] = None,
                 graph: Optional[ChannelGraph] = None,
                 probe_executor: Optional[ProbeExecutor] = None,
                 multi_prober: Optional[MultiPathProber] = None,
                 synthesizer: Optional[RouteSynthesizer] = None):
        self.plugin = plugin
        self.config = config
        self.database = database
        self.graph = graph or ChannelGraph(plugin)
        self.probe_executor = probe_executor or ProbeExecutor(plugin, self.graph)
        self.multi_prober = multi_prober or MultiPathProber(plugin, self.graph)
        self.synthesizer = synthesizer or RouteSynthesizer(plugin)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def get_routes_for_funding(self, params: Dict[str, Any]) -> RoutingResult:
        """
        Get routes for funding a swap.

        Args:
            params: RPC params (cltv_delta, destination, tokens, max_fee, ...)

        Returns:
            RoutingResult with the total fee and chosen routes

        Raises:
            FundingRouteError: 400 for invalid params, 503 when no
                affordable route was found
        """
        request = RoutingRequest.from_params(params)
        cfg = self.config.snapshot()
        started = time.monotonic()
        trace = {"strategy": "none", "probe_count": 0, "routes_max": None}

        try:
            result = self._find_routes(request, cfg, trace)
        except FundingRouteError as e:
            self._record(request, "failed", trace, started, error=e.reason, details=e.details)
            raise

        self._record(request, "success", trace, started, result=result)
        return result

    def check_multipath_support(self) -> bool:
        """
        Capability check: one cheap query against the node.

        Any failure means multi-path is treated as unsupported; this never
        fails the request.
        """
        try:
            self.plugin.rpc.getinfo()
            return True
        except Exception as e:
            self.plugin.log(f"Multi-path capability check failed: {e}", level='debug')
            return False

    def get_multi_limits(self, request: RoutingRequest, cfg: ConfigSnapshot) -> MultiPathLimits:
        """
        Accumulate disjoint multi-path probes toward the destination.

        Loops while fewer than max_paths probes were collected and no soft
        failure was seen. Hard errors from the prober end the loop at once.

        Raises:
            FundingRouteError: when not a single probe succeeded
            RpcError: hard failure from the prober
        """
        max_paths = request.max_paths or cfg.default_max_paths
        probes: List[ProbeResult] = []
        error: Optional[str] = None

        while len(probes) < max_paths and error is None:
            outcome = self.multi_prober.probe(
                probes,
                request.destination,
                cfg.find_max,
                cfg,
                ignore=request.ignore,
                in_through=request.in_through,
                out_through=request.out_through,
            )

            if outcome.probe is not None:
                probes.append(outcome.probe)

            if outcome.error:
                error = outcome.error

        if not probes:
            raise FundingRouteError(503, error or 'NoMultiPathProbesFound')

        return MultiPathLimits(
            latency_ms=sum(probe.latency_ms for probe in probes),
            routes_max=sum(probe.route_maximum for probe in probes),
            probes=[ProbeSummary.from_probe(probe) for probe in probes],
        )

    # =========================================================================
    # BRANCHES
    # =========================================================================

    def _find_routes(self, request: RoutingRequest, cfg: ConfigSnapshot,
                     trace: Dict[str, Any]) -> RoutingResult:
        with ThreadPoolExecutor(max_workers=2) as pool:
            multi_support = pool.submit(self.check_multipath_support)
            single_path = pool.submit(self._get_single_path, request, cfg)
            is_multi_supported = multi_support.result()
            single_route = single_path.result()

        multi_routes = self._get_multi_paths(request, cfg, is_multi_supported, trace)

        return self._select_routes(request, multi_routes, single_route, trace)

    def _get_single_path(self, request: RoutingRequest, cfg: ConfigSnapshot) -> Optional[Route]:
        """Single-path branch: one proven route, or None on any failure."""
        try:
            return self.probe_executor.execute(request, cfg)
        except ProbeError as e:
            self.plugin.log(
                f"No single path to {request.destination[:16]}... for {request.tokens} sats: "
                f"{e.reason}",
                level='info'
            )
        except (RpcError, FundingRouteError, OSError) as e:
            self.plugin.log(f"Single-path probe error: {e}", level='warn')
        return None

    def _get_multi_paths(self, request: RoutingRequest, cfg: ConfigSnapshot,
                         is_multi_supported: bool, trace: Dict[str, Any]) -> List[Route]:
        """Multi-path branch: accumulate liquidity, then synthesize routes."""
        if not is_multi_supported:
            self.plugin.log("Multi-path not supported by node, using single path", level='debug')
            return []

        # Multi-path synthesis is undefined through a single pinned peer
        if request.out_through:
            return []

        try:
            limits = self.get_multi_limits(request, cfg)
        except FundingRouteError as e:
            self.plugin.log(f"Multi-path probing found no paths: {e.reason}", level='info')
            return []
        except (RpcError, OSError) as e:
            self.plugin.log(f"Multi-path probing aborted: {e}", level='warn')
            return []

        trace["probe_count"] = len(limits.probes)
        trace["routes_max"] = limits.routes_max

        if limits.routes_max < request.tokens:
            self.plugin.log(
                f"Multi-path liquidity {limits.routes_max} sats over {len(limits.probes)} "
                f"paths is below {request.tokens} sats",
                level='info'
            )
            return []

        try:
            channels = self._get_channels(limits.channel_ids)
            height = self.graph.get_height()
            return self.synthesizer.multi_path_payment(
                channels=channels,
                cltv_delta=request.cltv_delta,
                destination=request.destination,
                height=height,
                max_tokens=limits.routes_max,
                mtokens=request.mtokens,
                probes=limits.probes,
                payment=request.payment,
                messages=request.messages,
            )
        except (FundingRouteError, RpcError, OSError) as e:
            self.plugin.log(f"Multi-path route synthesis failed: {e}", level='warn')
            return []

    def _get_channels(self, channel_ids: List[str]) -> List[ChannelDescriptor]:
        """Fetch channel descriptors concurrently; fetches are independent."""
        if not channel_ids:
            return []
        workers = min(CHANNEL_FETCH_WORKERS, len(channel_ids))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self.graph.get_channel, channel_ids))

    # =========================================================================
    # SELECTION
    # =========================================================================

    def _select_routes(self, request: RoutingRequest, multi_routes: List[Route],
                       single_route: Optional[Route], trace: Dict[str, Any]) -> RoutingResult:
        """Prefer multi-path routes, fall back to the single path, enforce the fee budget."""
        if multi_routes:
            paths, strategy = list(multi_routes), "multi"
        else:
            paths = [route for route in [single_route] if route is not None]
            strategy = "single" if paths else "none"

        total_fee = sum(route.fee for route in paths)

        if not paths or total_fee > request.max_fee:
            raise FundingRouteError(503, 'FailedToFindAPathToFundSwapOffchain', {
                "max_fee": request.max_fee,
                "route_count": len(paths),
                "fee": total_fee if paths else None,
            })

        trace["strategy"] = strategy
        self.plugin.log(
            f"Funding routes to {request.destination[:16]}... for {request.tokens} sats: "
            f"{len(paths)} {strategy}-path route(s), fee {total_fee} sats"
        )
        return RoutingResult(fee=total_fee, routes=tuple(paths))

    # =========================================================================
    # HISTORY
    # =========================================================================

    def _record(self, request: RoutingRequest, status: str, trace: Dict[str, Any],
                started: float, result: Optional[RoutingResult] = None,
                error: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        if self.database is None:
            return
        try:
            self.database.record_search(
                destination=request.destination,
                tokens=request.tokens,
                max_fee=request.max_fee,
                status=status,
                strategy=trace["strategy"],
                fee=result.fee if result else None,
                route_count=len(result.routes) if result else 0,
                probe_count=trace["probe_count"],
                routes_max=trace["routes_max"],
                error=error,
                details=details,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception as e:
            self.plugin.log(f"Failed to record route search: {e}", level='warn')
