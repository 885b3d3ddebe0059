"""
cl-funding-routes package

This package contains the modules for the funding route plugin:
- funding_router: Single/multi-path route discovery and selection
- prober: Probe adapters over lightningd (getroute, sendpay, waitsendpay)
- route_builder: Route shaping and multi-path route synthesis
- graph: Channel graph and wallet state accessors
- rpc: Thread-safe RPC proxy with circuit breakers
- config: Configuration and runtime overrides
- database: SQLite storage layer
"""

from .config import Config, ConfigSnapshot
from .database import Database
from .errors import FundingRouteError, ProbeError
from .funding_router import FundingRouter
from .graph import ChannelGraph
from .models import RoutingRequest, RoutingResult, Route, RouteHop
from .prober import MultiPathProber, ProbeExecutor
from .route_builder import RouteSynthesizer
from .rpc import ThreadSafePluginProxy, ThreadSafeRpcProxy

__all__ = [
    'Config',
    'ConfigSnapshot',
    'Database',
    'FundingRouteError',
    'ProbeError',
    'FundingRouter',
    'ChannelGraph',
    'RoutingRequest',
    'RoutingResult',
    'Route',
    'RouteHop',
    'MultiPathProber',
    'ProbeExecutor',
    'RouteSynthesizer',
    'ThreadSafePluginProxy',
    'ThreadSafeRpcProxy',
]
