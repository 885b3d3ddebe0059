#!/usr/bin/env python3
"""
cl-funding-routes: Swap Funding Route Finder Plugin for Core Lightning

Finds how to move a given amount off-chain to a swap provider's node
within a maximum fee. Network liquidity is unknown, so the plugin probes:

SINGLE PATH vs MULTI PATH:
--------------------------
1. A single path for the full amount is probed.
2. In parallel the node's multi-path capability is checked. If available,
   disjoint paths are probed one after another, each measured for the
   most it can deliver, until the path budget is spent or no more exist.
3. If the accumulated liquidity covers the amount, the payment is split
   over those paths. Otherwise the single path is used.
4. Whatever is chosen must fit the fee budget, or the request fails.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
import time
from typing import Dict, List, Optional, Any

from pyln.client import Plugin

from funding_routes.config import Config
from funding_routes.database import Database
from funding_routes.errors import FundingRouteError
from funding_routes.funding_router import FundingRouter
from funding_routes.rpc import ThreadSafePluginProxy


# Initialize the plugin
plugin = Plugin()

# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
router: Optional[FundingRouter] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='funding-routes-db-path',
    default='~/.lightning/funding_routes.db',
    description='Path to the SQLite database for storing search history'
)

plugin.add_option(
    name='funding-routes-default-max-paths',
    default='7',
    description='Maximum multi-path probes when a request sets no max_paths (default: 7)'
)

plugin.add_option(
    name='funding-routes-max-htlc-sats',
    default='16777215',
    description='Largest single HTLC amount in sats used as the probing ceiling (default: 16777215)'
)

plugin.add_option(
    name='funding-routes-find-max-ratio',
    default='0.99',
    description='Fraction of max-htlc-sats to search up to when probing a path (default: 0.99)'
)

plugin.add_option(
    name='funding-routes-min-probe-tokens',
    default='10000',
    description='Smallest amount in sats a multi-path probe must carry (default: 10000)'
)

plugin.add_option(
    name='funding-routes-probe-max-attempts',
    default='10',
    description='Path finding retries per probe after channel failures (default: 10)'
)

plugin.add_option(
    name='funding-routes-probe-search-steps',
    default='8',
    description='Binary search probes used to measure each path maximum (default: 8)'
)

plugin.add_option(
    name='funding-routes-probe-timeout-seconds',
    default='60',
    description='Seconds to wait for each probe to resolve (default: 60)'
)

plugin.add_option(
    name='funding-routes-max-hops',
    default='20',
    description='Maximum hops for a candidate path (default: 20)'
)

plugin.add_option(
    name='funding-routes-riskfactor',
    default='10',
    description='getroute riskfactor (default: 10)'
)

plugin.add_option(
    name='funding-routes-history-days',
    default='30',
    description='Days of route search history to keep (default: 30)'
)

plugin.add_option(
    name='funding-routes-rpc-circuit-breaker-seconds',
    default='60',
    description='Cooldown period after an RPC transport failure for that method group (default: 60)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the funding routes plugin.

    1. Parse and validate options
    2. Initialize the database and apply persisted overrides
    3. Create the router over a thread-safe RPC proxy
    """
    global config, database, router, safe_plugin

    plugin.log("Initializing cl-funding-routes plugin...")

    config = Config(
        db_path=os.path.expanduser(options['funding-routes-db-path']),
        default_max_paths=int(options['funding-routes-default-max-paths']),
        max_htlc_sats=int(options['funding-routes-max-htlc-sats']),
        find_max_ratio=float(options['funding-routes-find-max-ratio']),
        min_probe_tokens=int(options['funding-routes-min-probe-tokens']),
        probe_max_attempts=int(options['funding-routes-probe-max-attempts']),
        probe_search_steps=int(options['funding-routes-probe-search-steps']),
        probe_timeout_seconds=int(options['funding-routes-probe-timeout-seconds']),
        max_hops=int(options['funding-routes-max-hops']),
        riskfactor=int(options['funding-routes-riskfactor']),
        history_days=int(options['funding-routes-history-days']),
        rpc_circuit_breaker_seconds=int(options['funding-routes-rpc-circuit-breaker-seconds']),
    )

    plugin.log(f"Configuration loaded: default_max_paths={config.default_max_paths}, "
               f"find_max={config.find_max} sats, probe_timeout={config.probe_timeout_seconds}s")

    # Worker threads share one lightningd connection - serialize access
    safe_plugin = ThreadSafePluginProxy(plugin, config)

    database = Database(config.db_path, safe_plugin)
    database.initialize()

    try:
        config.load_overrides(database)
        if config._version > 0:
            plugin.log(f"Loaded config overrides from database (version {config._version})")
    except Exception as e:
        plugin.log(f"Warning: Could not load config overrides: {e}", level='warn')

    try:
        database.cleanup_old_data(config.history_days)
    except Exception as e:
        plugin.log(f"Warning: History cleanup failed: {e}", level='warn')

    router = FundingRouter(safe_plugin, config, database)

    plugin.log("cl-funding-routes initialized")


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("funding-routes")
def funding_routes(plugin: Plugin,
                   cltv_delta: Optional[int] = None,
                   destination: Optional[str] = None,
                   tokens: Optional[int] = None,
                   max_fee: Optional[int] = None,
                   max_paths: Optional[int] = None,
                   ignore: Optional[List[Dict[str, str]]] = None,
                   routes: Optional[List[List[Dict[str, Any]]]] = None,
                   outgoing_channel: Optional[str] = None,
                   out_through: Optional[str] = None,
                   in_through: Optional[str] = None,
                   payment: Optional[str] = None,
                   messages: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    """
    Find routes to fund a swap off-chain within a fee budget.

    Usage: lightning-cli funding-routes cltv_delta destination tokens max_fee
           [max_paths] [ignore] [routes] [outgoing_channel] [out_through]
           [in_through] [payment] [messages]
    """
    if router is None:
        return {"error": "Plugin not fully initialized"}

    params = {
        "cltv_delta": cltv_delta,
        "destination": destination,
        "tokens": tokens,
        "max_fee": max_fee,
        "max_paths": max_paths,
        "ignore": ignore,
        "routes": routes,
        "outgoing_channel": outgoing_channel,
        "out_through": out_through,
        "in_through": in_through,
        "payment": payment,
        "messages": messages,
    }

    try:
        result = router.get_routes_for_funding(params)
    except FundingRouteError as e:
        return e.as_dict()
    except Exception as e:
        plugin.log(f"Unexpected error finding funding routes: {e}", level='error')
        return {"status": "error", "code": 503, "error": 'UnexpectedErrorFindingRouteToFundSwap',
                "details": {"err": str(e)}}

    return {"status": "success", **result.to_dict()}


@plugin.method("funding-routes-status")
def funding_routes_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the funding routes plugin.

    Usage: lightning-cli funding-routes-status
    """
    if database is None or config is None:
        return {"error": "Plugin not fully initialized"}

    since = int(time.time()) - 86400

    try:
        stats = database.get_search_stats(since)
    except Exception as e:
        plugin.log(f"Error reading search stats: {e}", level='error')
        return {"error": str(e)}

    return {
        "status": "running",
        "config": {
            "default_max_paths": config.default_max_paths,
            "find_max_sats": config.find_max,
            "min_probe_tokens": config.min_probe_tokens,
            "probe_timeout_seconds": config.probe_timeout_seconds,
            "version": config._version,
        },
        "last_24h": stats,
        "rpc_breakers": safe_plugin.rpc.get_breaker_status() if safe_plugin else {},
    }


@plugin.method("funding-routes-history")
def funding_routes_history(plugin: Plugin, limit: int = 10,
                           destination: Optional[str] = None) -> Dict[str, Any]:
    """
    Show recent funding route searches.

    Usage: lightning-cli funding-routes-history [limit] [destination]
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}

    try:
        limit = int(limit)
        if limit < 1:
            return {"status": "error", "error": "limit must be at least 1"}
    except ValueError:
        return {"status": "error", "error": "limit must be an integer"}

    try:
        return {"searches": database.get_recent_searches(limit=limit, destination=destination)}
    except Exception as e:
        plugin.log(f"Error reading search history: {e}", level='error')
        return {"error": str(e)}


@plugin.method("funding-routes-config")
def funding_routes_config(plugin: Plugin, key: Optional[str] = None,
                          value: Optional[str] = None) -> Dict[str, Any]:
    """
    Show configuration, or change one key at runtime.

    Usage: lightning-cli funding-routes-config [key] [value]
    """
    if database is None or config is None:
        return {"error": "Plugin not fully initialized"}

    if key is None:
        return {"config": config.to_dict(), "version": config._version}

    if value is None:
        if not hasattr(config, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}
        return {"key": key, "value": getattr(config, key)}

    try:
        result = config.update_runtime(database, key, str(value))
    except Exception as e:
        plugin.log(f"Error updating config {key}: {e}", level='error')
        return {"error": str(e)}

    if result.get("status") == "success":
        plugin.log(f"Config updated: {key} {result['old_value']} -> {result['new_value']}")
    return result


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
