"""
Thread-safe RPC access for cl-funding-routes

pyln-client's LightningRpc is not safe for concurrent calls, and a routing
request runs its capability check, single-path probe and channel fetches
on worker threads. Every call goes through ThreadSafeRpcProxy, which:
- serializes calls with a single lock
- trips a per-group circuit breaker on transport failures so that a dead
  lightningd socket fails fast instead of stalling every worker
"""

import threading
import time
from datetime import datetime
from typing import Any, Dict, Tuple

from pyln.client import Plugin, RpcError


class RPCBreakerOpen(RpcError):
    """Exception raised when the circuit breaker is open for a method group."""
    def __init__(self, group, until_ts):
        self.group = group
        self.until_ts = until_ts
        until_str = datetime.fromtimestamp(until_ts).strftime('%H:%M:%S')
        super().__init__(group, {}, f"RPC circuit breaker open for group '{group}' until {until_str}")


class ThreadSafeRpcProxy:
    """
    A thread-safe proxy for the plugin's RPC interface with circuit breakers.

    Attribute calls mirror LightningRpc (rpc.getroute(...), rpc.listchannels(...));
    rpc.call(method, payload) is forwarded as-is.
    """

    def __init__(self, rpc, plugin_instance: Plugin, config=None):
        self._rpc = rpc
        self._plugin = plugin_instance
        self._config = config
        self._lock = threading.Lock()
        self._breakers: Dict[str, float] = {}
        self._log_history: Dict[Tuple[str, str], float] = {}

    def _get_group(self, method_name: str) -> str:
        """Determine method group for circuit breaking."""
        if method_name in ("sendpay", "waitsendpay"):
            return "probe"
        if method_name in ("getroute", "listchannels"):
            return "graph"
        return "general"

    def _should_log(self, group: str, msg_type: str, cooldown: int = 60) -> bool:
        """Rate-limit logs to once per cooldown window."""
        now = time.time()
        key = (group, msg_type)
        if now - self._log_history.get(key, 0) > cooldown:
            self._log_history[key] = now
            return True
        return False

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)

        def wrapper(*args, **kwargs):
            return self._invoke(name, lambda: getattr(self._rpc, name)(*args, **kwargs))

        return wrapper

    def call(self, method_name: str, payload: Any = None):
        return self._invoke(method_name, lambda: self._rpc.call(method_name, payload))

    def _invoke(self, method_name: str, func):
        group = self._get_group(method_name)
        now = time.time()

        until = self._breakers.get(group, 0)
        if until > now:
            if self._should_log(group, "breaker_open"):
                self._plugin.log(
                    f"RPC Circuit Breaker OPEN for group '{group}' until "
                    f"{datetime.fromtimestamp(until).strftime('%H:%M:%S')}. Skipping call.",
                    level="warn",
                )
            raise RPCBreakerOpen(group, until)

        breaker_window = 60
        if self._config is not None:
            breaker_window = self._config.rpc_circuit_breaker_seconds

        try:
            with self._lock:
                return func()
        except RpcError:
            raise
        except OSError as e:
            # Socket level failure talking to lightningd
            self._breakers[group] = time.time() + breaker_window
            self._plugin.log(
                f"RPC transport failure on {method_name}: {e}. "
                f"Group '{group}' breaker tripped for {breaker_window}s.",
                level="warn",
            )
            raise
        except Exception as e:
            self._plugin.log(f"RPC ERROR on {method_name}: {e}", level="error")
            raise

    def reset_breakers(self) -> None:
        self._breakers.clear()

    def get_breaker_status(self) -> Dict[str, int]:
        now = time.time()
        return {group: int(until - now) for group, until in self._breakers.items() if until > now}


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.
    """

    def __init__(self, plugin_instance: Plugin, config=None):
        """Wrap the original plugin with a thread-safe RPC proxy."""
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc, plugin_instance, config)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)
