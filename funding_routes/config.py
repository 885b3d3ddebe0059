"""
Configuration module for cl-funding-routes

Contains the Config dataclass that holds all tunable parameters
for the funding route finder.

- ConfigSnapshot: Immutable snapshot, one per routing request
- Runtime configuration updates via RPC, persisted in the database
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Any, FrozenSet, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'default_max_paths': int,
    'max_htlc_sats': int,
    'find_max_ratio': float,
    'min_probe_tokens': int,
    'probe_max_attempts': int,
    'probe_search_steps': int,
    'probe_timeout_seconds': int,
    'max_hops': int,
    'riskfactor': int,
    'history_days': int,
    'rpc_circuit_breaker_seconds': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'default_max_paths': (1, 32),
    'max_htlc_sats': (1, 2_100_000_000_000_000),
    'find_max_ratio': (0.01, 1.0),
    'min_probe_tokens': (1, 10_000_000),
    'probe_max_attempts': (1, 100),
    'probe_search_steps': (0, 32),
    'probe_timeout_seconds': (1, 600),
    'max_hops': (1, 27),
    'riskfactor': (0, 1000),
    'history_days': (1, 3650),
    'rpc_circuit_breaker_seconds': (0, 3600),
}


def _convert(field_type: type, value: str) -> Any:
    if field_type == bool:
        return value.lower() in ('true', '1', 'yes', 'on')
    if field_type == int:
        return int(value)
    if field_type == float:
        return float(value)
    return value


@dataclass
class Config:
    """
    Configuration container for the funding route finder.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/funding_routes.db'

    # Multi-path accumulation
    default_max_paths: int = 7           # Path budget when the request gives none
    max_htlc_sats: int = 16_777_215      # Largest single-HTLC amount (pre-wumbo)
    find_max_ratio: float = 0.99         # Search ceiling = max_htlc_sats * ratio

    # Probing
    min_probe_tokens: int = 10_000       # Smallest amount a multi-path probe must carry
    probe_max_attempts: int = 10         # Path-finding retries per probe after channel failures
    probe_search_steps: int = 8          # Binary search probes per path when finding its max
    probe_timeout_seconds: int = 60      # waitsendpay timeout per probe

    # Path finding (getroute)
    max_hops: int = 20
    riskfactor: int = 10

    # History retention
    history_days: int = 30

    # RPC hardening
    rpc_circuit_breaker_seconds: int = 60

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    @property
    def find_max(self) -> int:
        """Multi-path search ceiling in sats, kept below the HTLC limit."""
        return math.floor(self.max_htlc_sats * self.find_max_ratio)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for one routing request.

        A request MUST use only its snapshot so that a runtime config
        update mid-request cannot change its limits halfway through.
        """
        return ConfigSnapshot.from_config(self)

    def load_overrides(self, database: 'Database') -> None:
        """Load config overrides from database on startup."""
        overrides = database.get_all_config_overrides()
        for key, value in overrides.items():
            if hasattr(self, key) and key not in IMMUTABLE_CONFIG_KEYS:
                self._apply_override(key, value)
        self._version = database.get_config_version()

    def _apply_override(self, key: str, value: str) -> None:
        """Apply a single override with type conversion."""
        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            setattr(self, key, _convert(field_type, value))
        except (ValueError, TypeError):
            pass  # Keep default if conversion fails

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Transactional runtime update: Validate -> Write DB -> Read-Back -> Update Memory.

        Returns:
            Dict with status, old_value, new_value, version
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            typed_value = _convert(field_type, value)
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        old_value = getattr(self, key)

        new_version = database.set_config_override(key, value)

        # Read back so memory never diverges from what was persisted
        read_back = database.get_config_override(key)
        if read_back != value:
            return {"error": "Database write verification failed"}

        setattr(self, key, typed_value)
        self._version = new_version

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: getattr(self, key)
            for key in ['db_path', *CONFIG_FIELD_TYPES.keys()]
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for one routing request.

    Usage:
        cfg = self.config.snapshot()  # Immutable for this request
        # All logic uses cfg, never self.config directly
    """
    db_path: str
    default_max_paths: int
    max_htlc_sats: int
    find_max_ratio: float
    min_probe_tokens: int
    probe_max_attempts: int
    probe_search_steps: int
    probe_timeout_seconds: int
    max_hops: int
    riskfactor: int
    history_days: int
    rpc_circuit_breaker_seconds: int
    find_max: int

    # Version tracking
    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            db_path=config.db_path,
            default_max_paths=config.default_max_paths,
            max_htlc_sats=config.max_htlc_sats,
            find_max_ratio=config.find_max_ratio,
            min_probe_tokens=config.min_probe_tokens,
            probe_max_attempts=config.probe_max_attempts,
            probe_search_steps=config.probe_search_steps,
            probe_timeout_seconds=config.probe_timeout_seconds,
            max_hops=config.max_hops,
            riskfactor=config.riskfactor,
            history_days=config.history_days,
            rpc_circuit_breaker_seconds=config.rpc_circuit_breaker_seconds,
            find_max=config.find_max,
            version=config._version,
        )
