"""
Database module for cl-funding-routes

Handles SQLite persistence for:
- Funding route search history (outcome, strategy, fees)
- Runtime config overrides and their version counter
"""

import sqlite3
import os
import time
import json
from typing import Dict, List, Optional, Any


class Database:
    """
    SQLite database manager for the funding route finder.

    Provides persistence for:
    - Route search audit log
    - Config overrides applied at runtime
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # One row per funding-routes request
        conn.execute("""
            CREATE TABLE IF NOT EXISTS route_searches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                destination TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                max_fee INTEGER NOT NULL,
                status TEXT NOT NULL,      -- 'success', 'failed'
                strategy TEXT NOT NULL,    -- 'multi', 'single', 'none'
                fee INTEGER,
                route_count INTEGER NOT NULL DEFAULT 0,
                probe_count INTEGER NOT NULL DEFAULT 0,
                routes_max INTEGER,
                error TEXT,
                details TEXT,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                timestamp INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_version (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("INSERT OR IGNORE INTO config_version (id, version) VALUES (1, 0)")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_route_searches_time ON route_searches(timestamp)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_route_searches_dest ON route_searches(destination, timestamp)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Route Search History
    # =========================================================================

    def record_search(self, destination: str, tokens: int, max_fee: int,
                      status: str, strategy: str, fee: Optional[int] = None,
                      route_count: int = 0, probe_count: int = 0,
                      routes_max: Optional[int] = None, error: Optional[str] = None,
                      details: Optional[Dict[str, Any]] = None,
                      duration_ms: int = 0) -> int:
        """Record the outcome of a route search and return its ID."""
        conn = self._get_connection()
        now = int(time.time())

        cursor = conn.execute("""
            INSERT INTO route_searches
            (destination, tokens, max_fee, status, strategy, fee, route_count,
             probe_count, routes_max, error, details, duration_ms, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (destination, tokens, max_fee, status, strategy, fee, route_count,
              probe_count, routes_max, error,
              json.dumps(details) if details else None, duration_ms, now))

        return cursor.lastrowid

    def get_recent_searches(self, limit: int = 10,
                            destination: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent route searches, newest first."""
        conn = self._get_connection()

        if destination:
            rows = conn.execute("""
                SELECT * FROM route_searches WHERE destination = ?
                ORDER BY timestamp DESC, id DESC LIMIT ?
            """, (destination, limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM route_searches
                ORDER BY timestamp DESC, id DESC LIMIT ?
            """, (limit,)).fetchall()

        results = []
        for row in rows:
            entry = dict(row)
            if entry.get("details"):
                entry["details"] = json.loads(entry["details"])
            results.append(entry)
        return results

    def get_search_stats(self, since_timestamp: int) -> Dict[str, Any]:
        """Aggregate outcomes of searches since a timestamp."""
        conn = self._get_connection()

        row = conn.execute("""
            SELECT COUNT(*) as total,
                   COALESCE(SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), 0) as succeeded,
                   COALESCE(SUM(CASE WHEN strategy = 'multi' THEN 1 ELSE 0 END), 0) as multi_path,
                   COALESCE(SUM(CASE WHEN strategy = 'single' THEN 1 ELSE 0 END), 0) as single_path,
                   COALESCE(SUM(CASE WHEN status = 'success' THEN fee ELSE 0 END), 0) as total_fees
            FROM route_searches WHERE timestamp >= ?
        """, (since_timestamp,)).fetchone()

        return dict(row)

    # =========================================================================
    # Config Overrides
    # =========================================================================

    def get_all_config_overrides(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM config_overrides").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM config_overrides WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_config_override(self, key: str, value: str) -> int:
        """Persist an override and bump the config version. Returns the new version."""
        conn = self._get_connection()
        now = int(time.time())

        conn.execute("BEGIN")
        try:
            conn.execute("""
                INSERT INTO config_overrides (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, value, now))
            conn.execute("UPDATE config_version SET version = version + 1 WHERE id = 1")
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

        return self.get_config_version()

    def get_config_version(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT version FROM config_version WHERE id = 1").fetchone()
        return row["version"] if row else 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_old_data(self, days_to_keep: int = 30):
        """
        Remove old search history to prevent database bloat.

        Args:
            days_to_keep: Number of days of history to retain
        """
        conn = self._get_connection()
        cutoff = int(time.time()) - (days_to_keep * 86400)

        count = conn.execute(
            "SELECT COUNT(*) as cnt FROM route_searches WHERE timestamp < ?", (cutoff,)
        ).fetchone()["cnt"]

        conn.execute("DELETE FROM route_searches WHERE timestamp < ?", (cutoff,))

        if count > 0:
            self.plugin.log(f"Cleaned up {count} route searches older than {days_to_keep} days")

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
