"""
Database module for cl-volatility-fee

Handles SQLite persistence for:
- Controller state (one record per entity)
- Observation event log (one row per committed observation)
"""

import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from .events import ObservationRecord
from .volatility import ControllerState


class Database:
    """
    SQLite database manager for the volatility fee controller.

    Provides persistence for:
    - Controller states (write-through target of the registry)
    - Observability event history (dashboard feed)

    Estimates are stored as TEXT: they are bounded by max_displacement^2,
    which may exceed SQLite's signed 64-bit INTEGER for wide position ranges.
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file (':memory:' for tests)
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = db_path if db_path == ':memory:' else os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode; transactions are explicit
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Controller state - one row per tracked entity
        conn.execute("""
            CREATE TABLE IF NOT EXISTS controller_state (
                entity_id TEXT PRIMARY KEY,
                last_position INTEGER NOT NULL,
                volatility_estimate TEXT NOT NULL DEFAULT '0',
                current_fee INTEGER NOT NULL,
                last_update_time INTEGER NOT NULL DEFAULT 0,
                initialized INTEGER NOT NULL DEFAULT 0,
                observation_count INTEGER NOT NULL DEFAULT 0
            )
        """)

        # Observation event log - feeds dashboards and volfee-events
        conn.execute("""
            CREATE TABLE IF NOT EXISTS observation_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id TEXT NOT NULL,
                estimate TEXT NOT NULL,
                fee INTEGER NOT NULL,
                displacement INTEGER NOT NULL,
                bootstrap INTEGER NOT NULL DEFAULT 0,
                timestamp INTEGER NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_entity ON observation_events(entity_id, id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_time ON observation_events(timestamp)")

        self.plugin.log("Database initialized successfully")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Commits on normal exit, rolls back and re-raises on any exception.
        """
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # =========================================================================
    # Controller State Methods
    # =========================================================================

    def insert_controller_state(self, entity_id: str, state: ControllerState,
                                conn: Optional[sqlite3.Connection] = None):
        """
        Insert a new controller record.

        Raises:
            sqlite3.IntegrityError: if a record already exists for entity_id
        """
        conn = conn or self._get_connection()
        conn.execute("""
            INSERT INTO controller_state
            (entity_id, last_position, volatility_estimate, current_fee,
             last_update_time, initialized, observation_count)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, self._state_params(entity_id, state))

    def save_controller_state(self, entity_id: str, state: ControllerState,
                              conn: Optional[sqlite3.Connection] = None):
        """Insert or replace the controller record for an entity."""
        conn = conn or self._get_connection()
        conn.execute("""
            INSERT OR REPLACE INTO controller_state
            (entity_id, last_position, volatility_estimate, current_fee,
             last_update_time, initialized, observation_count)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, self._state_params(entity_id, state))

    @staticmethod
    def _state_params(entity_id: str, state: ControllerState) -> tuple:
        return (str(entity_id), state.last_position, str(state.volatility_estimate),
                state.current_fee, state.last_update_time, int(state.initialized),
                state.observation_count)

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> ControllerState:
        return ControllerState(
            last_position=int(row['last_position']),
            volatility_estimate=int(row['volatility_estimate']),
            current_fee=int(row['current_fee']),
            last_update_time=int(row['last_update_time']),
            initialized=bool(row['initialized']),
            observation_count=int(row['observation_count']),
        )

    def get_controller_state(self, entity_id: str) -> Optional[ControllerState]:
        """Get the controller record for an entity, or None."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM controller_state WHERE entity_id = ?",
            (str(entity_id),)
        ).fetchone()

        if row:
            return self._row_to_state(row)
        return None

    def get_all_controller_states(self) -> Dict[str, ControllerState]:
        """Get all controller records keyed by entity id."""
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM controller_state ORDER BY entity_id").fetchall()
        return {row['entity_id']: self._row_to_state(row) for row in rows}

    # =========================================================================
    # Observation Event Methods
    # =========================================================================

    def record_observation_event(self, record: ObservationRecord,
                                 conn: Optional[sqlite3.Connection] = None):
        """Append an observability record to the event log."""
        conn = conn or self._get_connection()
        conn.execute("""
            INSERT INTO observation_events
            (entity_id, estimate, fee, displacement, bootstrap, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (str(record.entity_id), str(record.estimate), record.fee,
              record.displacement, int(record.bootstrap), record.timestamp))

    def get_recent_events(self, limit: int = 30,
                          entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent observation events, newest first."""
        conn = self._get_connection()

        if entity_id:
            rows = conn.execute("""
                SELECT * FROM observation_events
                WHERE entity_id = ?
                ORDER BY id DESC LIMIT ?
            """, (str(entity_id), limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM observation_events
                ORDER BY id DESC LIMIT ?
            """, (limit,)).fetchall()

        events = []
        for row in rows:
            event = dict(row)
            event['estimate'] = int(event['estimate'])
            event['bootstrap'] = bool(event['bootstrap'])
            event['fee_bps'] = event['fee'] / 100
            events.append(event)
        return events

    def get_event_count(self, entity_id: Optional[str] = None) -> int:
        """Number of logged events (optionally for one entity)."""
        conn = self._get_connection()
        if entity_id:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM observation_events WHERE entity_id = ?",
                (str(entity_id),)
            ).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) AS n FROM observation_events").fetchone()
        return row['n'] if row else 0

    def cleanup_old_events(self, days_to_keep: int = 30) -> int:
        """
        Remove event log rows older than the retention window.

        Controller state is never pruned; only the history is.

        Returns:
            Number of rows deleted
        """
        if days_to_keep <= 0:
            return 0
        conn = self._get_connection()
        cutoff = int(time.time()) - (days_to_keep * 86400)

        result = conn.execute(
            "DELETE FROM observation_events WHERE timestamp < ?", (cutoff,)
        )
        deleted = result.rowcount
        if deleted:
            self.plugin.log(f"Cleaned up {deleted} observation events older than {days_to_keep} days")
        return deleted

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
