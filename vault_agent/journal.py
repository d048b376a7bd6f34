"""
Operational journal (sqlite)
Remembers which vault events were applied, which log windows were missed
and every reallocation the engine performed.
"""

import sqlite3
import logging
from datetime import datetime
from typing import Dict, List

from vault_agent.models import AllocationDecision, VaultEvent

logger = logging.getLogger(__name__)


class EventJournal:

    def __init__(self, db_path: str = "bot-journal.db"):
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        """Initialize journal tables"""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS applied_events (
                    event_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    token TEXT NOT NULL,
                    user_address TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL,
                    applied_at INTEGER DEFAULT (strftime('%s','now'))
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS missed_windows (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token TEXT NOT NULL,
                    from_block INTEGER NOT NULL,
                    to_block INTEGER NOT NULL,
                    error TEXT,
                    resolved INTEGER DEFAULT 0,
                    created_at INTEGER DEFAULT (strftime('%s','now'))
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS reallocations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    token TEXT NOT NULL,
                    from_chain TEXT NOT NULL,
                    to_chain TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    from_apy REAL,
                    to_apy REAL,
                    status TEXT NOT NULL,
                    error TEXT
                )
            """)

            conn.commit()

    # ---- applied events ----

    def is_applied(self, event_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM applied_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return row is not None

    def mark_applied(self, event: VaultEvent):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT OR IGNORE INTO applied_events
                (event_id, kind, token, user_address, amount, block_number, log_index)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                event.event_id, event.kind.value, event.token, event.user,
                str(event.amount), event.block_number, event.log_index
            ))
            conn.commit()

    def applied_count(self, token: str = None) -> int:
        with sqlite3.connect(self.db_path) as conn:
            if token:
                row = conn.execute(
                    "SELECT COUNT(*) FROM applied_events WHERE token = ?", (token,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM applied_events").fetchone()
        return row[0]

    # ---- missed windows ----

    def record_missed_window(self, token: str, from_block: int, to_block: int, error: str):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO missed_windows (token, from_block, to_block, error)
                VALUES (?, ?, ?, ?)
            """, (token, from_block, to_block, error))
            conn.commit()
        logger.warning(f"⚠️ [{token}] Missed log window {from_block}-{to_block} recorded for manual reconciliation")

    def missed_windows(self, include_resolved: bool = False) -> List[Dict]:
        query = "SELECT id, token, from_block, to_block, error, resolved, created_at FROM missed_windows"
        if not include_resolved:
            query += " WHERE resolved = 0"
        query += " ORDER BY from_block"

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(query).fetchall()
        return [dict(row) for row in rows]

    def resolve_missed_window(self, window_id: int) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            result = conn.execute(
                "UPDATE missed_windows SET resolved = 1 WHERE id = ? AND resolved = 0", (window_id,)
            )
            conn.commit()
        return result.rowcount > 0

    # ---- reallocations ----

    def record_reallocation(self, decision: AllocationDecision, status: str, error: str = None):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO reallocations
                (timestamp, token, from_chain, to_chain, amount, from_apy, to_apy, status, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                datetime.now().isoformat(), decision.token, decision.from_chain, decision.to_chain,
                str(decision.amount), decision.from_apy, decision.target_apy, status, error
            ))
            conn.commit()

    def recent_reallocations(self, limit: int = 20) -> List[Dict]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM reallocations ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in rows]
