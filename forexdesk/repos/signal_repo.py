"""Signal repository — SQLite CRUD for the trade_signals table."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from forexdesk.repos.db import get_connection


def _signal_from_row(row) -> dict:
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "instrument": row["instrument"],
        "timeframe": row["timeframe"],
        "action": row["action"],
        "entryPrice": row["entry_price"],
        "stopLoss": row["stop_loss"],
        "takeProfit": row["take_profit"],
        "rationale": row["rationale"],
        "status": row["status"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


class SignalRepo:
    """Data access layer for trade signals.

    All reads and writes are scoped to the owning user.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_signal(
        self,
        user_id: str,
        instrument: str,
        action: str,
        rationale: str,
        timeframe: str = "M15",
        entry_price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        status: str = "open",
    ) -> dict:
        """Insert a new signal and return it."""
        signal_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO trade_signals
                    (id, user_id, instrument, timeframe, action, entry_price,
                     stop_loss, take_profit, rationale, status,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    signal_id, user_id, instrument, timeframe, action,
                    entry_price, stop_loss, take_profit, rationale, status,
                    now, now,
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM trade_signals WHERE id = ?", (signal_id,),
            ).fetchone()
            return _signal_from_row(row)
        finally:
            conn.close()

    def update_status(self, user_id: str, signal_id: str, status: str) -> int:
        """Set a signal's status; returns rows affected (0 if not owned)."""
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                UPDATE trade_signals
                SET status = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (status, now, signal_id, user_id),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_signal(self, user_id: str, signal_id: str) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM trade_signals WHERE id = ? AND user_id = ?",
                (signal_id, user_id),
            ).fetchone()
            return _signal_from_row(row) if row else None
        finally:
            conn.close()

    def list_signals(self, user_id: str) -> list[dict]:
        """Return the user's signals, newest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM trade_signals
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (user_id,),
            ).fetchall()
            return [_signal_from_row(row) for row in rows]
        finally:
            conn.close()
