"""Signal-order link repository — SQLite CRUD for the signal_order_links table."""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Optional

from forexdesk.broker.errors import ActiveLinkExistsError
from forexdesk.reconciler import ACTIVE_LINK_STATUSES
from forexdesk.repos.db import get_connection


def _link_from_row(row) -> dict:
    return {
        "id": row["id"],
        "signalId": row["signal_id"],
        "userId": row["user_id"],
        "instrument": row["instrument"],
        "side": row["side"],
        "orderType": row["order_type"],
        "oandaOrderId": row["oanda_order_id"],
        "oandaTradeId": row["oanda_trade_id"],
        "status": row["status"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


class SignalOrderLinkRepo:
    """Data access layer for signal → broker order/trade links.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_link(
        self,
        user_id: str,
        signal_id: str,
        instrument: str,
        side: str,
        order_type: str,
        status: str,
        oanda_order_id: Optional[str] = None,
        oanda_trade_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> dict:
        """Insert a link and return it.

        Raises:
            ActiveLinkExistsError: the signal already has a link in an
                active status and *status* is active too.
        """
        link_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            try:
                conn.execute(
                    """
                    INSERT INTO signal_order_links
                        (id, signal_id, user_id, instrument, side, order_type,
                         oanda_order_id, oanda_trade_id, status, details_json,
                         created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        link_id, signal_id, user_id, instrument, side, order_type,
                        oanda_order_id, oanda_trade_id, status,
                        json.dumps(details) if details is not None else None,
                        now, now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ActiveLinkExistsError(signal_id) from exc
            conn.commit()
            row = conn.execute(
                "SELECT * FROM signal_order_links WHERE id = ?", (link_id,),
            ).fetchone()
            return _link_from_row(row)
        finally:
            conn.close()

    def update_status(
        self,
        user_id: str,
        link_id: str,
        status: str,
        oanda_order_id: Optional[str] = None,
        oanda_trade_id: Optional[str] = None,
    ) -> int:
        """Advance a link's status, optionally attaching broker ids.

        ``None`` ids leave the stored value untouched.  Returns rows
        affected; a link owned by another user is not touched (0).
        """
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            try:
                cur = conn.execute(
                    """
                    UPDATE signal_order_links
                    SET status = ?,
                        oanda_order_id = COALESCE(?, oanda_order_id),
                        oanda_trade_id = COALESCE(?, oanda_trade_id),
                        updated_at = ?
                    WHERE id = ? AND user_id = ?
                    """,
                    (status, oanda_order_id, oanda_trade_id, now, link_id, user_id),
                )
            except sqlite3.IntegrityError as exc:
                signal = conn.execute(
                    "SELECT signal_id FROM signal_order_links WHERE id = ?",
                    (link_id,),
                ).fetchone()
                raise ActiveLinkExistsError(signal["signal_id"] if signal else "") from exc
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_link(self, user_id: str, link_id: str) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM signal_order_links WHERE id = ? AND user_id = ?",
                (link_id, user_id),
            ).fetchone()
            return _link_from_row(row) if row else None
        finally:
            conn.close()

    def list_links(self, user_id: str, signal_id: Optional[str] = None) -> list[dict]:
        """Return the user's links, newest first, optionally for one signal."""
        conn = get_connection(self._db_path)
        try:
            conditions = ["user_id = ?"]
            params: list = [user_id]
            if signal_id:
                conditions.append("signal_id = ?")
                params.append(signal_id)
            rows = conn.execute(
                f"SELECT * FROM signal_order_links WHERE {' AND '.join(conditions)} "
                "ORDER BY created_at DESC, rowid DESC",
                params,
            ).fetchall()
            return [_link_from_row(row) for row in rows]
        finally:
            conn.close()

    def active_link(self, signal_id: str) -> Optional[dict]:
        """The signal's in-flight link, if any."""
        placeholders = ", ".join("?" for _ in ACTIVE_LINK_STATUSES)
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                f"SELECT * FROM signal_order_links WHERE signal_id = ? "
                f"AND status IN ({placeholders})",
                (signal_id, *ACTIVE_LINK_STATUSES),
            ).fetchone()
            return _link_from_row(row) if row else None
        finally:
            conn.close()
