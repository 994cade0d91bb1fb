"""User repository — per-user OANDA environment selector and credentials."""

from datetime import datetime, timezone
from typing import Optional

from forexdesk.broker.models import (
    BrokerSettings,
    Environment,
    LiveCredentials,
    PracticeCredentials,
)
from forexdesk.repos.db import get_connection

# API field name → column
_SETTINGS_COLUMNS = {
    "oandaEnvironment": "oanda_environment",
    "oandaPracticeAccountId": "oanda_practice_account_id",
    "oandaPracticeToken": "oanda_practice_token",
    "oandaLiveAccountId": "oanda_live_account_id",
    "oandaLiveToken": "oanda_live_token",
}


class UserRepo:
    """Data access layer for users' broker settings.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def create_user(
        self,
        user_id: str,
        environment: str = "practice",
        practice_account_id: Optional[str] = None,
        practice_token: Optional[str] = None,
        live_account_id: Optional[str] = None,
        live_token: Optional[str] = None,
    ) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO users
                    (id, oanda_environment, oanda_practice_account_id,
                     oanda_practice_token, oanda_live_account_id, oanda_live_token)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, Environment.parse(environment).value,
                    practice_account_id, practice_token,
                    live_account_id, live_token,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_broker_settings(self, user_id: str) -> Optional[BrokerSettings]:
        """Return the user's settings, or ``None`` if the user is unknown."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return BrokerSettings(
            user_id=row["id"],
            environment=Environment.parse(row["oanda_environment"]),
            practice=PracticeCredentials(
                account_id=row["oanda_practice_account_id"],
                api_token=row["oanda_practice_token"],
            ),
            live=LiveCredentials(
                account_id=row["oanda_live_account_id"],
                api_token=row["oanda_live_token"],
            ),
        )

    def update_broker_settings(self, user_id: str, fields: dict) -> int:
        """Update the given settings fields (API names) and return rows affected.

        Unknown keys are ignored.  Last write wins.
        """
        updates = {
            _SETTINGS_COLUMNS[k]: v for k, v in fields.items() if k in _SETTINGS_COLUMNS
        }
        if "oanda_environment" in updates:
            updates["oanda_environment"] = Environment.parse(
                updates["oanda_environment"]
            ).value
        if not updates:
            return 0

        updates["updated_at"] = datetime.now(timezone.utc).isoformat()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ?",
                (*updates.values(), user_id),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()
