import json
import logging
import sqlite3
from typing import Any, Optional

from .setup_database import setup_database

logger = logging.getLogger(__name__)

# Keys of the persisted state
DEVICE_ID_KEY = "device_id"
PQC_KEYPAIR_KEY = "pqc_keypair"
KEM_KEYPAIR_KEY = "kem_keypair"
IDENTITY_VERSION_KEY = "identity_version"
AUTH_TOKEN_KEY = "auth_token"
LAST_ACTIVITY_KEY = "last_activity"
ACCOUNTS_KEY = "accounts"


class LocalStore:
    """
    Key/value state of one installation, kept in a single SQLite file.

    A fresh connection is opened per call, so the store can be used from the
    event loop and from worker threads alike.
    """

    def __init__(self, path: str):
        self.path = path
        setup_database(path)

    def get_db_connection(self) -> sqlite3.Connection:
        """Connect to the database"""
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row  # rows behave like dictionaries
        return conn

    def get(self, key: str) -> Optional[str]:
        """Read a raw value, None if absent"""
        conn = self.get_db_connection()
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row["value"] if row else None

    def set(self, key: str, value: Optional[str]) -> None:
        """Write a raw value; None deletes the key"""
        if value is None:
            self.delete(key)
            return
        conn = self.get_db_connection()
        try:
            conn.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = CURRENT_TIMESTAMP""",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self.get_db_connection()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def get_json(self, key: str, default: Any = None) -> Any:
        """Read a JSON value; unreadable JSON is logged and treated as absent"""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored value for %r is not valid JSON; ignoring it", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, None if value is None else json.dumps(value))

    # --- typed accessors ---------------------------------------------------
    def get_token(self) -> Optional[str]:
        return self.get(AUTH_TOKEN_KEY)

    def save_token(self, token: Optional[str]) -> None:
        self.set(AUTH_TOKEN_KEY, token)

    def get_last_activity(self) -> Optional[float]:
        raw = self.get(LAST_ACTIVITY_KEY)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning("Stored last activity %r is not a number; ignoring it", raw)
            return None

    def save_last_activity(self, timestamp: float) -> None:
        self.set(LAST_ACTIVITY_KEY, repr(float(timestamp)))

    def get_accounts(self) -> list:
        accounts = self.get_json(ACCOUNTS_KEY, [])
        return accounts if isinstance(accounts, list) else []

    def save_accounts(self, accounts: list) -> None:
        self.set_json(ACCOUNTS_KEY, accounts)
