import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .db_encryption import get_connection
from .orders import OrderRecord


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore:
    """SQLite-backed storage for dashboard users, API keys, favorites and orders.

    APIs:
    - `create_user` / `get_user` / `get_user_by_username`
    - `store_api_key` / `get_api_keys` / `get_active_api_keys` / `get_api_key`
      / `delete_api_key` / `update_api_key_status`
    - `add_favorite` / `list_favorites` / `get_favorite` / `delete_favorite`
    - `save_order` / `get_order` / `list_orders`

    API secrets arrive here already encrypted by the key vault. All writes use
    transactions for atomicity.
    """

    def __init__(self, path: Path, password: Optional[str] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = get_connection(str(self.path), password=password)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        from .db_migrations import apply_migrations

        apply_migrations(self.conn)

    @staticmethod
    def _rows(cur) -> List[Dict[str, Any]]:
        cols = [d[0] for d in cur.description]
        return [dict(zip(cols, row)) for row in cur.fetchall()]

    def _one(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            rows = self._rows(cur)
        return rows[0] if rows else None

    def _all(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            return self._rows(cur)

    def _write(self, sql: str, params: tuple) -> int:
        """Run one statement in its own transaction; returns lastrowid."""
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                cur.execute(sql, params)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            return cur.lastrowid

    def ping(self) -> bool:
        with self._lock:
            self.conn.execute("SELECT 1")
        return True

    # --- Users ---
    def create_user(self, username: str, password_hash: str) -> Dict[str, Any]:
        user_id = self._write(
            "INSERT INTO users(username, password_hash, created_at) VALUES(?, ?, ?)",
            (username, password_hash, _now()),
        )
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM users WHERE username = ?", (username,))

    # --- API keys ---
    def store_api_key(
        self,
        user_id: int,
        label: Optional[str],
        api_key: str,
        api_secret: str,
        priority: int = 0,
    ) -> Dict[str, Any]:
        key_id = self._write(
            "INSERT INTO api_keys(user_id, label, api_key, api_secret, priority, created_at) "
            "VALUES(?, ?, ?, ?, ?, ?)",
            (user_id, label, api_key, api_secret, priority, _now()),
        )
        return self.get_api_key(key_id)

    def get_api_key(self, key_id: int) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM api_keys WHERE id = ?", (key_id,))

    def get_api_keys(self, user_id: int) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM api_keys WHERE user_id = ? ORDER BY id", (user_id,))

    def get_active_api_keys(self, user_id: int) -> List[Dict[str, Any]]:
        return self._all(
            "SELECT * FROM api_keys WHERE user_id = ? AND is_active = 1 ORDER BY priority DESC, id",
            (user_id,),
        )

    def delete_api_key(self, key_id: int) -> None:
        self._write("DELETE FROM api_keys WHERE id = ?", (key_id,))

    def update_api_key_status(self, key_id: int, success: bool) -> None:
        now = _now()
        if success:
            self._write(
                "UPDATE api_keys SET last_success = ?, last_attempt = ?, fail_count = 0 WHERE id = ?",
                (now, now, key_id),
            )
        else:
            self._write(
                "UPDATE api_keys SET last_attempt = ?, fail_count = fail_count + 1 WHERE id = ?",
                (now, key_id),
            )

    # --- Favorites ---
    def add_favorite(self, user_id: int, product_id: str) -> Dict[str, Any]:
        self._write(
            "INSERT OR IGNORE INTO favorite_markets(user_id, product_id, created_at) VALUES(?, ?, ?)",
            (user_id, product_id, _now()),
        )
        return self._one(
            "SELECT * FROM favorite_markets WHERE user_id = ? AND product_id = ?",
            (user_id, product_id),
        )

    def list_favorites(self, user_id: int) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM favorite_markets WHERE user_id = ? ORDER BY id", (user_id,))

    def get_favorite(self, favorite_id: int) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM favorite_markets WHERE id = ?", (favorite_id,))

    def delete_favorite(self, favorite_id: int) -> None:
        self._write("DELETE FROM favorite_markets WHERE id = ?", (favorite_id,))

    # --- Orders ---
    def save_order(self, record: OrderRecord) -> None:
        data = json.dumps(record.to_dict())
        self._write(
            "INSERT OR REPLACE INTO orders(order_id, user_id, value, status, created_at, updated_at) "
            "VALUES(?, ?, ?, ?, COALESCE((SELECT created_at FROM orders WHERE order_id = ?), ?), ?)",
            (
                record.order_id,
                record.user_id,
                data,
                record.status.value,
                record.order_id,
                record.created_at,
                record.updated_at,
            ),
        )

    def get_order(self, order_id: str) -> Optional[OrderRecord]:
        row = self._one("SELECT value FROM orders WHERE order_id = ?", (order_id,))
        if not row:
            return None
        return OrderRecord.from_dict(json.loads(row["value"]))

    def list_orders(self, user_id: int, limit: int = 100) -> List[OrderRecord]:
        rows = self._all(
            "SELECT value FROM orders WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [OrderRecord.from_dict(json.loads(r["value"])) for r in rows]

    def close(self):
        with self._lock:
            self.conn.close()
