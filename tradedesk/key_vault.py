"""API key vault: encrypted storage and rotation of users' Coinbase API keys.

Secrets are encrypted with Fernet before they reach the database. Requests
that need credentials ask the vault for the next key; keys that just failed
are skipped and each key is used once per rotation cycle.
"""
from typing import Dict, List, NamedTuple, Optional, Set

from cryptography.fernet import Fernet, InvalidToken

from .logging_setup import logger
from .secrets import key_preview


class KeyVaultError(Exception):
    pass


class KeySelection(NamedTuple):
    key_id: int
    api_key: str
    api_secret: str


class KeyVault:
    """Manages API keys securely, with rotation and fallback.

    Args:
        store: SQLiteStore (or compatible) holding the api_keys table
        vault_key: Fernet key used to encrypt secrets at rest. If omitted a
                   process-local key is generated and stored secrets will not
                   survive a restart.
    """

    def __init__(self, store, vault_key: Optional[str] = None):
        self.store = store
        if vault_key is None:
            logger.warning("No vault key configured; generating an ephemeral key")
            vault_key = Fernet.generate_key().decode()
        self._fernet = Fernet(vault_key.encode() if isinstance(vault_key, str) else vault_key)
        self.last_failed_key_id: Optional[int] = None
        self.used_key_ids: Set[int] = set()

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken:
            raise KeyVaultError("Stored API secret cannot be decrypted with the configured vault key")

    def reset_rotation(self) -> None:
        self.last_failed_key_id = None
        self.used_key_ids.clear()
        logger.debug("Key rotation state reset")

    def _selection(self, row: Dict) -> KeySelection:
        return KeySelection(
            key_id=row["id"],
            api_key=row["api_key"],
            api_secret=self.decrypt(row["api_secret"]),
        )

    def get_next_key(self, user_id: int) -> Optional[KeySelection]:
        """Pick the next active key for `user_id`.

        Keys come from the store ordered by priority. The most recently failed
        key and keys already handed out this cycle are skipped. Once every key
        has been used the cycle starts over.
        """
        keys = self.store.get_active_api_keys(user_id)
        if not keys:
            logger.warning(f"No active API keys | user_id={user_id}")
            return None

        if self.used_key_ids and len(self.used_key_ids) >= len(keys):
            logger.info("All keys tried in this rotation; resetting")
            self.reset_rotation()

        available = [
            k for k in keys
            if k["id"] != self.last_failed_key_id and k["id"] not in self.used_key_ids
        ]

        if not available:
            self.reset_rotation()
            selected = keys[0]
        else:
            selected = available[0]

        self.used_key_ids.add(selected["id"])
        logger.info(f"Selected API key | key_id={selected['id']} key={key_preview(selected['api_key'])}")
        return self._selection(selected)

    def update_key_status(self, key_id: int, success: bool) -> None:
        """Record the outcome of a request made with `key_id`."""
        self.store.update_api_key_status(key_id, success)
        if success:
            logger.debug(f"API key succeeded | key_id={key_id}")
        else:
            self.last_failed_key_id = key_id
            logger.warning(f"API key failed | key_id={key_id}")

    def store_key(self, user_id: int, label: Optional[str], api_key: str, api_secret: str) -> Dict:
        row = self.store.store_api_key(
            user_id=user_id,
            label=label,
            api_key=api_key,
            api_secret=self.encrypt(api_secret),
            priority=0,
        )
        logger.info(f"Stored API key | key_id={row['id']} user_id={user_id} key={key_preview(api_key)}")
        return row

    def get_user_keys(self, user_id: int) -> List[Dict]:
        """Keys for display: never includes the secret, only a key preview."""
        return [self.public_view(row) for row in self.store.get_api_keys(user_id)]

    @staticmethod
    def public_view(row: Dict) -> Dict:
        return {
            "id": row["id"],
            "userId": row["user_id"],
            "label": row["label"],
            "isActive": bool(row["is_active"]),
            "createdAt": row["created_at"],
            "apiKeyPreview": key_preview(row["api_key"]),
            "lastSuccess": row.get("last_success"),
            "lastAttempt": row.get("last_attempt"),
            "failCount": row.get("fail_count") or 0,
        }

    def delete_key(self, key_id: int) -> None:
        self.store.delete_api_key(key_id)
        self.used_key_ids.discard(key_id)
        if self.last_failed_key_id == key_id:
            self.last_failed_key_id = None
        logger.info(f"Deleted API key | key_id={key_id}")
