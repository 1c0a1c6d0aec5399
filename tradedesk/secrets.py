"""Server-side Coinbase API credentials.

Per-user trading keys live in the key vault; the server's own key pair is only
needed for authenticated feed channels (`user`). Lookup order:

1. Environment variables: CB_API_KEY, CB_API_SECRET
2. JSON file: the given path, CB_CONFIG_PATH, or ~/.coinbase_config.json.
   Both `api_key`/`api_secret` and the dashboard's `apiKey`/`apiSecret`
   spellings are accepted.
"""
import json
import os
from pathlib import Path
from typing import Dict, NamedTuple, Optional

from .logging_setup import logger


def key_preview(api_key: Optional[str]) -> str:
    """Return a log/response-safe preview such as ``abcd...wxyz``."""
    if not api_key:
        return "N/A"
    if len(api_key) <= 8:
        return f"{api_key[:2]}..."
    return f"{api_key[:4]}...{api_key[-4:]}"


class CoinbaseCredentials(NamedTuple):
    api_key: str
    api_secret: str

    @property
    def preview(self) -> str:
        return key_preview(self.api_key)


def _config_path(config_path: Optional[str]) -> Path:
    return Path(config_path or os.getenv("CB_CONFIG_PATH") or Path.home() / ".coinbase_config.json")


def _read_config(path: Path) -> Dict[str, Optional[str]]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to load config from {path}: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Failed to load config from {path}: expected a JSON object")
    return {
        "api_key": data.get("api_key") or data.get("apiKey"),
        "api_secret": data.get("api_secret") or data.get("apiSecret"),
    }


def load_credentials(config_path: Optional[str] = None) -> CoinbaseCredentials:
    """Load the server's Coinbase credentials.

    Raises:
        ValueError: If nothing usable is configured or the file is unreadable
    """
    api_key = os.getenv("CB_API_KEY")
    api_secret = os.getenv("CB_API_SECRET")
    if api_key and api_secret:
        return CoinbaseCredentials(api_key, api_secret)

    path = _config_path(config_path)
    stored = _read_config(path)
    api_key = stored.get("api_key") or api_key
    api_secret = stored.get("api_secret") or api_secret
    if not api_key or not api_secret:
        raise ValueError(
            "Missing Coinbase credentials. Set CB_API_KEY and CB_API_SECRET, "
            f"or store them in {path} (CB_CONFIG_PATH overrides the location)"
        )
    return CoinbaseCredentials(api_key, api_secret)


def try_load_credentials(config_path: Optional[str] = None) -> Optional[CoinbaseCredentials]:
    """Like load_credentials, but returns None when nothing is configured."""
    try:
        creds = load_credentials(config_path)
    except ValueError as e:
        logger.info(f"No server Coinbase credentials; authenticated feed channels disabled | reason={e}")
        return None
    logger.info(f"Server Coinbase credentials loaded | key={creds.preview}")
    return creds


def save_config(config_path: str, api_key: str, api_secret: str) -> None:
    """Write the server's credentials file (plaintext JSON, mode 0600)."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret}, f, indent=2)
    try:
        path.chmod(0o600)
    except NotImplementedError:
        pass
    logger.info(f"Saved server Coinbase credentials | path={path} key={key_preview(api_key)}")
