"""Coinbase OAuth2: authorization URL, code exchange, refresh and revoke.

The flow is a linear sequence of token-endpoint calls. The `state` parameter
generated for the authorization URL is kept in the user's session and compared
on callback (CSRF protection). Refresh has no retry policy and concurrent
refreshes for the same session are not arbitrated.

Token endpoint calls are synchronous (requests); the web server runs them via
`asyncio.to_thread`.
"""
import hmac
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests

from .config import OAuthConfig
from .logging_setup import logger


class OAuthError(Exception):
    pass


class OAuthStateError(OAuthError):
    """Raised when the callback state is missing or does not match."""


class OAuthNotConfiguredError(OAuthError):
    pass


@dataclass
class OAuthToken:
    access_token: str
    refresh_token: Optional[str]
    token_type: str
    expires_in: int
    scope: Optional[str]
    created_at: float  # unix seconds

    @property
    def expires_at(self) -> float:
        return self.created_at + self.expires_in

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OAuthToken":
        return cls(
            access_token=d["access_token"],
            refresh_token=d.get("refresh_token"),
            token_type=d.get("token_type", "bearer"),
            expires_in=int(d.get("expires_in") or 0),
            scope=d.get("scope"),
            created_at=float(d.get("created_at") or time.time()),
        )


AVAILABLE_SCOPES: List[Tuple[str, str]] = [
    ("wallet:accounts:read", "View your accounts and their balances"),
    ("wallet:accounts:update", "Update your account settings"),
    ("wallet:addresses:read", "View your addresses"),
    ("wallet:addresses:create", "Create new addresses"),
    ("wallet:buys:read", "View your buys"),
    ("wallet:buys:create", "Create new buys"),
    ("wallet:deposits:read", "View your deposits"),
    ("wallet:notifications:read", "View your notifications"),
    ("wallet:orders:read", "View your orders"),
    ("wallet:orders:create", "Create new orders"),
    ("wallet:payment-methods:read", "View your payment methods"),
    ("wallet:sells:read", "View your sells"),
    ("wallet:sells:create", "Create new sells"),
    ("wallet:transactions:read", "View your transactions"),
    ("wallet:transactions:send", "Send funds"),
    ("wallet:transactions:transfer", "Transfer funds between accounts"),
    ("wallet:user:read", "View your basic user information"),
    ("wallet:user:email", "View your email address"),
    ("wallet:withdrawals:read", "View your withdrawals"),
    ("wallet:withdrawals:create", "Create new withdrawals"),
]


def generate_state() -> str:
    return secrets.token_hex(16)


def verify_state(expected: Optional[str], received: Optional[str]) -> None:
    """Compare the session state with the callback state.

    Raises:
        OAuthStateError: If either is missing or they differ
    """
    if not expected or not received:
        raise OAuthStateError("Missing OAuth state")
    if not hmac.compare_digest(str(expected), str(received)):
        raise OAuthStateError("OAuth state mismatch")


class OAuthService:
    """Coinbase OAuth2 client."""

    def __init__(self, config: OAuthConfig):
        self.config = config
        # one request per token call; authorization codes are single-use
        self.session = requests.Session()

    @property
    def redirect_url(self) -> str:
        return self.config.redirect_url

    def set_redirect_url(self, url: str) -> None:
        self.config.redirect_url = url
        logger.info(f"OAuth redirect URL set | url={url}")

    def configuration_status(self) -> Dict[str, bool]:
        return {
            "configured": bool(self.config.client_id and self.config.client_secret),
            "client_id_available": bool(self.config.client_id),
            "client_secret_available": bool(self.config.client_secret),
        }

    def _require_configured(self) -> None:
        if not (self.config.client_id and self.config.client_secret):
            raise OAuthNotConfiguredError("OAuth client configuration missing")

    @staticmethod
    def available_scopes() -> List[Dict[str, str]]:
        return [{"scope": s, "description": d} for s, d in AVAILABLE_SCOPES]

    def get_authorization_url(self, scopes: Optional[List[str]] = None) -> Tuple[str, str]:
        """Return (authorization URL, state)."""
        self._require_configured()
        state = generate_state()
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_url,
            "state": state,
            "scope": " ".join(scopes or self.config.scopes),
        }
        return f"{self.config.auth_url}?{urlencode(params)}", state

    def _token_request(self, params: Dict[str, str]) -> OAuthToken:
        try:
            resp = self.session.post(self.config.token_url, data=params, timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            raise OAuthError(f"Token request failed: {e}")

        if not resp.ok:
            try:
                detail = resp.json().get("error") or resp.text
            except ValueError:
                detail = resp.text
            raise OAuthError(f"{resp.status_code}: {detail}")

        data = resp.json()
        if "access_token" not in data:
            raise OAuthError("Token response did not include an access_token")
        return OAuthToken(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "bearer"),
            expires_in=int(data.get("expires_in") or 0),
            scope=data.get("scope"),
            created_at=time.time(),
        )

    def exchange_code_for_token(self, code: str) -> OAuthToken:
        self._require_configured()
        if not code:
            raise OAuthError("Authorization code is required")
        token = self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "redirect_uri": self.config.redirect_url,
        })
        logger.info(f"OAuth code exchanged | expires_in={token.expires_in} scope={token.scope}")
        return token

    def refresh_token(self, refresh_token: str) -> OAuthToken:
        self._require_configured()
        if not refresh_token:
            raise OAuthError("No refresh token available")
        token = self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        })
        logger.info(f"OAuth token refreshed | expires_in={token.expires_in}")
        return token

    def revoke_token(self, token: str) -> bool:
        self._require_configured()
        try:
            resp = self.session.post(
                self.config.revoke_url,
                data={
                    "token": token,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                },
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"OAuth revoke failed | error={e}")
            return False
        if not resp.ok:
            logger.error(f"OAuth revoke failed | status={resp.status_code}")
            return False
        return True

    @staticmethod
    def is_token_valid(token: OAuthToken, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < token.expires_at
