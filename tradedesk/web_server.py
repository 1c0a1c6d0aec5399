"""aiohttp server behind the trading dashboard.

Serves the JSON API under /api, the OAuth redirect page at /auth/redirect and
the market-data relay at /ws. On startup it connects to the Coinbase feed,
folds every message into the order book / ticker / trade tape reducer and
broadcasts it to connected browsers.

Authentication:
- Dashboard users log in with username/password and receive a JWT that is
  sent as `Authorization: Bearer <token>`.
- Trading endpoints use the user's stored Coinbase API keys (key vault
  rotation).
- Coinbase OAuth tokens live in the encrypted cookie session.
"""

import asyncio
import functools
import html
import json
import time
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web
from aiohttp_session import get_session, setup as session_setup
from aiohttp_session.cookie_storage import EncryptedCookieStorage
from cryptography import fernet
from pydantic import BaseModel, ValidationError

from .auth import AuthService, AuthValidationError, InvalidCredentialsError, UserExistsError
from .coinbase_client import (
    AuthenticationError,
    CoinbaseAPIError,
    CoinbaseClient,
    CredentialsRequiredError,
    RateLimitError,
)
from .config import DashboardConfig, load_config
from .key_vault import KeyVault, KeyVaultError
from .logging_setup import logger, setup_logging
from .oauth import (
    OAuthError,
    OAuthNotConfiguredError,
    OAuthService,
    OAuthStateError,
    OAuthToken,
    verify_state,
)
from .order_book import MarketDataStore
from .orders import (
    OrderType,
    OrderTracker,
    OrderValidationError,
    build_order_request,
    calculate_order,
    parse_ticket,
)
from .persistence_sqlite import SQLiteStore
from .relay import FeedRelay
from .seasonal_theme import seasonal_theme
from .secrets import key_preview, try_load_credentials
from .ws_client import CoinbaseFeedClient


def json_error(status: int, error: str, message: Optional[str] = None) -> web.Response:
    return web.json_response({"error": error, "message": message or error}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map domain and upstream errors to JSON error bodies."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except OrderValidationError as e:
        return json_error(400, "Invalid order", str(e))
    except CredentialsRequiredError as e:
        return json_error(400, "API credentials required", e.message)
    except AuthenticationError as e:
        return json_error(401, "Coinbase authentication failed", e.message)
    except RateLimitError as e:
        return json_error(429, "Rate limited", e.message)
    except CoinbaseAPIError as e:
        return json_error(502, "Coinbase API error", e.message)
    except OAuthStateError as e:
        return json_error(400, "Invalid state parameter", str(e))
    except OAuthNotConfiguredError as e:
        return json_error(500, "OAuth client configuration missing", str(e))
    except OAuthError as e:
        return json_error(502, "OAuth request failed", str(e))
    except KeyVaultError as e:
        logger.error(f"Key vault error | path={request.path} error={e}")
        return json_error(500, "Key vault error", str(e))
    except Exception as e:
        logger.exception(f"Unhandled error | path={request.path} error={e}")
        return json_error(500, "Internal server error")


class CredentialsBody(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class ApiKeyBody(BaseModel):
    label: Optional[str] = None
    apiKey: Optional[str] = None
    apiSecret: Optional[str] = None


class FavoriteBody(BaseModel):
    product_id: str


class OAuthTokenBody(BaseModel):
    code: Optional[str] = None
    state: Optional[str] = None


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON", "message": "Request body must be JSON"}),
            content_type="application/json",
        )
    return data if isinstance(data, dict) else {}


def _parse(model, data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid request", "message": f"{loc}: {first.get('msg')}"}),
            content_type="application/json",
        )


def _int_query(request: web.Request, name: str, default: int) -> int:
    try:
        return int(request.query.get(name, default))
    except (TypeError, ValueError):
        return default


def _bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header.split(" ", 1)[1].strip() or None
    return None


def requires_user(handler):
    """Require a valid JWT; the decoded user is placed in request["user"]."""

    @functools.wraps(handler)
    async def wrapper(self, request: web.Request):
        token = _bearer_token(request)
        if not token:
            return json_error(401, "Authentication required")
        user = self.auth.verify_token(token)
        if user is None:
            return json_error(403, "Invalid or expired token")
        request["user"] = user
        return await handler(self, request)

    return wrapper


def _token_response(token: OAuthToken) -> Dict[str, Any]:
    return {
        "access_token": token.access_token,
        "refresh_token": token.refresh_token,
        "expires_in": token.expires_in,
        "token_type": token.token_type,
        "scope": token.scope,
    }


_REDIRECT_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Coinbase OAuth Redirect</title>
  <script>
    window.onload = function () {{
      if (window.opener) {{
        window.opener.postMessage({payload}, "*");
        window.close();
      }}
    }};
  </script>
</head>
<body>
  <h1>{title}</h1>
  <p>{detail}</p>
</body>
</html>
"""


def _redirect_page(ok: bool, detail: str, status: int = 200) -> web.Response:
    payload = {"type": "oauth_callback" if ok else "oauth_error"}
    if not ok:
        payload["error"] = detail
    # inline <script> context: no raw "<", ">" or "&" in the JSON
    script_payload = json.dumps(payload).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    page = _REDIRECT_PAGE.format(
        payload=script_payload,
        title="Coinbase connected" if ok else "Coinbase connection failed",
        detail=html.escape(detail),
    )
    return web.Response(text=page, content_type="text/html", status=status)


class DashboardServer:
    """Dashboard backend application.

    Args:
        config: Dashboard configuration (defaults if omitted)
        store: SQLiteStore; created from `config.persistence` if omitted
        client_factory: Callable `(api_key=None, api_secret=None)` returning an
                        un-entered CoinbaseClient (or compatible)
        feed: Upstream feed client; created from config if omitted
        oauth: OAuthService; created from `config.oauth` if omitted
        start_feed: Whether to connect to the upstream feed on startup
    """

    def __init__(
        self,
        config: Optional[DashboardConfig] = None,
        store: Optional[SQLiteStore] = None,
        client_factory: Optional[Callable[..., Any]] = None,
        feed: Optional[CoinbaseFeedClient] = None,
        oauth: Optional[OAuthService] = None,
        start_feed: bool = True,
    ):
        self.config = config or DashboardConfig.default()
        persistence = self.config.persistence
        server = self.config.server
        market = self.config.market_data

        self._owns_store = store is None
        self.store = store or SQLiteStore(Path(persistence.db_path), password=persistence.encryption_password)
        self.vault = KeyVault(self.store, persistence.vault_key)
        self.auth = AuthService(self.store, server.jwt_secret, server.jwt_expiration_hours)
        self.oauth = oauth or OAuthService(self.config.oauth)
        self.tracker = OrderTracker(self.store)
        self.client_factory = client_factory or functools.partial(CoinbaseClient.from_config, self.config.exchange)
        self.server_credentials = try_load_credentials()

        self.market_data = MarketDataStore(market.book_depth, market.trade_tape_size)
        self.feed = feed or CoinbaseFeedClient(
            self.config.exchange.ws_url,
            product_ids=list(self.config.exchange.default_products),
            reconnect_delay=market.reconnect_delay_seconds,
            subscription_interval=market.subscription_interval_seconds,
            credentials=self.server_credentials,
        )
        self.relay = FeedRelay(
            self.feed,
            credentials_available=lambda: self.server_credentials is not None,
            subscription_interval=market.subscription_interval_seconds,
        )
        self.start_feed = start_feed
        self.market_client = None
        self._feed_task: Optional[asyncio.Task] = None
        self._start_time = time.time()

        self.app = web.Application(middlewares=[error_middleware])
        self._setup_routes()

        session_key = server.session_key
        if session_key:
            cookie_fernet = fernet.Fernet(session_key.encode())
        else:
            # not persistent; sessions end on restart
            cookie_fernet = fernet.Fernet(fernet.Fernet.generate_key())
        session_setup(self.app, EncryptedCookieStorage(cookie_fernet, cookie_name="TRADEDESK_SESSION"))

    def _setup_routes(self):
        r = self.app.router
        r.add_get("/api/health", self.handle_health)
        r.add_get("/health/live", self.handle_liveness)
        r.add_get("/health/ready", self.handle_readiness)

        r.add_post("/api/register", self.handle_register)
        r.add_post("/api/login", self.handle_login)
        r.add_post("/api/logout", self.handle_logout)
        r.add_get("/api/user", self.handle_user)

        r.add_post("/api/keys", self.handle_create_key)
        r.add_get("/api/keys", self.handle_list_keys)
        r.add_delete("/api/keys/{id}", self.handle_delete_key)

        r.add_get("/api/oauth/config", self.handle_oauth_config)
        r.add_get("/api/oauth/scopes", self.handle_oauth_scopes)
        r.add_get("/api/oauth/authorize", self.handle_oauth_authorize)
        r.add_get("/auth/redirect", self.handle_oauth_redirect)
        r.add_post("/api/oauth/token", self.handle_oauth_token)
        r.add_post("/api/oauth/refresh", self.handle_oauth_refresh)
        r.add_post("/api/oauth/revoke", self.handle_oauth_revoke)
        r.add_get("/api/oauth/status", self.handle_oauth_status)
        r.add_post("/api/oauth/logout", self.handle_oauth_logout)
        r.add_get("/api/oauth/user", self.handle_oauth_user)
        r.add_get("/api/oauth/accounts", self.handle_oauth_accounts)
        r.add_get("/api/oauth/accounts/{account_id}/transactions", self.handle_oauth_transactions)

        r.add_get("/api/products", self.handle_products)
        r.add_get("/api/products/{product_id}/details", self.handle_product_details)
        r.add_get("/api/products/{product_id}/trades", self.handle_product_trades)
        r.add_get("/api/products/{product_id}/book", self.handle_product_book)
        r.add_get("/api/products/{product_id}/candles", self.handle_product_candles)
        r.add_get("/api/market/{product_id}", self.handle_market_snapshot)

        r.add_get("/api/accounts", self.handle_accounts)
        r.add_post("/api/orders/preview", self.handle_order_preview)
        r.add_get("/api/orders/history", self.handle_order_history)
        r.add_post("/api/orders", self.handle_create_order)
        r.add_get("/api/orders", self.handle_list_orders)
        r.add_delete("/api/orders/{order_id}", self.handle_cancel_order)
        r.add_get("/api/fills", self.handle_fills)

        r.add_post("/api/favorites", self.handle_add_favorite)
        r.add_get("/api/favorites", self.handle_list_favorites)
        r.add_delete("/api/favorites/{id}", self.handle_delete_favorite)

        r.add_get("/api/theme", self.handle_theme)
        r.add_get("/ws", self.relay.handle)

        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)

    # --- lifecycle ---
    async def _on_startup(self, app):
        creds = self.server_credentials
        self.market_client = self.client_factory(*(creds or ()))
        await self.market_client.__aenter__()
        if self.start_feed:
            self._feed_task = asyncio.create_task(self.feed.run(self._on_feed_message))
            logger.info(f"Feed started | products={self.config.exchange.default_products}")

    async def _on_cleanup(self, app):
        await self.feed.stop()
        if self._feed_task:
            self._feed_task.cancel()
            try:
                await self._feed_task
            except asyncio.CancelledError:
                pass
        await self.relay.close_all()
        if self.market_client is not None:
            await self.market_client.__aexit__(None, None, None)
        if self._owns_store:
            self.store.close()

    async def _on_feed_message(self, message: Dict[str, Any]) -> None:
        self.market_data.handle_message(message)
        await self.relay.broadcast(message)

    # --- health ---
    async def handle_health(self, request: web.Request):
        """Overall health: database, upstream feed and relay clients.

        Returns 200 if the database is reachable, 503 otherwise.
        """
        checks = {
            "status": "healthy",
            "timestamp": int(time.time()),
            "uptime_seconds": time.time() - self._start_time,
            "checks": {},
        }
        try:
            await asyncio.to_thread(self.store.ping)
            checks["checks"]["database"] = {"status": "up"}
        except Exception as e:
            checks["checks"]["database"] = {"status": "down", "error": str(e)}
            checks["status"] = "unhealthy"

        checks["checks"]["feed"] = {"status": "up" if self.feed.is_open else "down"}
        checks["checks"]["websockets"] = {"status": "up", "connected_clients": len(self.relay.clients)}

        http_status = 200 if checks["status"] == "healthy" else 503
        return web.json_response(checks, status=http_status)

    async def handle_liveness(self, request: web.Request):
        return web.json_response({"status": "alive", "timestamp": int(time.time())})

    async def handle_readiness(self, request: web.Request):
        ready = True
        checks = {}
        try:
            await asyncio.to_thread(self.store.ping)
            checks["database"] = "ready"
        except Exception as e:
            checks["database"] = f"not_ready: {e}"
            ready = False
        return web.json_response(
            {"ready": ready, "checks": checks, "timestamp": int(time.time())},
            status=200 if ready else 503,
        )

    # --- dashboard users ---
    async def handle_register(self, request: web.Request):
        body = _parse(CredentialsBody, await _json_body(request))
        try:
            user = await asyncio.to_thread(self.auth.register, body.username, body.password)
        except AuthValidationError as e:
            return json_error(400, "Invalid registration", str(e))
        except UserExistsError as e:
            return json_error(400, "Username already exists", str(e))
        token = self.auth.create_token(user)
        return web.json_response({"message": "Registration successful", "user": user, "token": token}, status=201)

    async def handle_login(self, request: web.Request):
        body = _parse(CredentialsBody, await _json_body(request))
        try:
            user = await asyncio.to_thread(self.auth.login, body.username, body.password)
        except AuthValidationError as e:
            return json_error(400, "Invalid login", str(e))
        except InvalidCredentialsError as e:
            return json_error(401, "Invalid credentials", str(e))
        token = self.auth.create_token(user)
        return web.json_response({"message": "Login successful", "user": user, "token": token})

    async def handle_logout(self, request: web.Request):
        # JWTs are stateless; the client drops its token
        return web.json_response({"message": "Logged out successfully"})

    @requires_user
    async def handle_user(self, request: web.Request):
        user = await asyncio.to_thread(self.store.get_user, request["user"]["id"])
        if not user:
            return json_error(404, "User not found")
        return web.json_response(AuthService.public_user(user))

    # --- API keys ---
    async def _validate_credentials(self, api_key: str, api_secret: str) -> None:
        """Raises CoinbaseAPIError when Coinbase cannot be reached with these credentials."""
        async with self.client_factory(api_key, api_secret) as client:
            products = await client.get_products()
            logger.info(f"Credential check: products reachable | key={key_preview(api_key)} count={len(products)}")
            try:
                await client.get_accounts()
            except CoinbaseAPIError as e:
                logger.warning(f"Advanced API check failed; continuing with public access | error={e}")

    @requires_user
    async def handle_create_key(self, request: web.Request):
        user = request["user"]
        body = _parse(ApiKeyBody, await _json_body(request))
        api_key = (body.apiKey or "").strip()
        api_secret = (body.apiSecret or "").strip()
        if not api_key:
            return json_error(400, "Missing API key", "API key is required")
        if not api_secret:
            return json_error(400, "Missing API secret", "API secret is required")

        try:
            await self._validate_credentials(api_key, api_secret)
        except CoinbaseAPIError as e:
            logger.warning(f"API credential validation failed | key={key_preview(api_key)} error={e}")
            return json_error(400, "Invalid Coinbase API credentials", e.message)

        row = await asyncio.to_thread(
            self.vault.store_key, user["id"], body.label or "Coinbase API Key", api_key, api_secret
        )
        view = KeyVault.public_view(row)
        return web.json_response(
            {k: view[k] for k in ("id", "userId", "label", "isActive", "createdAt", "apiKeyPreview")},
            status=201,
        )

    @requires_user
    async def handle_list_keys(self, request: web.Request):
        keys = await asyncio.to_thread(self.vault.get_user_keys, request["user"]["id"])
        return web.json_response(keys)

    @requires_user
    async def handle_delete_key(self, request: web.Request):
        try:
            key_id = int(request.match_info["id"])
        except ValueError:
            return json_error(400, "Invalid key ID")
        key = await asyncio.to_thread(self.store.get_api_key, key_id)
        if not key:
            return json_error(404, "API key not found")
        if key["user_id"] != request["user"]["id"]:
            return json_error(403, "Unauthorized access to this API key")
        await asyncio.to_thread(self.vault.delete_key, key_id)
        return web.Response(status=204)

    # --- OAuth ---
    @staticmethod
    def _store_token(session, token: OAuthToken) -> None:
        session["oauth_token"] = token.to_dict()
        session["authenticated"] = True

    @staticmethod
    def _clear_tokens(session) -> None:
        for key in ("oauth_token", "oauth_state"):
            session.pop(key, None)
        session["authenticated"] = False

    async def _session_access_token(self, session) -> Optional[str]:
        """Access token from the session, refreshed first when it has expired."""
        raw = session.get("oauth_token")
        if not raw:
            return None
        token = OAuthToken.from_dict(raw)
        if self.oauth.is_token_valid(token):
            return token.access_token
        if not token.refresh_token:
            self._clear_tokens(session)
            return None
        try:
            token = await asyncio.to_thread(self.oauth.refresh_token, token.refresh_token)
        except OAuthError as e:
            logger.warning(f"OAuth refresh failed; clearing session tokens | error={e}")
            self._clear_tokens(session)
            return None
        self._store_token(session, token)
        return token.access_token

    async def _with_oauth_client(self, request: web.Request, call: Callable[[Any, str], Awaitable[Any]]):
        session = await get_session(request)
        access_token = await self._session_access_token(session)
        if not access_token:
            return json_error(401, "Not authenticated")
        async with self.client_factory() as client:
            try:
                result = await call(client, access_token)
            except AuthenticationError:
                self._clear_tokens(session)
                return json_error(401, "Authentication token expired or invalid")
        return web.json_response(result)

    async def handle_oauth_config(self, request: web.Request):
        redirect_uri = f"{request.scheme}://{request.host}/auth/redirect"
        self.oauth.set_redirect_url(redirect_uri)
        return web.json_response({**self.oauth.configuration_status(), "redirect_uri": redirect_uri})

    async def handle_oauth_scopes(self, request: web.Request):
        return web.json_response(self.oauth.available_scopes())

    async def handle_oauth_authorize(self, request: web.Request):
        scope_param = request.query.get("scope")
        scopes = scope_param.split() if scope_param else None
        url, state = self.oauth.get_authorization_url(scopes)
        session = await get_session(request)
        session["oauth_state"] = state
        if request.query.get("redirect") in ("1", "true"):
            raise web.HTTPFound(url)
        return web.json_response({"url": url, "state": state})

    async def handle_oauth_redirect(self, request: web.Request):
        error = request.query.get("error")
        if error:
            return _redirect_page(False, error, status=400)
        code = request.query.get("code")
        if not code:
            return _redirect_page(False, "Authorization code missing", status=400)

        session = await get_session(request)
        try:
            verify_state(session.get("oauth_state"), request.query.get("state"))
            token = await asyncio.to_thread(self.oauth.exchange_code_for_token, code)
        except OAuthStateError as e:
            logger.warning(f"OAuth redirect rejected | reason={e}")
            return _redirect_page(False, "Invalid state parameter", status=400)
        except OAuthError as e:
            logger.error(f"OAuth code exchange failed | error={e}")
            return _redirect_page(False, str(e), status=502)

        session.pop("oauth_state", None)
        self._store_token(session, token)
        return _redirect_page(True, "You can close this window.")

    async def handle_oauth_token(self, request: web.Request):
        body = _parse(OAuthTokenBody, await _json_body(request))
        session = await get_session(request)
        verify_state(session.get("oauth_state"), body.state)
        if not body.code:
            return json_error(400, "Authorization code missing")
        token = await asyncio.to_thread(self.oauth.exchange_code_for_token, body.code)
        session.pop("oauth_state", None)
        self._store_token(session, token)
        return web.json_response(_token_response(token))

    async def handle_oauth_refresh(self, request: web.Request):
        data = await _json_body(request)
        session = await get_session(request)
        refresh_token = data.get("refresh_token") or (session.get("oauth_token") or {}).get("refresh_token")
        if not refresh_token:
            return json_error(400, "No refresh token available")
        token = await asyncio.to_thread(self.oauth.refresh_token, refresh_token)
        self._store_token(session, token)
        return web.json_response(_token_response(token))

    async def handle_oauth_revoke(self, request: web.Request):
        data = await _json_body(request)
        session = await get_session(request)
        token = data.get("token") or (session.get("oauth_token") or {}).get("access_token")
        if not token:
            return json_error(400, "Token is required")
        ok = await asyncio.to_thread(self.oauth.revoke_token, token)
        if not ok:
            return json_error(500, "Failed to revoke token")
        self._clear_tokens(session)
        return web.json_response({"success": True})

    async def handle_oauth_status(self, request: web.Request):
        session = await get_session(request)
        authenticated = bool(session.get("authenticated") and session.get("oauth_token"))
        return web.json_response({
            "authenticated": authenticated,
            "auth_type": "oauth" if authenticated else None,
            "has_api_credentials": self.server_credentials is not None,
        })

    async def handle_oauth_logout(self, request: web.Request):
        session = await get_session(request)
        self._clear_tokens(session)
        return web.json_response({"success": True, "message": "Logged out successfully"})

    async def handle_oauth_user(self, request: web.Request):
        return await self._with_oauth_client(request, lambda c, t: c.get_user_profile(t))

    async def handle_oauth_accounts(self, request: web.Request):
        return await self._with_oauth_client(request, lambda c, t: c.get_oauth_accounts(t))

    async def handle_oauth_transactions(self, request: web.Request):
        account_id = request.match_info["account_id"]
        return await self._with_oauth_client(request, lambda c, t: c.get_oauth_transactions(t, account_id))

    # --- market data ---
    async def handle_products(self, request: web.Request):
        return web.json_response(await self.market_client.get_products())

    async def handle_product_details(self, request: web.Request):
        product_id = request.match_info["product_id"]
        details = await self.market_client.get_product_details([product_id])
        if not details:
            return json_error(404, "Product not found")
        return web.json_response(details[0])

    async def handle_product_trades(self, request: web.Request):
        product_id = request.match_info["product_id"]
        trades = await self.market_client.get_product_trades(product_id, _int_query(request, "limit", 100))
        return web.json_response(trades)

    async def handle_product_book(self, request: web.Request):
        product_id = request.match_info["product_id"]
        book = await self.market_client.get_product_book(product_id, _int_query(request, "level", 2))
        return web.json_response(book)

    async def handle_product_candles(self, request: web.Request):
        product_id = request.match_info["product_id"]
        start = request.query.get("start")
        end = request.query.get("end")
        if not start or not end:
            return json_error(400, "Missing parameters", "start and end parameters are required")
        candles = await self.market_client.get_product_candles(
            product_id, start, end, _int_query(request, "granularity", 3600)
        )
        return web.json_response(candles)

    async def handle_market_snapshot(self, request: web.Request):
        return web.json_response(self.market_data.snapshot(request.match_info["product_id"]))

    @staticmethod
    def _first_positive(candidates) -> Optional[Decimal]:
        for raw in candidates:
            try:
                price = Decimal(str(raw))
                if price > 0:
                    return price
            except InvalidOperation:
                continue
        return None

    async def _market_price(self, product_id: str) -> Optional[Decimal]:
        """Latest feed ticker price, falling back to Exchange stats."""
        ticker = self.market_data.market(product_id).ticker
        price = self._first_positive([ticker.price] if ticker else [])
        if price is None:
            details = await self.market_client.get_product_details([product_id])
            price = self._first_positive(d.get("price") for d in details)
        return price

    # --- trading ---
    async def _with_user_client(self, user_id: int, call: Callable[[Any], Awaitable[Any]]):
        """Run `call(client)` with the user's next API key, rotating to another key on auth/rate-limit errors."""
        keys = await asyncio.to_thread(self.store.get_active_api_keys, user_id)
        attempts = max(1, len(keys))
        for attempt in range(attempts):
            selection = await asyncio.to_thread(self.vault.get_next_key, user_id)
            if selection is None:
                raise CredentialsRequiredError("No active API keys; add a Coinbase API key first")
            async with self.client_factory(selection.api_key, selection.api_secret) as client:
                try:
                    result = await call(client)
                except (AuthenticationError, RateLimitError) as e:
                    await asyncio.to_thread(self.vault.update_key_status, selection.key_id, False)
                    if attempt + 1 >= attempts:
                        raise
                    logger.warning(f"API key rejected; rotating | key_id={selection.key_id} error={e}")
                    continue
                except CoinbaseAPIError:
                    await asyncio.to_thread(self.vault.update_key_status, selection.key_id, False)
                    raise
            await asyncio.to_thread(self.vault.update_key_status, selection.key_id, True)
            return result

    @requires_user
    async def handle_accounts(self, request: web.Request):
        accounts = await self._with_user_client(request["user"]["id"], lambda c: c.get_accounts())
        return web.json_response(accounts)

    async def handle_order_preview(self, request: web.Request):
        ticket = parse_ticket(await _json_body(request))
        price = None if ticket.order_type == OrderType.LIMIT else await self._market_price(ticket.product_id)
        estimate = calculate_order(ticket, price)
        return web.json_response(estimate.to_dict())

    @requires_user
    async def handle_create_order(self, request: web.Request):
        user_id = request["user"]["id"]
        ticket = parse_ticket(await _json_body(request))
        price = None if ticket.order_type == OrderType.LIMIT else await self._market_price(ticket.product_id)
        estimate = calculate_order(ticket, price)
        order_body = build_order_request(ticket, price)

        response = await self._with_user_client(user_id, lambda c: c.create_order(order_body))
        record = await asyncio.to_thread(self.tracker.record_placed, user_id, ticket, order_body, response)

        result = {"order": record.to_dict(), "estimate": estimate.to_dict(), "response": response}
        if response.get("success") is False:
            reason = (response.get("error_response") or {}).get("message") or response.get("failure_reason")
            return web.json_response({**result, "error": "Order rejected", "message": reason or "Order rejected"}, status=400)
        return web.json_response(result, status=201)

    @requires_user
    async def handle_list_orders(self, request: web.Request):
        limit = _int_query(request, "limit", 100)
        orders = await self._with_user_client(request["user"]["id"], lambda c: c.list_orders(limit))
        for order in orders:
            if order.get("order_id"):
                await asyncio.to_thread(self.tracker.sync, order["order_id"], order.get("status"))
        return web.json_response(orders)

    @requires_user
    async def handle_order_history(self, request: web.Request):
        records = await asyncio.to_thread(
            self.store.list_orders, request["user"]["id"], _int_query(request, "limit", 100)
        )
        return web.json_response([r.to_dict() for r in records])

    @requires_user
    async def handle_cancel_order(self, request: web.Request):
        user_id = request["user"]["id"]
        order_id = request.match_info["order_id"]
        local = await asyncio.to_thread(self.store.get_order, order_id)
        if local is not None and local.user_id != user_id:
            return json_error(403, "Unauthorized access to this order")

        ok = await self._with_user_client(user_id, lambda c: c.cancel_order(order_id))
        if not ok:
            return json_error(400, "Cancel rejected", f"Coinbase did not cancel order {order_id}")
        record = await asyncio.to_thread(self.tracker.mark_cancelled, order_id)
        return web.json_response({"success": True, "order": record.to_dict() if record else None})

    @requires_user
    async def handle_fills(self, request: web.Request):
        limit = _int_query(request, "limit", 100)
        fills = await self._with_user_client(request["user"]["id"], lambda c: c.get_fills(limit))
        return web.json_response(fills)

    # --- favorites ---
    @requires_user
    async def handle_add_favorite(self, request: web.Request):
        body = _parse(FavoriteBody, await _json_body(request))
        product_id = body.product_id.strip().upper()
        if not product_id:
            return json_error(400, "Invalid request", "product_id is required")
        row = await asyncio.to_thread(self.store.add_favorite, request["user"]["id"], product_id)
        return web.json_response(row, status=201)

    @requires_user
    async def handle_list_favorites(self, request: web.Request):
        rows = await asyncio.to_thread(self.store.list_favorites, request["user"]["id"])
        return web.json_response(rows)

    @requires_user
    async def handle_delete_favorite(self, request: web.Request):
        try:
            favorite_id = int(request.match_info["id"])
        except ValueError:
            return json_error(400, "Invalid favorite ID")
        row = await asyncio.to_thread(self.store.get_favorite, favorite_id)
        if not row:
            return json_error(404, "Favorite not found")
        if row["user_id"] != request["user"]["id"]:
            return json_error(403, "Unauthorized access to this favorite")
        await asyncio.to_thread(self.store.delete_favorite, favorite_id)
        return web.Response(status=204)

    # --- theme ---
    async def handle_theme(self, request: web.Request):
        raw = request.query.get("date")
        try:
            day = date.fromisoformat(raw) if raw else None
        except ValueError:
            return json_error(400, "Invalid date", "date must be YYYY-MM-DD")
        return web.json_response(seasonal_theme(day))

    def run(self):
        web.run_app(self.app, host=self.config.server.host, port=self.config.server.port)


def main():
    config = load_config()
    setup_logging(config.persistence.log_file, config.persistence.log_level)
    server = DashboardServer(config)
    logger.info(f"Starting dashboard server | host={config.server.host} port={config.server.port}")
    server.run()


if __name__ == "__main__":
    main()
