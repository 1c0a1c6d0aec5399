import time

import pytest
from aiohttp.test_utils import TestClient, TestServer
from cryptography.fernet import Fernet

from tradedesk.auth import AuthService
from tradedesk.coinbase_client import (
    AuthenticationError,
    CoinbaseAPIError,
    CredentialsRequiredError,
)
from tradedesk.config import DashboardConfig
from tradedesk.oauth import OAuthError, OAuthToken
from tradedesk.persistence_sqlite import SQLiteStore
from tradedesk.web_server import DashboardServer


class FakeExchange:
    """Shared state behind every FakeClient the server creates."""

    def __init__(self):
        self.products = [
            {"product_id": "BTC-USD", "price": "0", "base_name": "BTC", "quote_name": "USD"},
            {"product_id": "ETH-USD", "price": "0", "base_name": "ETH", "quote_name": "USD"},
        ]
        self.prices = {"BTC-USD": "50000", "ETH-USD": "2500"}
        self.bad_keys = set()
        self.fail_products = False
        self.cancel_ok = True
        self.orders = []
        self.cancelled = []
        self.remote_orders = []
        self.used_keys = []
        self.profile_tokens = []

    def client(self, api_key=None, api_secret=None):
        return FakeClient(self, api_key, api_secret)


class FakeClient:
    def __init__(self, exchange, api_key, api_secret):
        self.exchange = exchange
        self.api_key = api_key
        self.api_secret = api_secret

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    def _check(self):
        self.exchange.used_keys.append(self.api_key)
        if not self.api_key:
            raise CredentialsRequiredError()
        if self.api_key in self.exchange.bad_keys:
            raise AuthenticationError()

    async def get_products(self):
        if self.exchange.fail_products:
            raise CoinbaseAPIError(503, "unavailable")
        return [dict(p) for p in self.exchange.products]

    async def get_product_details(self, product_ids):
        return [
            dict(p, price=self.exchange.prices[p["product_id"]])
            for p in self.exchange.products
            if p["product_id"] in product_ids
        ]

    async def get_product_trades(self, product_id, limit=100):
        return [{"trade_id": str(i), "price": "50000", "size": "0.1"} for i in range(3)][:limit]

    async def get_product_book(self, product_id, level=2):
        return {"level": level, "bids": [["49999", "1"]], "asks": [["50001", "2"]]}

    async def get_product_candles(self, product_id, start, end, granularity):
        return [{"time": 1, "low": 1, "high": 2, "open": 1, "close": 2, "volume": 3, "granularity": granularity}]

    async def get_accounts(self):
        self._check()
        return [{"uuid": "acct-1", "currency": "BTC", "available_balance": {"value": "1.5", "currency": "BTC"}}]

    async def create_order(self, body):
        self._check()
        self.exchange.orders.append(body)
        return {"success": True, "success_response": {"order_id": f"order-{len(self.exchange.orders)}"}}

    async def list_orders(self, limit=100):
        self._check()
        return list(self.exchange.remote_orders)[:limit]

    async def cancel_order(self, order_id):
        self._check()
        self.exchange.cancelled.append(order_id)
        return self.exchange.cancel_ok

    async def get_fills(self, limit=100):
        self._check()
        return [{"trade_id": "f1", "order_id": "order-1"}]

    async def get_user_profile(self, access_token):
        self.exchange.profile_tokens.append(access_token)
        if access_token == "revoked":
            raise AuthenticationError()
        return {"id": "cb-user", "name": "Alice"}

    async def get_oauth_accounts(self, access_token):
        return [{"id": "wallet-1", "currency": "BTC"}]

    async def get_oauth_transactions(self, access_token, account_id):
        return [{"id": "tx-1", "account": account_id}]


class FakeFeed:
    def __init__(self):
        self.subscriptions = []
        self.is_open = False

    async def subscribe(self, product_ids, channel):
        self.subscriptions.append((channel, list(product_ids)))

    async def run(self, on_message):
        pass

    async def stop(self):
        pass


def make_server(tmp_path, exchange=None):
    config = DashboardConfig.default()
    config.server.jwt_secret = "test-secret"
    config.server.session_key = Fernet.generate_key().decode()
    config.persistence.vault_key = Fernet.generate_key().decode()
    config.oauth.client_id = "cid"
    config.oauth.client_secret = "csecret"
    config.market_data.subscription_interval_seconds = 0

    store = SQLiteStore(tmp_path / "dashboard.db")
    exchange = exchange or FakeExchange()
    server = DashboardServer(
        config,
        store=store,
        client_factory=exchange.client,
        feed=FakeFeed(),
        start_feed=False,
    )
    server.auth = AuthService(store, "test-secret", bcrypt_rounds=4)
    server.server_credentials = None
    return server, exchange


async def register(client, username="alice", password="s3cret-pass"):
    resp = await client.post("/api/register", json={"username": username, "password": password})
    assert resp.status == 201
    return (await resp.json())["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


async def add_key(client, token, api_key="organizations/o/apiKeys/key-0001", api_secret="secret"):
    resp = await client.post("/api/keys", json={"label": "main", "apiKey": api_key, "apiSecret": api_secret}, headers=bearer(token))
    assert resp.status == 201
    return await resp.json()


def oauth_token(access="at", refresh="rt", expires_in=3600, created_at=None):
    return OAuthToken(
        access_token=access,
        refresh_token=refresh,
        token_type="bearer",
        expires_in=expires_in,
        scope="wallet:user:read",
        created_at=time.time() if created_at is None else created_at,
    )


@pytest.mark.asyncio
async def test_health_endpoints(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "up"}
        assert body["checks"]["feed"] == {"status": "down"}
        assert body["checks"]["websockets"]["connected_clients"] == 0

        resp = await client.get("/health/live")
        assert (await resp.json())["status"] == "alive"
        resp = await client.get("/health/ready")
        assert (await resp.json())["ready"] is True
    server.store.close()


@pytest.mark.asyncio
async def test_register_login_and_current_user(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/register", json={"username": "alice", "password": "pw"})
        assert resp.status == 201
        body = await resp.json()
        assert body["user"]["username"] == "alice"
        assert body["token"]

        resp = await client.post("/api/register", json={"username": "alice", "password": "pw"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Username already exists"

        resp = await client.post("/api/register", json={"username": "bob"})
        assert resp.status == 400

        resp = await client.post("/api/login", json={"username": "alice", "password": "wrong"})
        assert resp.status == 401
        assert (await resp.json())["error"] == "Invalid credentials"

        resp = await client.post("/api/login", json={"username": "alice", "password": "pw"})
        assert resp.status == 200
        token = (await resp.json())["token"]

        resp = await client.get("/api/user", headers=bearer(token))
        assert resp.status == 200
        assert (await resp.json())["username"] == "alice"

        resp = await client.get("/api/user")
        assert resp.status == 401
        resp = await client.get("/api/user", headers=bearer("garbage"))
        assert resp.status == 403

        resp = await client.post("/api/logout")
        assert resp.status == 200
    server.store.close()


@pytest.mark.asyncio
async def test_invalid_json_body(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/login", data="{nope", headers={"Content-Type": "application/json"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON"
    server.store.close()


@pytest.mark.asyncio
async def test_api_key_lifecycle(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        alice = await register(client, "alice")
        bob = await register(client, "bob")

        created = await add_key(client, alice)
        assert created["apiKeyPreview"] == "orga...0001"
        assert created["isActive"] is True
        assert "apiSecret" not in created

        resp = await client.post("/api/keys", json={"apiKey": "k"}, headers=bearer(alice))
        assert resp.status == 400
        assert (await resp.json())["error"] == "Missing API secret"

        resp = await client.get("/api/keys", headers=bearer(alice))
        keys = await resp.json()
        assert [k["id"] for k in keys] == [created["id"]]
        assert keys[0]["failCount"] == 0

        resp = await client.delete(f"/api/keys/{created['id']}", headers=bearer(bob))
        assert resp.status == 403
        resp = await client.delete("/api/keys/abc", headers=bearer(alice))
        assert resp.status == 400
        resp = await client.delete("/api/keys/999", headers=bearer(alice))
        assert resp.status == 404
        resp = await client.delete(f"/api/keys/{created['id']}", headers=bearer(alice))
        assert resp.status == 204

        resp = await client.get("/api/keys", headers=bearer(alice))
        assert await resp.json() == []
    server.store.close()


@pytest.mark.asyncio
async def test_api_key_rejected_when_coinbase_unreachable(tmp_path):
    server, exchange = make_server(tmp_path)
    exchange.fail_products = True
    async with TestClient(TestServer(server.app)) as client:
        token = await register(client)
        resp = await client.post("/api/keys", json={"apiKey": "k", "apiSecret": "s"}, headers=bearer(token))
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid Coinbase API credentials"
    server.store.close()


@pytest.mark.asyncio
async def test_market_data_endpoints(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/products")
        assert [p["product_id"] for p in await resp.json()] == ["BTC-USD", "ETH-USD"]

        resp = await client.get("/api/products/BTC-USD/details")
        assert (await resp.json())["price"] == "50000"
        resp = await client.get("/api/products/DOGE-USD/details")
        assert resp.status == 404

        resp = await client.get("/api/products/BTC-USD/trades?limit=2")
        assert len(await resp.json()) == 2

        resp = await client.get("/api/products/BTC-USD/book?level=1")
        assert (await resp.json())["level"] == 1

        resp = await client.get("/api/products/BTC-USD/candles")
        assert resp.status == 400
        resp = await client.get("/api/products/BTC-USD/candles?start=a&end=b&granularity=300")
        assert (await resp.json())[0]["granularity"] == 300
    server.store.close()


@pytest.mark.asyncio
async def test_feed_messages_update_snapshot(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        await server._on_feed_message({
            "channel": "l2_data",
            "events": [{
                "type": "snapshot",
                "product_id": "BTC-USD",
                "updates": [
                    {"side": "bid", "price_level": "100", "new_quantity": "1"},
                    {"side": "offer", "price_level": "101", "new_quantity": "1"},
                ],
            }],
        })

        resp = await client.get("/api/market/BTC-USD")
        snapshot = await resp.json()
        assert snapshot["product_id"] == "BTC-USD"
        assert snapshot["order_book"]["bids"][0]["price"] == "100"
        assert snapshot["order_book"]["spread"]["value"] == "1.00"
        assert snapshot["ticker"] is None
    server.store.close()


@pytest.mark.asyncio
async def test_order_preview(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/orders/preview", json={
            "product_id": "BTC-USD", "side": "SELL", "order_type": "LIMIT", "amount": "0.5", "limit_price": "40000",
        })
        assert await resp.json() == {"price": "40000", "total_units": "0.50000000", "fee": "100.00", "total": "19900.00"}

        resp = await client.post("/api/orders/preview", json={"product_id": "BTC-USD", "side": "BUY", "amount": "100"})
        assert (await resp.json())["total_units"] == "0.00199000"

        resp = await client.post("/api/orders/preview", json={"product_id": "BTC-USD", "side": "BUY", "amount": "-1"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid order"
    server.store.close()


@pytest.mark.asyncio
async def test_order_preview_prefers_feed_ticker(tmp_path):
    server, _ = make_server(tmp_path)
    server.market_data.handle_message({
        "channel": "ticker",
        "events": [{"type": "update", "tickers": [{"product_id": "BTC-USD", "price": "49750"}]}],
    })
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/orders/preview", json={"product_id": "BTC-USD", "side": "SELL", "amount": "1"})
        body = await resp.json()
        assert body["price"] == "49750"
    server.store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("ticker_price", ["0.00", "0E-8", "n/a"])
async def test_order_preview_falls_back_when_ticker_has_no_price(tmp_path, ticker_price):
    server, _ = make_server(tmp_path)
    server.market_data.handle_message({
        "channel": "ticker",
        "events": [{"type": "update", "tickers": [{"product_id": "BTC-USD", "price": ticker_price}]}],
    })
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/orders/preview", json={"product_id": "BTC-USD", "side": "SELL", "amount": "1"})
        assert resp.status == 200
        assert (await resp.json())["price"] == "50000"
    server.store.close()


@pytest.mark.asyncio
async def test_place_sync_and_cancel_order(tmp_path):
    server, exchange = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        token = await register(client)

        resp = await client.post("/api/orders", json={"product_id": "btc-usd", "side": "buy", "amount": "100"}, headers=bearer(token))
        assert resp.status == 400
        assert (await resp.json())["error"] == "API credentials required"

        await add_key(client, token)

        resp = await client.post("/api/orders", json={"product_id": "btc-usd", "side": "buy", "amount": "100"}, headers=bearer(token))
        assert resp.status == 201
        body = await resp.json()
        assert body["order"]["order_id"] == "order-1"
        assert body["order"]["status"] == "OPEN"
        assert body["estimate"]["fee"] == "0.50"
        assert exchange.orders[0]["order_configuration"] == {"market_market_ioc": {"base_size": "0.00199000"}}

        resp = await client.get("/api/orders/history", headers=bearer(token))
        assert [o["status"] for o in await resp.json()] == ["OPEN"]

        resp = await client.post("/api/orders", json={"product_id": "BTC-USD", "side": "SELL", "order_type": "LIMIT", "amount": "0.1", "limit_price": "60000"}, headers=bearer(token))
        assert resp.status == 201
        assert exchange.orders[1]["order_configuration"]["limit_limit_gtc"]["limit_price"] == "60000"

        exchange.remote_orders = [{"order_id": "order-1", "status": "FILLED"}, {"order_id": "elsewhere", "status": "OPEN"}]
        resp = await client.get("/api/orders", headers=bearer(token))
        assert len(await resp.json()) == 2

        resp = await client.delete("/api/orders/order-2", headers=bearer(token))
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["order"]["status"] == "CANCELLED"
        assert exchange.cancelled == ["order-2"]

        resp = await client.get("/api/orders/history", headers=bearer(token))
        statuses = {o["order_id"]: o["status"] for o in await resp.json()}
        assert statuses == {"order-1": "FILLED", "order-2": "CANCELLED"}

        exchange.cancel_ok = False
        resp = await client.delete("/api/orders/unknown", headers=bearer(token))
        assert resp.status == 400

        resp = await client.get("/api/fills", headers=bearer(token))
        assert (await resp.json())[0]["trade_id"] == "f1"
    server.store.close()


@pytest.mark.asyncio
async def test_cannot_cancel_another_users_order(tmp_path):
    server, exchange = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        alice = await register(client, "alice")
        bob = await register(client, "bob")
        await add_key(client, alice)
        await add_key(client, bob, api_key="organizations/o/apiKeys/key-0002")

        resp = await client.post("/api/orders", json={"product_id": "BTC-USD", "side": "BUY", "amount": "10"}, headers=bearer(alice))
        order_id = (await resp.json())["order"]["order_id"]

        resp = await client.delete(f"/api/orders/{order_id}", headers=bearer(bob))
        assert resp.status == 403
        assert exchange.cancelled == []
    server.store.close()


@pytest.mark.asyncio
async def test_key_rotation_skips_rejected_key(tmp_path):
    server, exchange = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        token = await register(client)
        bad = await add_key(client, token, api_key="organizations/o/apiKeys/bad-0001")
        good = await add_key(client, token, api_key="organizations/o/apiKeys/good-0002")
        exchange.bad_keys.add("organizations/o/apiKeys/bad-0001")
        exchange.used_keys.clear()

        resp = await client.get("/api/accounts", headers=bearer(token))
        assert resp.status == 200
        assert (await resp.json())[0]["uuid"] == "acct-1"
        assert exchange.used_keys == ["organizations/o/apiKeys/bad-0001", "organizations/o/apiKeys/good-0002"]

        resp = await client.get("/api/keys", headers=bearer(token))
        keys = {k["id"]: k for k in await resp.json()}
        assert keys[bad["id"]]["failCount"] == 1
        assert keys[good["id"]]["failCount"] == 0
        assert keys[good["id"]]["lastSuccess"] is not None
    server.store.close()


@pytest.mark.asyncio
async def test_all_keys_rejected_returns_401(tmp_path):
    server, exchange = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        token = await register(client)
        await add_key(client, token)
        exchange.bad_keys.add("organizations/o/apiKeys/key-0001")

        resp = await client.get("/api/accounts", headers=bearer(token))
        assert resp.status == 401
        assert (await resp.json())["error"] == "Coinbase authentication failed"
    server.store.close()


@pytest.mark.asyncio
async def test_favorites(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        alice = await register(client, "alice")
        bob = await register(client, "bob")

        resp = await client.post("/api/favorites", json={"product_id": "btc-usd"}, headers=bearer(alice))
        assert resp.status == 201
        fav = await resp.json()
        assert fav["product_id"] == "BTC-USD"

        resp = await client.post("/api/favorites", json={}, headers=bearer(alice))
        assert resp.status == 400

        resp = await client.get("/api/favorites", headers=bearer(alice))
        assert [f["product_id"] for f in await resp.json()] == ["BTC-USD"]

        resp = await client.delete(f"/api/favorites/{fav['id']}", headers=bearer(bob))
        assert resp.status == 403
        resp = await client.delete("/api/favorites/12345", headers=bearer(alice))
        assert resp.status == 404
        resp = await client.delete(f"/api/favorites/{fav['id']}", headers=bearer(alice))
        assert resp.status == 204
    server.store.close()


@pytest.mark.asyncio
async def test_theme_endpoint(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/theme?date=2024-12-25")
        body = await resp.json()
        assert "christmas" in body["holidays"]
        assert body["season"] == "winter"

        resp = await client.get("/api/theme?date=not-a-date")
        assert resp.status == 400

        resp = await client.get("/api/theme")
        assert resp.status == 200
    server.store.close()


@pytest.mark.asyncio
async def test_oauth_config_and_authorize(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/oauth/config")
        body = await resp.json()
        assert body["configured"] is True
        assert body["redirect_uri"].endswith("/auth/redirect")
        assert server.oauth.redirect_url == body["redirect_uri"]

        resp = await client.get("/api/oauth/scopes")
        assert len(await resp.json()) == 20

        resp = await client.get("/api/oauth/authorize?scope=wallet:user:read")
        body = await resp.json()
        assert body["state"] in body["url"]

        resp = await client.get("/api/oauth/authorize?redirect=1", allow_redirects=False)
        assert resp.status == 302
        assert resp.headers["Location"].startswith("https://login.coinbase.com/oauth2/auth?")
    server.store.close()


@pytest.mark.asyncio
async def test_oauth_token_exchange_and_session(tmp_path, monkeypatch):
    server, exchange = make_server(tmp_path)
    monkeypatch.setattr(server.oauth, "exchange_code_for_token", lambda code: oauth_token(access=f"at-{code}"))
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/oauth/user")
        assert resp.status == 401

        resp = await client.get("/api/oauth/authorize")
        state = (await resp.json())["state"]

        resp = await client.post("/api/oauth/token", json={"code": "abc", "state": "wrong"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid state parameter"

        resp = await client.post("/api/oauth/token", json={"code": "abc", "state": state})
        assert resp.status == 200
        assert (await resp.json())["access_token"] == "at-abc"

        resp = await client.get("/api/oauth/status")
        assert (await resp.json())["authenticated"] is True

        resp = await client.get("/api/oauth/user")
        assert (await resp.json())["id"] == "cb-user"
        assert exchange.profile_tokens == ["at-abc"]

        resp = await client.get("/api/oauth/accounts")
        assert (await resp.json())[0]["id"] == "wallet-1"
        resp = await client.get("/api/oauth/accounts/wallet-1/transactions")
        assert (await resp.json())[0]["account"] == "wallet-1"

        resp = await client.post("/api/oauth/logout")
        assert resp.status == 200
        resp = await client.get("/api/oauth/status")
        assert (await resp.json())["authenticated"] is False
        resp = await client.get("/api/oauth/user")
        assert resp.status == 401
    server.store.close()


@pytest.mark.asyncio
async def test_oauth_redirect_page(tmp_path, monkeypatch):
    server, _ = make_server(tmp_path)
    monkeypatch.setattr(server.oauth, "exchange_code_for_token", lambda code: oauth_token())
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/auth/redirect?error=access_denied")
        assert resp.status == 400
        assert "oauth_error" in await resp.text()

        resp = await client.get("/api/oauth/authorize")
        state = (await resp.json())["state"]

        resp = await client.get("/auth/redirect?code=abc&state=bogus")
        assert resp.status == 400
        assert "Invalid state parameter" in await resp.text()

        resp = await client.get(f"/auth/redirect?code=abc&state={state}")
        assert resp.status == 200
        assert resp.content_type == "text/html"
        assert "oauth_callback" in await resp.text()

        resp = await client.get("/api/oauth/status")
        assert (await resp.json())["authenticated"] is True
    server.store.close()


@pytest.mark.asyncio
async def test_expired_oauth_token_is_refreshed(tmp_path, monkeypatch):
    server, exchange = make_server(tmp_path)
    monkeypatch.setattr(
        server.oauth, "exchange_code_for_token",
        lambda code: oauth_token(access="old", refresh="rt-1", expires_in=60, created_at=time.time() - 120),
    )
    refreshed = []

    def fake_refresh(refresh_token):
        refreshed.append(refresh_token)
        return oauth_token(access="new", refresh="rt-2")

    monkeypatch.setattr(server.oauth, "refresh_token", fake_refresh)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/oauth/authorize")
        state = (await resp.json())["state"]
        await client.post("/api/oauth/token", json={"code": "abc", "state": state})

        resp = await client.get("/api/oauth/user")
        assert resp.status == 200
        assert refreshed == ["rt-1"]
        assert exchange.profile_tokens == ["new"]
    server.store.close()


@pytest.mark.asyncio
async def test_oauth_refresh_and_revoke_endpoints(tmp_path, monkeypatch):
    server, _ = make_server(tmp_path)

    def failing_refresh(refresh_token):
        raise OAuthError("400: invalid_grant")

    monkeypatch.setattr(server.oauth, "refresh_token", failing_refresh)
    monkeypatch.setattr(server.oauth, "revoke_token", lambda token: token == "good")
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/oauth/refresh", json={})
        assert resp.status == 400
        assert (await resp.json())["error"] == "No refresh token available"

        resp = await client.post("/api/oauth/refresh", json={"refresh_token": "rt"})
        assert resp.status == 502

        resp = await client.post("/api/oauth/revoke", json={})
        assert resp.status == 400
        resp = await client.post("/api/oauth/revoke", json={"token": "bad"})
        assert resp.status == 500
        resp = await client.post("/api/oauth/revoke", json={"token": "good"})
        assert (await resp.json())["success"] is True
    server.store.close()


@pytest.mark.asyncio
async def test_revoked_oauth_token_clears_session(tmp_path, monkeypatch):
    server, _ = make_server(tmp_path)
    monkeypatch.setattr(server.oauth, "exchange_code_for_token", lambda code: oauth_token(access="revoked"))
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/oauth/authorize")
        state = (await resp.json())["state"]
        await client.post("/api/oauth/token", json={"code": "abc", "state": state})

        resp = await client.get("/api/oauth/user")
        assert resp.status == 401
        resp = await client.get("/api/oauth/status")
        assert (await resp.json())["authenticated"] is False
    server.store.close()


@pytest.mark.asyncio
async def test_websocket_relay(tmp_path):
    server, _ = make_server(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        ws = await client.ws_connect("/ws")

        await ws.send_json({"type": "subscribe", "channels": ["heartbeat"], "product_ids": ["BTC-USD"]})
        assert await ws.receive_json(timeout=5) == {"type": "subscribed", "channels": ["heartbeat"], "product_ids": ["BTC-USD"]}
        # queued copy, acknowledged once forwarded upstream
        assert (await ws.receive_json(timeout=5))["type"] == "subscribed"
        assert server.feed.subscriptions == [("heartbeat", ["BTC-USD"])]

        await ws.send_json({"type": "subscribe", "channels": ["user"], "product_ids": []})
        assert await ws.receive_json(timeout=5) == {
            "type": "error",
            "message": "Missing API credentials for authenticated channel",
        }

        await ws.send_json({"type": "subscribe", "channels": ["ticker"], "product_ids": ["ETH-USD"]})
        assert (await ws.receive_json(timeout=5))["channels"] == ["ticker"]

        await server._on_feed_message({"channel": "ticker", "events": []})
        assert await ws.receive_json(timeout=5) == {"channel": "ticker", "events": []}

        resp = await client.get("/api/health")
        assert (await resp.json())["checks"]["websockets"]["connected_clients"] == 1

        await ws.close()
    server.store.close()


@pytest.mark.asyncio
async def test_oauth_redirect_page_escapes_error_text(tmp_path, monkeypatch):
    server, _ = make_server(tmp_path)
    injected = "<img src=x onerror=alert(1)></script><script>alert(2)</script>"

    def failing_exchange(code):
        raise OAuthError(f"400: {injected}")

    monkeypatch.setattr(server.oauth, "exchange_code_for_token", failing_exchange)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/auth/redirect", params={"error": injected})
        assert resp.status == 400
        body = await resp.text()
        assert "<img" not in body
        assert "</script><script>" not in body
        assert "&lt;img src=x onerror=alert(1)&gt;" in body
        assert "\\u003cimg" in body
        assert body.count("<script>") == 1

        resp = await client.get("/api/oauth/authorize")
        state = (await resp.json())["state"]
        resp = await client.get("/auth/redirect", params={"code": "abc", "state": state})
        assert resp.status == 502
        body = await resp.text()
        assert "<img" not in body
        assert "&lt;/script&gt;" in body
    server.store.close()
