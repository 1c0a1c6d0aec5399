import contextlib
import hashlib
import hmac
import json
import time

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tradedesk.coinbase_client import (
    AuthenticationError,
    CoinbaseAPIError,
    CoinbaseClient,
    CredentialsRequiredError,
    RateLimitError,
)

EXCHANGE_PRODUCTS = [
    {
        "id": "BTC-USD",
        "base_currency": "BTC",
        "quote_currency": "USD",
        "base_increment": "0.00000001",
        "quote_increment": "0.01",
        "volume": "12.5",
        "status": "online",
        "trading_disabled": False,
    },
    {"id": "ETH-USD", "base_currency": "ETH", "quote_currency": "USD", "status": "online"},
]


def _fake_coinbase(state):
    """Minimal stand-in for the Exchange, Advanced Trade and Core v2 APIs."""
    app = web.Application()

    async def exchange_products(request):
        return web.json_response(EXCHANGE_PRODUCTS)

    async def stats(request):
        if request.match_info["pid"] == "ETH-USD":
            return web.json_response({"message": "stats down"}, status=500)
        return web.json_response({"open": "40000", "last": "50000", "volume": "321"})

    async def candles(request):
        state["candle_query"] = dict(request.query)
        return web.json_response([[1700000000, 1.0, 3.0, 2.0, 2.5, 10.0]])

    async def advanced_products(request):
        state["advanced_products_hits"] = state.get("advanced_products_hits", 0) + 1
        if state.get("advanced_products_fail"):
            return web.json_response({"error": "unavailable"}, status=503)
        return web.json_response({"products": [{"product_id": "BTC-USD", "price": "50000"}]})

    async def accounts(request):
        state["headers"] = dict(request.headers)
        if request.headers.get("CB-ACCESS-KEY") == "revoked":
            return web.json_response({"message": "unauthorized"}, status=401)
        return web.json_response({"accounts": [{"uuid": "a1", "currency": "BTC"}]})

    async def batch_orders(request):
        state["orders_query"] = dict(request.query)
        state["headers"] = dict(request.headers)
        return web.json_response({"orders": [{"order_id": "o1", "status": "OPEN"}]})

    async def create_order(request):
        state["order_body"] = await request.text()
        state["headers"] = dict(request.headers)
        return web.json_response({"success": True, "success_response": {"order_id": "o1"}})

    async def batch_cancel(request):
        body = await request.json()
        ok = body["order_ids"][0] != "stuck"
        result = {"success": ok, "order_id": body["order_ids"][0]}
        if not ok:
            result["failure_reason"] = "UNKNOWN_CANCEL_ORDER"
        return web.json_response({"results": [result]})

    async def limited(request):
        state["limited_hits"] = state.get("limited_hits", 0) + 1
        if state["limited_hits"] < 2:
            return web.json_response({}, status=429, headers={"CB-RateLimit-Reset": str(time.time() - 1)})
        return web.json_response({"ok": True})

    async def always_limited(request):
        state["always_hits"] = state.get("always_hits", 0) + 1
        return web.json_response({}, status=429)

    async def core_user(request):
        state["authorization"] = request.headers.get("Authorization")
        return web.json_response({"data": {"id": "u1", "name": "Alice"}})

    app.router.add_get("/products", exchange_products)
    app.router.add_get("/products/{pid}/stats", stats)
    app.router.add_get("/products/{pid}/candles", candles)
    app.router.add_get("/limited", limited)
    app.router.add_get("/always-limited", always_limited)
    app.router.add_get("/api/v3/brokerage/products", advanced_products)
    app.router.add_get("/api/v3/brokerage/accounts", accounts)
    app.router.add_get("/api/v3/brokerage/orders/historical/batch", batch_orders)
    app.router.add_post("/api/v3/brokerage/orders", create_order)
    app.router.add_post("/api/v3/brokerage/orders/batch_cancel", batch_cancel)
    app.router.add_get("/v2/user", core_user)
    return app


@contextlib.asynccontextmanager
async def fake_client(state, api_key=None, api_secret=None):
    server = TestServer(_fake_coinbase(state))
    await server.start_server()
    base = f"http://{server.host}:{server.port}"
    try:
        async with CoinbaseClient(
            api_key,
            api_secret,
            advanced_url=f"{base}/api/v3/brokerage",
            exchange_url=base,
            core_url=f"{base}/v2",
            max_backoff_seconds=0.01,
        ) as client:
            yield client
    finally:
        await server.close()


def _expected_signature(secret, ts, method, path, body=""):
    return hmac.new(secret.encode(), f"{ts}{method}{path}{body}".encode(), hashlib.sha256).hexdigest()


def test_sign_builds_headers():
    client = CoinbaseClient("key", "secret")
    headers = client._sign("get", "/api/v3/brokerage/accounts", "", timestamp="1700000000")
    assert headers == {
        "CB-ACCESS-KEY": "key",
        "CB-ACCESS-SIGN": _expected_signature("secret", "1700000000", "GET", "/api/v3/brokerage/accounts"),
        "CB-ACCESS-TIMESTAMP": "1700000000",
    }


def test_sign_without_credentials():
    with pytest.raises(CredentialsRequiredError):
        CoinbaseClient()._sign("GET", "/accounts", "")


def test_jittered_backoff_is_capped():
    for attempt in range(10):
        delay = CoinbaseClient._jittered_backoff(attempt, base=1.0, max_backoff=4.0)
        assert 0 <= delay <= 5.0


def test_credentials_management():
    client = CoinbaseClient()
    assert not client.has_credentials()
    client.set_credentials("k", "s")
    assert client.has_credentials()
    client.clear_credentials()
    assert client.api_key is None


@pytest.mark.asyncio
async def test_request_without_session():
    client = CoinbaseClient()
    with pytest.raises(CoinbaseAPIError, match="Session not initialized"):
        await client.get_products()


@pytest.mark.asyncio
async def test_products_from_exchange_without_credentials():
    state = {}
    async with fake_client(state) as client:
        products = await client.get_products()

    assert "advanced_products_hits" not in state
    assert [p["product_id"] for p in products] == ["BTC-USD", "ETH-USD"]
    btc = products[0]
    assert btc["base_name"] == "BTC"
    assert btc["quote_name"] == "USD"
    assert btc["volume_24h"] == "12.5"
    assert btc["price"] == "0"
    assert btc["trading_disabled"] is False


@pytest.mark.asyncio
async def test_products_from_advanced_api_with_credentials():
    state = {}
    async with fake_client(state, "key", "secret") as client:
        products = await client.get_products()
    assert products == [{"product_id": "BTC-USD", "price": "50000"}]


@pytest.mark.asyncio
async def test_products_fall_back_when_advanced_fails():
    state = {"advanced_products_fail": True}
    async with fake_client(state, "key", "secret") as client:
        products = await client.get_products()
    assert state["advanced_products_hits"] == 1
    assert len(products) == 2


@pytest.mark.asyncio
async def test_product_details_merge_stats():
    state = {}
    async with fake_client(state) as client:
        details = await client.get_product_details(["BTC-USD", "ETH-USD"])

    by_id = {d["product_id"]: d for d in details}
    assert by_id["BTC-USD"]["price"] == "50000"
    assert by_id["BTC-USD"]["price_percentage_change_24h"] == "25.00"
    assert by_id["BTC-USD"]["volume_24h"] == "321"
    # stats failure keeps the bare product
    assert by_id["ETH-USD"]["price"] == "0"


@pytest.mark.asyncio
async def test_candles_are_mapped():
    state = {}
    async with fake_client(state) as client:
        candles = await client.get_product_candles("BTC-USD", "2024-01-01", "2024-01-02", 300)

    assert state["candle_query"] == {"granularity": "300", "start": "2024-01-01", "end": "2024-01-02"}
    assert candles == [{"time": 1700000000, "low": 1.0, "high": 3.0, "open": 2.0, "close": 2.5, "volume": 10.0}]


@pytest.mark.asyncio
async def test_signed_request_covers_path_prefix():
    state = {}
    async with fake_client(state, "key", "secret") as client:
        accounts = await client.get_accounts()

    assert accounts == [{"uuid": "a1", "currency": "BTC"}]
    headers = state["headers"]
    assert headers["CB-ACCESS-KEY"] == "key"
    ts = headers["CB-ACCESS-TIMESTAMP"]
    assert headers["CB-ACCESS-SIGN"] == _expected_signature("secret", ts, "GET", "/api/v3/brokerage/accounts")


@pytest.mark.asyncio
async def test_signed_request_includes_query_and_body():
    state = {}
    async with fake_client(state, "key", "secret") as client:
        await client.list_orders(limit=5)
        ts = state["headers"]["CB-ACCESS-TIMESTAMP"]
        assert state["orders_query"] == {"limit": "5"}
        assert state["headers"]["CB-ACCESS-SIGN"] == _expected_signature(
            "secret", ts, "GET", "/api/v3/brokerage/orders/historical/batch?limit=5"
        )

        body = {"client_order_id": "c1", "product_id": "BTC-USD", "side": "BUY", "order_configuration": {}}
        res = await client.create_order(body)
        assert res["success"] is True
        assert json.loads(state["order_body"]) == body
        ts = state["headers"]["CB-ACCESS-TIMESTAMP"]
        assert state["headers"]["CB-ACCESS-SIGN"] == _expected_signature(
            "secret", ts, "POST", "/api/v3/brokerage/orders", state["order_body"]
        )


@pytest.mark.asyncio
async def test_trading_calls_require_credentials():
    state = {}
    async with fake_client(state) as client:
        with pytest.raises(CredentialsRequiredError):
            await client.get_accounts()
        with pytest.raises(CredentialsRequiredError):
            await client.cancel_order("o1")


@pytest.mark.asyncio
async def test_401_raises_authentication_error():
    state = {}
    async with fake_client(state, "revoked", "secret") as client:
        with pytest.raises(AuthenticationError) as excinfo:
            await client.get_accounts()
    assert excinfo.value.status == 401


@pytest.mark.asyncio
async def test_error_status_carries_message():
    state = {"advanced_products_fail": True}
    async with fake_client(state, "key", "secret") as client:
        with pytest.raises(CoinbaseAPIError) as excinfo:
            await client.advanced_request("GET", "/products")
    assert excinfo.value.status == 503
    assert excinfo.value.message == "unavailable"


@pytest.mark.asyncio
async def test_rate_limit_waits_for_reset_then_retries():
    state = {}
    async with fake_client(state) as client:
        res = await client.exchange_request("GET", "/limited")
    assert res == {"ok": True}
    assert state["limited_hits"] == 2


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_attempts():
    state = {}
    async with fake_client(state) as client:
        with pytest.raises(RateLimitError):
            await client.exchange_request("GET", "/always-limited")
    assert state["always_hits"] == 5


@pytest.mark.asyncio
async def test_cancel_order_reports_result():
    state = {}
    async with fake_client(state, "key", "secret") as client:
        assert await client.cancel_order("o1") is True
        assert await client.cancel_order("stuck") is False


@pytest.mark.asyncio
async def test_core_request_uses_bearer_token():
    state = {}
    async with fake_client(state, "key", "secret") as client:
        profile = await client.get_user_profile("access-123")
    assert profile == {"id": "u1", "name": "Alice"}
    assert state["authorization"] == "Bearer access-123"
