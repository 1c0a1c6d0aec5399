import asyncio
import hashlib
import hmac
import json
import random
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

import aiohttp

from .logging_setup import logger
from .secrets import key_preview


class CoinbaseAPIError(Exception):
    def __init__(self, status: Optional[int], message: str):
        super().__init__(f"{status}: {message}" if status else message)
        self.status = status
        self.message = message


class RateLimitError(CoinbaseAPIError):
    """Raised when rate limit is hit and backoff is exhausted."""

    def __init__(self, message: str = "Rate limited and max backoff attempts exceeded"):
        super().__init__(429, message)


class AuthenticationError(CoinbaseAPIError):
    def __init__(self, message: str = "Coinbase authentication failed; check your API credentials"):
        super().__init__(401, message)


class CredentialsRequiredError(CoinbaseAPIError):
    def __init__(self, message: str = "API credentials required"):
        super().__init__(None, message)


MAX_RATE_LIMIT_ATTEMPTS = 5


def _transform_exchange_product(p: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape an Exchange `/products` entry into the Advanced Trade product shape."""
    return {
        "product_id": p.get("id"),
        "price": "0",
        "price_percentage_change_24h": "0",
        "volume_24h": p.get("volume") or "0",
        "base_increment": p.get("base_increment"),
        "quote_increment": p.get("quote_increment"),
        "quote_min_size": p.get("min_market_funds"),
        "quote_max_size": p.get("max_market_funds"),
        "base_min_size": p.get("base_min_size"),
        "base_max_size": p.get("base_max_size"),
        "base_name": p.get("base_currency"),
        "quote_name": p.get("quote_currency"),
        "status": p.get("status"),
        "cancel_only": bool(p.get("cancel_only")),
        "limit_only": bool(p.get("limit_only")),
        "post_only": bool(p.get("post_only")),
        "trading_disabled": bool(p.get("trading_disabled")),
    }


def _percent_change(stats: Dict[str, Any]) -> str:
    try:
        last = float(stats.get("last"))
        open_ = float(stats.get("open"))
    except (TypeError, ValueError):
        return "0"
    if open_ == 0:
        return "0"
    return f"{(last - open_) / open_ * 100:.2f}"


class CoinbaseClient:
    """Async Coinbase REST client covering the three API families the dashboard uses.

    - Exchange API: public market data, unauthenticated.
    - Advanced Trade API: accounts and orders, HMAC-SHA256 signed
      (CB-ACCESS-KEY / CB-ACCESS-SIGN / CB-ACCESS-TIMESTAMP).
    - Core v2 API: OAuth user profile and wallets, Bearer token (or signed).

    429 responses wait for `CB-RateLimit-Reset` when the header is present and
    otherwise back off with jitter, up to MAX_RATE_LIMIT_ATTEMPTS.

    Usage:
        async with CoinbaseClient() as client:
            products = await client.get_products()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        advanced_url: str = "https://api.coinbase.com/api/v3/brokerage",
        exchange_url: str = "https://api.exchange.coinbase.com",
        core_url: str = "https://api.coinbase.com/v2",
        timeout: int = 10,
        max_backoff_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.advanced_url = advanced_url.rstrip("/")
        self.exchange_url = exchange_url.rstrip("/")
        self.core_url = core_url.rstrip("/")
        self.timeout = timeout
        self.max_backoff_seconds = max_backoff_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, exchange_config, api_key: Optional[str] = None, api_secret: Optional[str] = None) -> "CoinbaseClient":
        return cls(
            api_key,
            api_secret,
            advanced_url=exchange_config.advanced_url,
            exchange_url=exchange_config.exchange_url,
            core_url=exchange_config.core_url,
            timeout=exchange_config.timeout,
            max_backoff_seconds=exchange_config.max_backoff_seconds,
        )

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    # --- credentials ---
    def set_credentials(self, api_key: str, api_secret: str) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        logger.info(f"Credentials set for API client | key={key_preview(api_key)}")

    def clear_credentials(self) -> None:
        self.api_key = None
        self.api_secret = None
        logger.info("API credentials cleared")

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _require_credentials(self, action: str) -> None:
        if not self.has_credentials():
            raise CredentialsRequiredError(f"API credentials required to {action}")

    # --- signing / backoff ---
    def _sign(self, method: str, request_path: str, body: str, timestamp: Optional[str] = None) -> Dict[str, str]:
        """Build CB-ACCESS-* headers; the signed message is timestamp + METHOD + path + body."""
        if not self.has_credentials():
            raise CredentialsRequiredError("API credentials not set")
        ts = timestamp or str(int(time.time()))
        message = ts + method.upper() + request_path + (body or "")
        signature = hmac.new(self.api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
        return {
            "CB-ACCESS-KEY": self.api_key,
            "CB-ACCESS-SIGN": signature,
            "CB-ACCESS-TIMESTAMP": ts,
        }

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = base * (2 ** attempt)
        delay = min(delay, max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_rate_limit_reset(headers) -> Optional[float]:
        """Extract CB-RateLimit-Reset header (Unix timestamp)."""
        if "CB-RateLimit-Reset" in headers:
            try:
                return float(headers["CB-RateLimit-Reset"])
            except (ValueError, TypeError):
                return None
        return None

    @staticmethod
    def _error_message(text: str) -> str:
        try:
            data = json.loads(text)
        except ValueError:
            return text
        if isinstance(data, dict):
            return data.get("message") or data.get("error") or text
        return text

    async def _request(
        self,
        base_url: str,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[dict] = None,
        signed: bool = False,
        access_token: Optional[str] = None,
        attempt: int = 0,
    ) -> Any:
        """Execute a request with rate-limit backoff and retry."""
        if not self.session:
            raise CoinbaseAPIError(None, "Session not initialized; use 'async with' context manager")

        request_path = path if path.startswith("/") else f"/{path}"
        query = f"?{urlencode(params)}" if params else ""
        body_str = json.dumps(body) if body is not None else ""
        url = f"{base_url}{request_path}{query}"

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        elif signed:
            signed_path = urlparse(base_url).path + request_path + query
            headers.update(self._sign(method, signed_path, body_str))

        try:
            async with self.session.request(
                method,
                url,
                headers=headers,
                data=body_str if body is not None else None,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status == 429:
                    if attempt + 1 >= MAX_RATE_LIMIT_ATTEMPTS:
                        raise RateLimitError()
                    reset_ts = self._get_rate_limit_reset(resp.headers)
                    if reset_ts is not None:
                        delay = max(0, reset_ts - time.time())
                    else:
                        delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
                    logger.warning(f"Rate limited | path={request_path} attempt={attempt + 1} sleep={delay:.2f}s")
                    await asyncio.sleep(delay)
                    return await self._request(
                        base_url, method, path,
                        params=params, body=body, signed=signed,
                        access_token=access_token, attempt=attempt + 1,
                    )

                text = await resp.text()
                if resp.status == 401:
                    raise AuthenticationError()
                if not (200 <= resp.status < 300):
                    logger.error(f"Coinbase request failed | {method} {request_path} status={resp.status}")
                    raise CoinbaseAPIError(resp.status, self._error_message(text))

                if text:
                    return json.loads(text)
                return None

        except asyncio.TimeoutError as e:
            raise CoinbaseAPIError(None, f"Request timeout: {e}")
        except aiohttp.ClientError as e:
            raise CoinbaseAPIError(None, f"Request failed: {e}")

    async def exchange_request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request(self.exchange_url, method, path, params=params)

    async def advanced_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[dict] = None,
    ) -> Any:
        self._require_credentials("call the Advanced Trade API")
        return await self._request(self.advanced_url, method, path, params=params, body=body, signed=True)

    async def core_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        """Core v2 request: Bearer token if given, else signed if credentials are set, else anonymous."""
        return await self._request(
            self.core_url, method, path,
            params=params,
            signed=access_token is None and self.has_credentials(),
            access_token=access_token,
        )

    # --- market data ---
    async def get_products(self) -> List[Dict[str, Any]]:
        if self.has_credentials():
            try:
                res = await self.advanced_request("GET", "/products")
                if isinstance(res, dict) and isinstance(res.get("products"), list):
                    logger.info(f"Retrieved products from Advanced API | count={len(res['products'])}")
                    return res["products"]
            except CoinbaseAPIError as e:
                logger.warning(f"Advanced API products failed, falling back to Exchange API | error={e}")

        products = await self.exchange_request("GET", "/products")
        logger.info(f"Retrieved products from Exchange API | count={len(products)}")
        return [_transform_exchange_product(p) for p in products]

    async def get_product_details(self, product_ids: List[str]) -> List[Dict[str, Any]]:
        """Products in `product_ids` with last price, 24h change and volume from Exchange stats."""
        wanted = set(product_ids)
        products = [p for p in await self.get_products() if p.get("product_id") in wanted]

        async def with_stats(product: Dict[str, Any]) -> Dict[str, Any]:
            try:
                stats = await self.exchange_request("GET", f"/products/{product['product_id']}/stats")
            except CoinbaseAPIError as e:
                logger.warning(f"Stats unavailable | product_id={product['product_id']} error={e}")
                return product
            return {
                **product,
                "price": stats.get("last") or "0",
                "price_percentage_change_24h": _percent_change(stats),
                "volume_24h": stats.get("volume") or "0",
            }

        return list(await asyncio.gather(*(with_stats(p) for p in products)))

    async def get_product_trades(self, product_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.exchange_request("GET", f"/products/{product_id}/trades", {"limit": limit})

    async def get_product_book(self, product_id: str, level: int = 2) -> Dict[str, Any]:
        return await self.exchange_request("GET", f"/products/{product_id}/book", {"level": level})

    async def get_product_candles(
        self,
        product_id: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        granularity: int = 3600,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"granularity": granularity}
        if start:
            params["start"] = start
        if end:
            params["end"] = end
        candles = await self.exchange_request("GET", f"/products/{product_id}/candles", params)
        # Exchange candles are [time, low, high, open, close, volume]
        return [
            {"time": c[0], "low": c[1], "high": c[2], "open": c[3], "close": c[4], "volume": c[5]}
            for c in candles
        ]

    # --- trading (Advanced Trade) ---
    async def get_accounts(self) -> List[Dict[str, Any]]:
        self._require_credentials("get accounts")
        res = await self.advanced_request("GET", "/accounts")
        if not isinstance(res, dict) or not isinstance(res.get("accounts"), list):
            raise CoinbaseAPIError(502, "Invalid response format from Coinbase API")
        return res["accounts"]

    async def create_order(self, order_body: Dict[str, Any]) -> Dict[str, Any]:
        """Submit an Advanced Trade order; returns the raw response (success / success_response / error_response)."""
        self._require_credentials("create order")
        res = await self.advanced_request("POST", "/orders", body=order_body)
        logger.info(
            f"Order submitted | product_id={order_body.get('product_id')} side={order_body.get('side')} "
            f"success={(res or {}).get('success')}"
        )
        return res or {}

    async def list_orders(self, limit: int = 100) -> List[Dict[str, Any]]:
        self._require_credentials("get orders")
        res = await self.advanced_request("GET", "/orders/historical/batch", {"limit": limit})
        return (res or {}).get("orders", [])

    async def cancel_order(self, order_id: str) -> bool:
        self._require_credentials("cancel order")
        res = await self.advanced_request("POST", "/orders/batch_cancel", body={"order_ids": [order_id]})
        results = (res or {}).get("results") or []
        ok = bool(results) and bool(results[0].get("success"))
        if not ok:
            reason = results[0].get("failure_reason") if results else "no result"
            logger.warning(f"Cancel rejected | order_id={order_id} reason={reason}")
        return ok

    async def get_fills(self, limit: int = 100) -> List[Dict[str, Any]]:
        self._require_credentials("get fills")
        res = await self.advanced_request("GET", "/orders/historical/fills", {"limit": limit})
        return (res or {}).get("fills", [])

    # --- OAuth (Core v2) ---
    async def get_user_profile(self, access_token: str) -> Dict[str, Any]:
        res = await self.core_request("GET", "/user", access_token=access_token)
        return (res or {}).get("data", {})

    async def get_oauth_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        res = await self.core_request("GET", "/accounts", access_token=access_token)
        return (res or {}).get("data", [])

    async def get_oauth_transactions(self, access_token: str, account_id: str) -> List[Dict[str, Any]]:
        res = await self.core_request("GET", f"/accounts/{account_id}/transactions", access_token=access_token)
        return (res or {}).get("data", [])
