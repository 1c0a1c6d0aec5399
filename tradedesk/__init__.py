"""
Coinbase Advanced Trade dashboard backend.

An aiohttp service behind the trading dashboard SPA featuring:
- Market browsing (products, stats, trades, order book, candles)
- Order placement with a flat-fee calculator and local order history
- Portfolio view over Advanced Trade accounts
- API-key authentication with encrypted key vault and key rotation
- Coinbase OAuth2 login (authorization code + refresh)
- WebSocket relay of Coinbase market-data channels to browsers
- Server-side order book / ticker / trade tape reducer
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    order_book: Order book, trade tape and ticker reducer
    orders: Order ticket validation, fee calculation and status tracking
    coinbase_client: Async Coinbase REST client
    ws_client: Upstream Coinbase market-data feed
    relay: Browser WebSocket relay and subscription queue
    key_vault: API key storage and rotation
    oauth: Coinbase OAuth2 flow
    auth: Dashboard user accounts and JWT tokens
    persistence_sqlite: SQLite storage
    config: Configuration loading
    secrets: Credential management

Example:
    >>> from tradedesk.config import DashboardConfig
    >>> from tradedesk.web_server import DashboardServer
    >>>
    >>> config = DashboardConfig.default()
    >>> server = DashboardServer(config)
    >>> server.run()
"""

__version__ = "0.1.0"
__all__ = [
    "order_book",
    "orders",
    "coinbase_client",
    "ws_client",
    "relay",
    "key_vault",
    "oauth",
    "auth",
    "persistence_sqlite",
    "config",
    "secrets",
    "seasonal_theme",
    "web_server",
]
