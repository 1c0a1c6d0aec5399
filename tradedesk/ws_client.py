"""Upstream Coinbase Advanced Trade market-data feed using aiohttp.

One socket to the Advanced Trade WebSocket. Subscriptions requested while the
socket is down are remembered and sent, in order, once it opens; after a
disconnect the client waits a fixed delay and reconnects, re-sending every
remembered subscription. There is no backoff and no sequence-gap detection.
The `user` channel is signed with the server key pair and refused without one.
"""
import asyncio
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from aiohttp import ClientSession, ClientWebSocketResponse, WSMsgType

from .logging_setup import logger

DEFAULT_WS_URL = "wss://advanced-trade-ws.coinbase.com"
DEFAULT_CHANNELS = ("level2", "market_trades", "ticker")
AUTHENTICATED_CHANNELS = frozenset({"user"})

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class FeedAuthError(Exception):
    """Raised when an authenticated channel is requested without credentials."""


class CoinbaseFeedClient:
    """Args:
        ws_url: Feed URL
        product_ids: Products for the default channel subscriptions
        channels: Channels subscribed on every connect, in this order
        reconnect_delay: Seconds to wait before reconnecting
        subscription_interval: Seconds between subscription messages on connect
        credentials: Server (api_key, api_secret) pair; required for `user`
    """

    def __init__(
        self,
        ws_url: str = DEFAULT_WS_URL,
        product_ids: Optional[List[str]] = None,
        channels=DEFAULT_CHANNELS,
        reconnect_delay: float = 5.0,
        subscription_interval: float = 1.0,
        credentials: Optional[Tuple[str, str]] = None,
    ):
        self.ws_url = ws_url
        self.credentials = credentials
        self.reconnect_delay = reconnect_delay
        self.subscription_interval = subscription_interval
        self._session: Optional[ClientSession] = None
        self._ws: Optional[ClientWebSocketResponse] = None
        self._stopping = False
        # channel -> product ids, in first-subscribed order
        self._subscriptions: Dict[str, List[str]] = {}
        self._outbox: List[Dict[str, Any]] = []
        for channel in channels:
            self.subscribe_message([], channel)
            self._remember(list(product_ids or []), channel)

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def subscriptions(self) -> Dict[str, List[str]]:
        return {c: list(p) for c, p in self._subscriptions.items()}

    def subscribe_message(
        self,
        product_ids: List[str],
        channel: str,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build a subscribe message; authenticated channels are signed.

        The signature is base64(HMAC-SHA256(secret, timestamp + "GET" + "/ws")).

        Raises:
            FeedAuthError: If the channel needs credentials and none are set
        """
        message: Dict[str, Any] = {"type": "subscribe", "product_ids": product_ids, "channel": channel}
        if channel not in AUTHENTICATED_CHANNELS:
            return message
        if not self.credentials:
            raise FeedAuthError(f"Authentication required for {channel} channel")
        api_key, api_secret = self.credentials
        timestamp = timestamp or str(int(time.time()))
        digest = hmac.new(api_secret.encode("utf-8"), f"{timestamp}GET/ws".encode("utf-8"), hashlib.sha256).digest()
        message.update({
            "api_key": api_key,
            "timestamp": timestamp,
            "signature": base64.b64encode(digest).decode("ascii"),
        })
        return message

    def _remember(self, product_ids: List[str], channel: str) -> None:
        known = self._subscriptions.setdefault(channel, [])
        for pid in product_ids:
            if pid not in known:
                known.append(pid)

    async def subscribe(self, product_ids: List[str], channel: str) -> None:
        """Subscribe now if the socket is open; otherwise it goes out on the next connect.

        Raises:
            FeedAuthError: For an authenticated channel without credentials
        """
        message = self.subscribe_message(product_ids, channel)
        self._remember(product_ids, channel)
        if self.is_open:
            await self._send(message)
            logger.info(f"Subscribed upstream | channel={channel} products={len(product_ids)}")
        else:
            logger.debug(f"Feed not open; subscription deferred | channel={channel}")

    async def send(self, message: Dict[str, Any]) -> None:
        """Send an arbitrary message, queueing it until the socket opens."""
        if self.is_open:
            await self._send(message)
        else:
            self._outbox.append(message)

    async def _send(self, message: Dict[str, Any]) -> None:
        assert self._ws is not None
        await self._ws.send_str(json.dumps(message))

    async def _on_open(self) -> None:
        for i, (channel, product_ids) in enumerate(list(self._subscriptions.items())):
            if i:
                await asyncio.sleep(self.subscription_interval)
            if not self.is_open:
                return
            await self._send(self.subscribe_message(list(product_ids), channel))
            logger.info(f"Subscribed upstream | channel={channel} products={len(product_ids)}")

        while self._outbox and self.is_open:
            await self._send(self._outbox.pop(0))

    async def _pump(self, ws: ClientWebSocketResponse, on_message: MessageHandler) -> None:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    logger.warning("Skipping non-JSON feed message")
                    continue
                try:
                    await on_message(data)
                except Exception as e:
                    logger.exception(f"Feed message handler failed | error={e}")
            elif msg.type == WSMsgType.ERROR:
                logger.error(f"Feed socket error | error={ws.exception()}")
                break

    async def run(self, on_message: MessageHandler) -> None:
        """Connect and pump messages into `on_message` until `stop()` is called."""
        self._stopping = False
        self._session = ClientSession()
        try:
            while not self._stopping:
                try:
                    async with self._session.ws_connect(self.ws_url, heartbeat=30) as ws:
                        self._ws = ws
                        logger.info(f"Feed connected | url={self.ws_url}")
                        await self._on_open()
                        await self._pump(ws, on_message)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.error(f"Feed connection failed | error={e}")
                finally:
                    self._ws = None

                if self._stopping:
                    break
                logger.info(f"Feed closed; reconnecting | delay={self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)
        finally:
            if self._session:
                await self._session.close()
                self._session = None

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
