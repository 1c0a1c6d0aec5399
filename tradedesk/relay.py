"""Browser WebSocket relay.

Browsers connect to `/ws` and send subscribe requests; each connection gets its
own SubscriptionQueue that forwards requests upstream one at a time with a
fixed spacing. Every upstream feed message is broadcast to all open sockets.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Set

from aiohttp import WSMsgType, web

from .logging_setup import logger
from .ws_client import AUTHENTICATED_CHANNELS


class SubscriptionRequest(NamedTuple):
    channels: List[str]
    product_ids: List[str]


def parse_subscription(data: Dict[str, Any]) -> Optional[SubscriptionRequest]:
    """Accepts `channels: [...]` or a single `channel`; None for non-subscribe messages."""
    if not isinstance(data, dict) or data.get("type") != "subscribe":
        return None
    channels = data.get("channels") or ([data["channel"]] if data.get("channel") else [])
    return SubscriptionRequest(channels=list(channels), product_ids=list(data.get("product_ids") or []))


def subscribed_message(channels: List[str], product_ids: List[str]) -> Dict[str, Any]:
    return {"type": "subscribed", "channels": channels, "product_ids": product_ids}


class SubscriptionQueue:
    """FIFO of subscribe requests for one browser connection.

    Args:
        subscribe: Coroutine `(product_ids, channel)` that subscribes upstream
        notify: Coroutine sending a message back to the browser
        interval: Seconds to wait after each processed request
    """

    def __init__(
        self,
        subscribe: Callable[[List[str], str], Awaitable[None]],
        notify: Callable[[Dict[str, Any]], Awaitable[None]],
        interval: float = 1.0,
    ):
        self._subscribe = subscribe
        self._notify = notify
        self.interval = interval
        self._items: List[SubscriptionRequest] = []
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def push(self, request: SubscriptionRequest) -> None:
        self._items.append(request)
        if not self.processing:
            self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _process(self, request: SubscriptionRequest) -> None:
        logger.info(f"Processing subscription | channels={','.join(request.channels)}")
        for channel in request.channels:
            await self._subscribe(request.product_ids, channel)
        await self._notify(subscribed_message(request.channels, request.product_ids))

    async def _drain(self) -> None:
        while self._items:
            request = self._items.pop(0)
            try:
                await self._process(request)
            except Exception as e:
                logger.error(f"Failed to process subscription | channels={request.channels} error={e}")
            await asyncio.sleep(self.interval)

    async def join(self) -> None:
        """Wait until the queue is empty."""
        while self.processing:
            await asyncio.shield(self._task)

    async def close(self) -> None:
        self._items.clear()
        if self.processing:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class FeedRelay:
    """Fans the upstream feed out to browser sockets and forwards their subscriptions.

    Args:
        feed: Object with `async subscribe(product_ids, channel)` (CoinbaseFeedClient)
        credentials_available: Callable telling whether server credentials exist
                               for authenticated channels
        subscription_interval: Spacing between queued subscription requests
    """

    def __init__(
        self,
        feed,
        credentials_available: Callable[[], bool] = lambda: False,
        subscription_interval: float = 1.0,
    ):
        self.feed = feed
        self.credentials_available = credentials_available
        self.subscription_interval = subscription_interval
        self.clients: Set[web.WebSocketResponse] = set()

    @staticmethod
    async def _send(ws: web.WebSocketResponse, message: Dict[str, Any]) -> None:
        if not ws.closed:
            await ws.send_str(json.dumps(message))

    async def handle_client_message(
        self,
        ws: web.WebSocketResponse,
        queue: SubscriptionQueue,
        data: Dict[str, Any],
    ) -> None:
        request = parse_subscription(data)
        if request is None:
            logger.debug(f"Ignoring client message | type={data.get('type') if isinstance(data, dict) else None}")
            return

        logger.info(f"Subscription request | channels={','.join(request.channels)}")

        if "heartbeat" in request.channels:
            await self._send(ws, subscribed_message(["heartbeat"], request.product_ids))
            queue.push(request)
            return

        if AUTHENTICATED_CHANNELS.intersection(request.channels) and not self.credentials_available():
            logger.error("Cannot authenticate feed subscription: missing API credentials")
            await self._send(ws, {"type": "error", "message": "Missing API credentials for authenticated channel"})
            return

        queue.push(request)

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for `/ws`."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.clients.add(ws)
        logger.info(f"Client connected | clients={len(self.clients)}")

        queue = SubscriptionQueue(
            self.feed.subscribe,
            lambda message: self._send(ws, message),
            interval=self.subscription_interval,
        )
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        logger.warning("Client sent non-JSON message")
                        continue
                    await self.handle_client_message(ws, queue, data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"Client socket error | error={ws.exception()}")
        finally:
            await queue.close()
            self.clients.discard(ws)
            logger.info(f"Client disconnected | clients={len(self.clients)}")
        return ws

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send `message` to every open socket; returns how many received it."""
        text = json.dumps(message)
        sent = 0
        for ws in list(self.clients):
            if ws.closed:
                self.clients.discard(ws)
                continue
            try:
                await ws.send_str(text)
                sent += 1
            except ConnectionResetError:
                self.clients.discard(ws)
        return sent

    async def close_all(self) -> None:
        for ws in list(self.clients):
            await ws.close()
        self.clients.clear()
