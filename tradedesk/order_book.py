"""
Market-data reducer: order book, trade tape and ticker per product.

Folds Coinbase Advanced Trade WebSocket messages into a per-product view that
the dashboard can serve over REST or push to browsers.

Channels:
    l2_data:        snapshot/update events -> OrderBook
    ticker:         ticker events -> Ticker
    market_trades:  trade events -> TradeTape (legacy `matches` also accepted)

Order book maintenance is deliberately simple: every batch re-sorts both sides
and truncates them to `max_levels`. There is no sequence-number gap detection
and no snapshot resync; a fresh snapshot simply replaces the book.

Examples:
    >>> book = OrderBook("BTC-USD")
    >>> book.apply_events([{
    ...     "type": "snapshot",
    ...     "product_id": "BTC-USD",
    ...     "updates": [
    ...         {"side": "bid", "price_level": "100", "new_quantity": "1"},
    ...         {"side": "offer", "price_level": "101", "new_quantity": "2"},
    ...     ],
    ... }])
    >>> book.spread_value
    Decimal('1.00')
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from .logging_setup import logger

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

BID_SIDES = {"bid", "buy"}
ASK_SIDES = {"offer", "ask", "sell"}


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


@dataclass
class BookLevel:
    """A single aggregated price level.

    Attributes:
        price: Level price
        size: Aggregate size resting at this price
        total: Cumulative notional (price * size) from the top of book down to this level
        depth: `total` as a percentage of the larger side's cumulative notional
    """

    price: Decimal
    size: Decimal
    total: Decimal = ZERO
    depth: Decimal = ZERO

    def to_dict(self) -> Dict[str, str]:
        return {
            "price": str(self.price),
            "size": str(self.size),
            "total": str(self.total),
            "depth": str(self.depth),
        }


class OrderBook:
    """Two sorted lists of price levels for one product.

    Bids are kept highest first, asks lowest first. Each side is capped at
    `max_levels` after every batch of events.
    """

    def __init__(self, product_id: str, max_levels: int = 20) -> None:
        self.product_id = product_id
        self.max_levels = max_levels
        self.bids: List[BookLevel] = []
        self.asks: List[BookLevel] = []
        self.spread_value: Decimal = ZERO
        self.spread_percentage: Decimal = ZERO

    def apply_events(self, events: Iterable[Dict[str, Any]]) -> None:
        """Apply a batch of l2_data events, then re-sort and recompute depth."""
        for event in events:
            event_type = event.get("type")
            if event_type == "snapshot":
                self._apply_snapshot(event)
            elif event_type == "update":
                for update in event.get("updates") or []:
                    self._apply_update(update)
        self._rebuild()

    def _apply_snapshot(self, event: Dict[str, Any]) -> None:
        if "updates" in event:
            self.bids = []
            self.asks = []
            for update in event.get("updates") or []:
                self._apply_update(update)
            return

        # Exchange-style snapshot: [[price, size], ...]
        if event.get("bids") is not None:
            self.bids = self._levels_from_pairs(event["bids"])
        if event.get("asks") is not None:
            self.asks = self._levels_from_pairs(event["asks"])

    @staticmethod
    def _levels_from_pairs(pairs: Iterable[Iterable[Any]]) -> List[BookLevel]:
        levels = []
        for pair in pairs:
            price, size = list(pair)[:2]
            p, s = _to_decimal(price), _to_decimal(size)
            if p is None or s is None or s == ZERO:
                continue
            levels.append(BookLevel(price=p, size=s))
        return levels

    def _apply_update(self, update: Dict[str, Any]) -> None:
        side = str(update.get("side", "")).lower()
        price = _to_decimal(update.get("price_level"))
        size = _to_decimal(update.get("new_quantity"))
        if price is None or size is None:
            logger.debug(f"Skipping malformed book update | product_id={self.product_id} update={update}")
            return

        if side in BID_SIDES:
            levels = self.bids
        elif side in ASK_SIDES:
            levels = self.asks
        else:
            return

        for i, level in enumerate(levels):
            if level.price == price:
                if size == ZERO:
                    del levels[i]
                else:
                    level.size = size
                return

        if size != ZERO:
            levels.append(BookLevel(price=price, size=size))

    def _rebuild(self) -> None:
        self.bids.sort(key=lambda lvl: lvl.price, reverse=True)
        self.asks.sort(key=lambda lvl: lvl.price)
        del self.bids[self.max_levels:]
        del self.asks[self.max_levels:]

        bid_total = self._accumulate(self.bids)
        ask_total = self._accumulate(self.asks)

        max_total = max(bid_total, ask_total)
        for level in self.bids + self.asks:
            if max_total > ZERO:
                level.depth = (level.total / max_total * HUNDRED).quantize(TWO_PLACES)
            else:
                level.depth = ZERO

        if self.bids and self.asks:
            best_bid = self.bids[0].price
            best_ask = self.asks[0].price
            spread = best_ask - best_bid
            self.spread_value = spread.quantize(TWO_PLACES)
            self.spread_percentage = (spread / best_ask * HUNDRED).quantize(TWO_PLACES)
        else:
            self.spread_value = ZERO
            self.spread_percentage = ZERO

    @staticmethod
    def _accumulate(levels: List[BookLevel]) -> Decimal:
        running = ZERO
        for level in levels:
            running += level.price * level.size
            level.total = running.quantize(TWO_PLACES)
        return running

    @property
    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0].price if self.asks else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bids": [lvl.to_dict() for lvl in self.bids],
            "asks": [lvl.to_dict() for lvl in self.asks],
            "spread": {
                "value": str(self.spread_value),
                "percentage": str(self.spread_percentage),
            },
        }


@dataclass
class Trade:
    trade_id: str
    price: str
    size: str
    time: str
    side: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "trade_id": self.trade_id,
            "price": self.price,
            "size": self.size,
            "time": self.time,
            "side": self.side,
        }


class TradeTape:
    """Most recent trades, newest first, unique by trade_id."""

    def __init__(self, max_trades: int = 50) -> None:
        self.max_trades = max_trades
        self.trades: List[Trade] = []

    def add(self, new_trades: List[Trade]) -> None:
        seen = set()
        merged = []
        for trade in new_trades + self.trades:
            if trade.trade_id in seen:
                continue
            seen.add(trade.trade_id)
            merged.append(trade)
        self.trades = merged[: self.max_trades]

    def to_list(self) -> List[Dict[str, str]]:
        return [t.to_dict() for t in self.trades]


@dataclass
class Ticker:
    price: str
    volume_24h: str
    change_24h: str
    low_24h: str
    high_24h: str
    last_update: Optional[str] = None

    @classmethod
    def from_event(cls, raw: Dict[str, Any], timestamp: Optional[str]) -> "Ticker":
        # Advanced Trade spells these with an extra underscore (volume_24_h)
        return cls(
            price=str(raw.get("price", "0")),
            volume_24h=str(raw.get("volume_24_h", raw.get("volume_24h", "0"))),
            change_24h=str(raw.get("price_percent_chg_24_h", raw.get("price_percent_chg_24h", "0"))),
            low_24h=str(raw.get("low_24_h", raw.get("low_24h", "0"))),
            high_24h=str(raw.get("high_24_h", raw.get("high_24h", "0"))),
            last_update=timestamp,
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "price": self.price,
            "volume_24h": self.volume_24h,
            "change_24h": self.change_24h,
            "low_24h": self.low_24h,
            "high_24h": self.high_24h,
            "last_update": self.last_update,
        }


class ProductMarket:
    """Order book, trade tape and latest ticker for a single product."""

    def __init__(self, product_id: str, book_depth: int = 20, tape_size: int = 50) -> None:
        self.product_id = product_id
        self.book = OrderBook(product_id, max_levels=book_depth)
        self.tape = TradeTape(max_trades=tape_size)
        self.ticker: Optional[Ticker] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "order_book": self.book.to_dict(),
            "trades": self.tape.to_list(),
            "ticker": self.ticker.to_dict() if self.ticker else None,
        }


class MarketDataStore:
    """Routes feed messages to per-product market views."""

    def __init__(self, book_depth: int = 20, tape_size: int = 50) -> None:
        self.book_depth = book_depth
        self.tape_size = tape_size
        self.products: Dict[str, ProductMarket] = {}

    def market(self, product_id: str) -> ProductMarket:
        if product_id not in self.products:
            self.products[product_id] = ProductMarket(product_id, self.book_depth, self.tape_size)
        return self.products[product_id]

    def handle_message(self, message: Dict[str, Any]) -> List[str]:
        """Apply one feed message; returns the product ids whose view changed."""
        channel = message.get("channel")
        events = message.get("events") or []
        if not channel or not events:
            return []

        if channel == "l2_data":
            return self._handle_l2(events)
        if channel == "ticker":
            return self._handle_ticker(events, message.get("timestamp"))
        if channel in ("market_trades", "matches"):
            return self._handle_trades(events)
        return []

    def _handle_l2(self, events: List[Dict[str, Any]]) -> List[str]:
        by_product: Dict[str, List[Dict[str, Any]]] = {}
        for event in events:
            product_id = event.get("product_id")
            if product_id:
                by_product.setdefault(product_id, []).append(event)
        for product_id, product_events in by_product.items():
            self.market(product_id).book.apply_events(product_events)
        return list(by_product)

    def _handle_ticker(self, events: List[Dict[str, Any]], timestamp: Optional[str]) -> List[str]:
        touched = []
        for event in events:
            for raw in event.get("tickers") or []:
                product_id = raw.get("product_id")
                if not product_id:
                    continue
                self.market(product_id).ticker = Ticker.from_event(raw, timestamp)
                if product_id not in touched:
                    touched.append(product_id)
        return touched

    def _handle_trades(self, events: List[Dict[str, Any]]) -> List[str]:
        by_product: Dict[str, List[Trade]] = {}
        for event in events:
            for raw in event.get("trades") or []:
                product_id = raw.get("product_id")
                if not product_id or raw.get("trade_id") is None:
                    continue
                by_product.setdefault(product_id, []).append(
                    Trade(
                        trade_id=str(raw["trade_id"]),
                        price=str(raw.get("price", "0")),
                        size=str(raw.get("size", "0")),
                        time=str(raw.get("time", "")),
                        side=str(raw.get("side", "")).lower(),
                    )
                )
        for product_id, trades in by_product.items():
            self.market(product_id).tape.add(trades)
        return list(by_product)

    def snapshot(self, product_id: str) -> Dict[str, Any]:
        return self.market(product_id).to_dict()
