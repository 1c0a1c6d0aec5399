"""
Order ticket validation, fee calculation and local order lifecycle.

The order form on the dashboard submits a ticket (product, side, type, amount,
optional limit price). This module validates it, previews units/fee/total at a
flat 0.5% fee, builds the Advanced Trade order body and tracks the order's
status locally.

Amount semantics:
    BUY:  amount is quote currency to spend; fee comes out of the amount
    SELL: amount is base units to sell; fee comes out of the proceeds

State Transitions:
    PENDING → OPEN → FILLED / CANCELLED / EXPIRED / FAILED

Examples:
    >>> from decimal import Decimal
    >>> ticket = parse_ticket({"product_id": "BTC-USD", "side": "BUY", "amount": "100"})
    >>> est = calculate_order(ticket, market_price=Decimal("50000"))
    >>> est.fee
    Decimal('0.50')
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .logging_setup import logger

FEE_RATE = Decimal("0.005")
MONEY = Decimal("0.01")
UNITS = Decimal("0.00000001")


class OrderValidationError(ValueError):
    """Raised when an order ticket is malformed."""


class InvalidTransitionError(ValueError):
    """Raised when an order status change is not allowed."""


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    """Local order lifecycle states."""

    PENDING = "PENDING"
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED, OrderStatus.FAILED}
)

_STATUS_ALIASES = {
    "QUEUED": OrderStatus.PENDING,
    "CANCEL_QUEUED": OrderStatus.OPEN,
    "CANCELED": OrderStatus.CANCELLED,
    "DONE": OrderStatus.FILLED,
    "UNKNOWN_ORDER_STATUS": OrderStatus.UNKNOWN,
}


class OrderTicket(BaseModel):
    """An order as entered on the order form."""

    product_id: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    amount: Decimal
    limit_price: Optional[Decimal] = None

    @field_validator("side", "order_type", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("product_id")
    @classmethod
    def _product_id(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("product_id is required")
        return v

    @field_validator("amount")
    @classmethod
    def _positive_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("amount must be greater than zero")
        return v

    @field_validator("limit_price")
    @classmethod
    def _positive_limit(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("limit_price must be greater than zero")
        return v

    @model_validator(mode="after")
    def _limit_needs_price(self) -> "OrderTicket":
        if self.order_type == OrderType.LIMIT and self.limit_price is None:
            raise ValueError("limit orders require a limit_price")
        return self


def parse_ticket(data: Dict[str, Any]) -> OrderTicket:
    """Validate a raw order form payload.

    Raises:
        OrderValidationError: With a readable message for the first problem found
    """
    if not isinstance(data, dict):
        raise OrderValidationError("order payload must be a JSON object")
    try:
        return OrderTicket.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "order"
        raise OrderValidationError(f"{loc}: {first.get('msg')}")


@dataclass
class OrderEstimate:
    """Preview shown under the order form."""

    price: Decimal
    units: Decimal
    fee: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "price": str(self.price),
            "total_units": str(self.units),
            "fee": str(self.fee),
            "total": str(self.total),
        }


def _execution_price(ticket: OrderTicket, market_price: Optional[Decimal]) -> Decimal:
    if ticket.order_type == OrderType.LIMIT:
        return ticket.limit_price
    if market_price is None or market_price <= 0:
        raise OrderValidationError("market price unavailable for market order")
    return Decimal(str(market_price))


def calculate_order(ticket: OrderTicket, market_price: Optional[Decimal] = None) -> OrderEstimate:
    """Compute units, fee and total at the flat fee rate."""
    price = _execution_price(ticket, market_price)
    amount = ticket.amount

    if ticket.side == OrderSide.BUY:
        fee = amount * FEE_RATE
        units = (amount - fee) / price
        total = amount
    else:
        value = amount * price
        fee = value * FEE_RATE
        units = amount
        total = value - fee

    return OrderEstimate(
        price=price,
        units=units.quantize(UNITS, rounding=ROUND_DOWN),
        fee=fee.quantize(MONEY),
        total=total.quantize(MONEY),
    )


def build_order_request(
    ticket: OrderTicket,
    market_price: Optional[Decimal] = None,
    client_order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the Advanced Trade `POST /orders` body for a ticket."""
    estimate = calculate_order(ticket, market_price)
    base_size = str(estimate.units)

    if ticket.order_type == OrderType.MARKET:
        configuration = {"market_market_ioc": {"base_size": base_size}}
    else:
        configuration = {
            "limit_limit_gtc": {
                "base_size": base_size,
                "limit_price": str(ticket.limit_price),
                "post_only": False,
            }
        }

    return {
        "client_order_id": client_order_id or str(uuid.uuid4()),
        "product_id": ticket.product_id,
        "side": ticket.side.value,
        "order_configuration": configuration,
    }


def normalize_status(raw: Optional[str]) -> OrderStatus:
    """Map an exchange status string onto OrderStatus."""
    if not raw:
        return OrderStatus.UNKNOWN
    key = str(raw).strip().upper()
    if key in _STATUS_ALIASES:
        return _STATUS_ALIASES[key]
    try:
        return OrderStatus(key)
    except ValueError:
        return OrderStatus.UNKNOWN


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class OrderRecord:
    """Local copy of an order placed through the dashboard."""

    order_id: str
    user_id: int
    product_id: str
    side: OrderSide
    order_type: OrderType
    base_size: str
    client_order_id: Optional[str] = None
    limit_price: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def transition(self, new_status: OrderStatus) -> bool:
        """Move to `new_status`; returns False when already there.

        Raises:
            InvalidTransitionError: If the order is in a terminal state
        """
        if new_status == self.status:
            return False
        if self.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"order {self.order_id} is {self.status.value}; cannot become {new_status.value}"
            )
        if new_status == OrderStatus.PENDING:
            raise InvalidTransitionError(f"order {self.order_id} cannot return to PENDING")
        self.status = new_status
        self.updated_at = _now()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "client_order_id": self.client_order_id,
            "product_id": self.product_id,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "base_size": self.base_size,
            "limit_price": self.limit_price,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OrderRecord":
        return cls(
            order_id=d["order_id"],
            user_id=int(d["user_id"]),
            client_order_id=d.get("client_order_id"),
            product_id=d["product_id"],
            side=OrderSide(d["side"]),
            order_type=OrderType(d["order_type"]),
            base_size=d["base_size"],
            limit_price=d.get("limit_price"),
            status=OrderStatus(d.get("status", OrderStatus.PENDING.value)),
            created_at=d.get("created_at") or _now(),
            updated_at=d.get("updated_at") or _now(),
        )


class OrderTracker:
    """Keeps local order records in step with the exchange.

    `store` is anything with `save_order(record)`, `get_order(order_id)` and
    `list_orders(user_id)`; in the server it is the SQLite store.
    """

    def __init__(self, store) -> None:
        self.store = store

    def record_placed(
        self,
        user_id: int,
        ticket: OrderTicket,
        request: Dict[str, Any],
        response: Dict[str, Any],
    ) -> OrderRecord:
        """Persist a freshly placed order from the request body and exchange response."""
        config = request["order_configuration"]
        inner = next(iter(config.values()))
        order_id = (
            response.get("order_id")
            or (response.get("success_response") or {}).get("order_id")
            or request["client_order_id"]
        )
        record = OrderRecord(
            order_id=order_id,
            user_id=user_id,
            client_order_id=request["client_order_id"],
            product_id=ticket.product_id,
            side=ticket.side,
            order_type=ticket.order_type,
            base_size=inner["base_size"],
            limit_price=inner.get("limit_price"),
        )
        if response.get("success") is False:
            record.transition(OrderStatus.FAILED)
        else:
            record.transition(OrderStatus.OPEN)
        self.store.save_order(record)
        logger.info(
            f"Order recorded | order_id={record.order_id} product_id={record.product_id} "
            f"side={record.side.value} status={record.status.value}"
        )
        return record

    def mark_cancelled(self, order_id: str) -> Optional[OrderRecord]:
        record = self.store.get_order(order_id)
        if record is None:
            return None
        if record.transition(OrderStatus.CANCELLED):
            self.store.save_order(record)
            logger.info(f"Order cancelled | order_id={order_id}")
        return record

    def sync(self, order_id: str, raw_status: Optional[str]) -> Optional[OrderRecord]:
        """Apply an exchange-reported status; terminal local records are left alone."""
        record = self.store.get_order(order_id)
        if record is None:
            return None
        status = normalize_status(raw_status)
        if status in (OrderStatus.UNKNOWN, OrderStatus.PENDING):
            return record
        try:
            changed = record.transition(status)
        except InvalidTransitionError as e:
            logger.warning(f"Ignoring exchange status | order_id={order_id} reason={e}")
            return record
        if changed:
            self.store.save_order(record)
        return record
