import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from strategy.execution_types import AccountSnapshot, BracketOrderIds, BracketRequest, OrderStatus
from strategy.market_types import Bar


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaperOrder:
    id: str
    symbol: str
    side: str
    type: str
    quantity: int
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    parent_id: Optional[str] = None
    submitted_at: datetime = field(default_factory=_utcnow)
    filled_at: Optional[datetime] = None
    filled_avg_price: Optional[float] = None
    canceled_at: Optional[datetime] = None
    legs: List[str] = field(default_factory=list)
    client_order_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.filled_at is None and self.canceled_at is None

    @property
    def status(self) -> str:
        if self.filled_at is not None:
            return "filled"
        if self.canceled_at is not None:
            return "canceled"
        return "held" if self.parent_id else "new"

    def as_payload(self, orders: Mapping[str, "PaperOrder"], nested: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "client_order_id": self.client_order_id,
            "symbol": self.symbol,
            "qty": str(self.quantity),
            "filled_qty": str(self.quantity if self.filled_at else 0),
            "side": self.side,
            "type": self.type,
            "limit_price": self.limit_price,
            "stop_price": self.stop_price,
            "filled_avg_price": self.filled_avg_price,
            "status": self.status,
            "submitted_at": self.submitted_at.isoformat(),
            "filled_at": self.filled_at.isoformat() if self.filled_at else None,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
            "replaced_at": None,
        }
        if nested and self.legs:
            payload["legs"] = [orders[leg_id].as_payload(orders, nested=False) for leg_id in self.legs]
        else:
            payload["legs"] = None
        return payload


@dataclass
class PaperPosition:
    symbol: str
    qty: int
    avg_price: float


class PaperBroker:
    """In-process broker gateway that tracks bracket orders and simulates fills from bars."""

    def __init__(self, initial_equity: float = 100000.0, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._cash = float(initial_equity)
        self._clock = clock or _utcnow
        self._orders: Dict[str, PaperOrder] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self._client_ids: Dict[str, str] = {}

    @property
    def cash(self) -> float:
        return self._cash

    @property
    def orders(self) -> Mapping[str, PaperOrder]:
        return MappingProxyType(self._orders)

    @property
    def positions(self) -> Mapping[str, PaperPosition]:
        return MappingProxyType(self._positions)

    async def get_account(self) -> AccountSnapshot:
        return AccountSnapshot(buying_power=self._cash, non_marginable_buying_power=self._cash)

    async def place_bracket_order(self, request: BracketRequest) -> BracketOrderIds:
        if request.quantity <= 0:
            raise ValueError("quantity must be positive")
        if request.client_order_id and request.client_order_id in self._client_ids:
            raise ValueError(f"client_order_id {request.client_order_id} must be unique")
        now = self._clock()
        entry = PaperOrder(
            id=self._new_id(), symbol=request.symbol, side=request.side, type=request.type,
            quantity=request.quantity, limit_price=request.limit_price, submitted_at=now,
            client_order_id=request.client_order_id,
        )
        take_profit = PaperOrder(
            id=self._new_id(), symbol=request.symbol, side="sell", type="limit",
            quantity=request.quantity, limit_price=request.take_profit_limit,
            parent_id=entry.id, submitted_at=now,
        )
        stop_loss = PaperOrder(
            id=self._new_id(), symbol=request.symbol, side="sell", type="stop",
            quantity=request.quantity, stop_price=request.stop_price,
            parent_id=entry.id, submitted_at=now,
        )
        entry.legs = [take_profit.id, stop_loss.id]
        for order in (entry, take_profit, stop_loss):
            self._orders[order.id] = order
        if request.client_order_id:
            self._client_ids[request.client_order_id] = entry.id
        return BracketOrderIds(entry=entry.id, take_profit=take_profit.id, stop_loss=stop_loss.id)

    async def get_bracket_by_client_id(self, client_order_id: str) -> Optional[BracketOrderIds]:
        entry_id = self._client_ids.get(client_order_id)
        if entry_id is None:
            return None
        take_profit, stop_loss = self._orders[entry_id].legs
        return BracketOrderIds(entry=entry_id, take_profit=take_profit, stop_loss=stop_loss)

    async def cancel_order(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None or not order.is_open:
            return False
        self._cancel(order)
        # Cancelling an unfilled parent takes its legs with it
        for leg_id in order.legs:
            leg = self._orders[leg_id]
            if leg.is_open:
                self._cancel(leg)
        return True

    async def get_order(self, order_id: str) -> OrderStatus:
        order = self._orders.get(order_id)
        if order is None:
            raise KeyError(f"unknown order {order_id}")
        return OrderStatus(
            id=order.id,
            symbol=order.symbol,
            status=order.status,
            filled_at=order.filled_at,
            canceled_at=order.canceled_at,
        )

    async def list_orders(self, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        parents = [order for order in self._orders.values() if order.parent_id is None]
        parents.sort(key=lambda order: order.submitted_at, reverse=True)
        return [order.as_payload(self._orders) for order in parents]

    async def cancel_all_orders(self) -> int:
        cancelled = 0
        for order in list(self._orders.values()):
            if order.is_open:
                self._cancel(order)
                cancelled += 1
        return cancelled

    async def close_all_positions(self) -> int:
        closed = len(self._positions)
        # Liquidation price is unknown here; positions are flattened at their average price
        for position in self._positions.values():
            self._cash += position.qty * position.avg_price
        self._positions.clear()
        return closed

    async def close(self) -> None:
        return None

    def on_bar(self, bar: Bar) -> None:
        """Fill resting orders whose price the bar traded through."""
        for order in list(self._orders.values()):
            if order.symbol != bar.symbol or not order.is_open:
                continue
            if order.parent_id is None:
                if order.limit_price is not None and bar.low <= order.limit_price:
                    self.fill(order.id, order.limit_price, bar.timestamp)
                continue
            parent = self._orders[order.parent_id]
            if parent.filled_at is None:
                continue
            if order.type == "limit" and bar.high >= (order.limit_price or float("inf")):
                self.fill(order.id, order.limit_price, bar.timestamp)
            elif order.type == "stop" and bar.low <= (order.stop_price or float("-inf")):
                self.fill(order.id, order.stop_price, bar.timestamp)

    def fill(self, order_id: str, price: Optional[float] = None, at: Optional[datetime] = None) -> None:
        order = self._orders[order_id]
        if not order.is_open:
            return
        fill_price = price if price is not None else (order.limit_price or order.stop_price or 0.0)
        order.filled_at = at or self._clock()
        order.filled_avg_price = fill_price
        if order.side == "buy":
            self._cash -= order.quantity * fill_price
            self._positions[order.symbol] = PaperPosition(order.symbol, order.quantity, fill_price)
            return
        self._cash += order.quantity * fill_price
        self._positions.pop(order.symbol, None)
        # One-cancels-other between the exit legs
        if order.parent_id:
            for sibling_id in self._orders[order.parent_id].legs:
                sibling = self._orders[sibling_id]
                if sibling.id != order.id and sibling.is_open:
                    self._cancel(sibling)

    def _cancel(self, order: PaperOrder) -> None:
        order.canceled_at = self._clock()

    @staticmethod
    def _new_id() -> str:
        return f"paper-{uuid.uuid4().hex[:12]}"
