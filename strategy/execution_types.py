from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from strategy.market_types import parse_timestamp


@dataclass(frozen=True)
class BracketOrderIds:
    """Identifiers of the three legs of one bracket order."""

    entry: str
    take_profit: str
    stop_loss: str

    def as_dict(self) -> Dict[str, str]:
        return {
            "entry": self.entry,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "BracketOrderIds":
        return cls(
            entry=str(payload["entry"]),
            take_profit=str(payload["take_profit"]),
            stop_loss=str(payload["stop_loss"]),
        )


@dataclass(frozen=True)
class BracketRequest:
    symbol: str
    quantity: int
    limit_price: float
    take_profit_limit: float
    stop_price: float
    side: str = "buy"
    type: str = "limit"
    time_in_force: str = "day"
    client_order_id: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        payload = {
            "symbol": self.symbol,
            "qty": str(self.quantity),
            "side": self.side,
            "type": self.type,
            "time_in_force": self.time_in_force,
            "limit_price": f"{self.limit_price:.2f}",
            "order_class": "bracket",
            "take_profit": {"limit_price": f"{self.take_profit_limit:.2f}"},
            "stop_loss": {"stop_price": f"{self.stop_price:.2f}"},
        }
        if self.client_order_id:
            payload["client_order_id"] = self.client_order_id
        return payload


@dataclass
class OrderStatus:
    """Normalized view of a broker order; only fill and cancel times drive decisions."""

    id: str
    symbol: Optional[str] = None
    status: Optional[str] = None
    filled_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_filled(self) -> bool:
        return self.filled_at is not None

    @property
    def is_open(self) -> bool:
        return self.filled_at is None and self.canceled_at is None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OrderStatus":
        return cls(
            id=str(payload.get("id")),
            symbol=payload.get("symbol"),
            status=payload.get("status"),
            filled_at=_optional_ts(payload.get("filled_at")),
            canceled_at=_optional_ts(payload.get("canceled_at")),
            raw=payload,
        )


@dataclass(frozen=True)
class AccountSnapshot:
    buying_power: float
    non_marginable_buying_power: Optional[float] = None

    @property
    def available_cash(self) -> float:
        if self.non_marginable_buying_power is not None:
            return self.non_marginable_buying_power
        return self.buying_power


def _optional_ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_timestamp(value)
