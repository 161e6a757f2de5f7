from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from strategy.execution_types import BracketOrderIds
from strategy.market_types import Bar, PivotLadder, parse_timestamp


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitorPhase(Enum):
    IDLE = "idle"
    WATCHING = "watching"
    ARMED = "armed"
    ORDER_PENDING = "order_pending"
    HOLDING = "holding"


@dataclass(frozen=True)
class MonitoringState:
    level_name: str
    level_price: float
    target_price: float
    reached_quarter_mark: bool = False
    order_ids: Optional[BracketOrderIds] = None
    entry_filled: bool = False
    client_order_id: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def phase(self) -> MonitorPhase:
        if self.order_ids is not None:
            return MonitorPhase.HOLDING if self.entry_filled else MonitorPhase.ORDER_PENDING
        if self.reached_quarter_mark:
            return MonitorPhase.ARMED
        return MonitorPhase.WATCHING

    @property
    def span(self) -> float:
        return self.target_price - self.level_price

    def price_at(self, ratio: float) -> float:
        return self.level_price + self.span * ratio

    def evolve(self, **changes: Any) -> 'MonitoringState':
        changes.setdefault('updated_at', _utcnow())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level_name': self.level_name,
            'level_price': self.level_price,
            'target_price': self.target_price,
            'reached_quarter_mark': self.reached_quarter_mark,
            'order_ids': self.order_ids.as_dict() if self.order_ids else None,
            'entry_filled': self.entry_filled,
            'client_order_id': self.client_order_id,
            'updated_at': self.updated_at.isoformat(),
            'phase': self.phase.value,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'MonitoringState':
        order_ids = payload.get('order_ids')
        return cls(
            level_name=payload['level_name'],
            level_price=float(payload['level_price']),
            target_price=float(payload['target_price']),
            reached_quarter_mark=bool(payload.get('reached_quarter_mark')),
            order_ids=BracketOrderIds.from_dict(order_ids) if order_ids else None,
            entry_filled=bool(payload.get('entry_filled')),
            client_order_id=payload.get('client_order_id'),
            updated_at=parse_timestamp(payload['updated_at']) if payload.get('updated_at') else _utcnow(),
        )


@dataclass(frozen=True)
class TickerState:
    """Everything persisted for one instrument."""

    symbol: str
    ladder: Optional[PivotLadder] = None
    last_bar: Optional[Bar] = None
    monitoring: Optional[MonitoringState] = None

    @property
    def phase(self) -> MonitorPhase:
        return self.monitoring.phase if self.monitoring else MonitorPhase.IDLE

    @property
    def previous_close(self) -> Optional[float]:
        return self.last_bar.close if self.last_bar else None

    def evolve(self, **changes: Any) -> 'TickerState':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'ladder': self.ladder.to_dict() if self.ladder else None,
            'last_bar': self.last_bar.to_dict() if self.last_bar else None,
            'monitoring': self.monitoring.to_dict() if self.monitoring else None,
            'phase': self.phase.value,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'TickerState':
        ladder = payload.get('ladder')
        last_bar = payload.get('last_bar')
        monitoring = payload.get('monitoring')
        return cls(
            symbol=payload['symbol'],
            ladder=PivotLadder.from_dict(ladder) if ladder else None,
            last_bar=Bar.from_dict(last_bar) if last_bar else None,
            monitoring=MonitoringState.from_dict(monitoring) if monitoring else None,
        )


@dataclass
class Transition:
    symbol: str
    from_state: str
    to_state: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
