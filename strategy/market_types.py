from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

LEVEL_NAMES: Tuple[str, ...] = ('s3', 's2', 's1', 'pivot', 'r1', 'r2', 'r3')
TIMEFRAMES: Tuple[str, ...] = ('daily', 'weekly', 'monthly')


def parse_timestamp(value: Any) -> datetime:
    """Coerce ISO strings, epoch seconds/milliseconds or datetimes to aware UTC datetimes."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        # Alpaca may send nanosecond fractions; fromisoformat accepts at most six digits
        if '.' in text:
            head, _, tail = text.partition('.')
            digits = ''.join(ch for ch in tail if ch.isdigit())
            offset = tail[len(digits):]
            text = f"{head}.{digits[:6]}{offset}"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


@dataclass(frozen=True)
class Bar:
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_stream(cls, payload: Dict[str, Any]) -> 'Bar':
        """Build a bar from an Alpaca stream message (`{"T": "b", "S": ..., "o": ...}`)."""
        return cls(
            symbol=payload['S'],
            timestamp=parse_timestamp(payload['t']),
            open=float(payload['o']),
            high=float(payload['h']),
            low=float(payload['l']),
            close=float(payload['c']),
            volume=float(payload.get('v') or 0.0),
        )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'Bar':
        return cls(
            symbol=payload['symbol'],
            timestamp=parse_timestamp(payload['timestamp']),
            open=float(payload['open']),
            high=float(payload['high']),
            low=float(payload['low']),
            close=float(payload['close']),
            volume=float(payload.get('volume') or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp.isoformat(),
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


@dataclass(frozen=True)
class PriceBar:
    """A completed higher-timeframe bar used as pivot input."""

    high: float
    low: float
    close: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LevelSet:
    s3: float
    s2: float
    s1: float
    pivot: float
    r1: float
    r2: float
    r3: float

    def ordered(self) -> List[Tuple[str, float]]:
        return [(name, getattr(self, name)) for name in LEVEL_NAMES]

    def price_of(self, name: str) -> float:
        if name not in LEVEL_NAMES:
            raise KeyError(name)
        return getattr(self, name)

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in LEVEL_NAMES}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'LevelSet':
        return cls(**{name: float(payload[name]) for name in LEVEL_NAMES})


@dataclass(frozen=True)
class PivotLadder:
    daily: LevelSet
    weekly: LevelSet
    monthly: LevelSet
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def same_levels(self, other: Optional['PivotLadder']) -> bool:
        if other is None:
            return False
        return (
            self.daily == other.daily
            and self.weekly == other.weekly
            and self.monthly == other.monthly
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'daily': self.daily.to_dict(),
            'weekly': self.weekly.to_dict(),
            'monthly': self.monthly.to_dict(),
            'computed_at': self.computed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'PivotLadder':
        return cls(
            daily=LevelSet.from_dict(payload['daily']),
            weekly=LevelSet.from_dict(payload['weekly']),
            monthly=LevelSet.from_dict(payload['monthly']),
            computed_at=parse_timestamp(payload['computed_at']),
        )
