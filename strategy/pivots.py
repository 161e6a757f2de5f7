"""Classic floor-trader pivot levels.

Each timeframe's ladder is derived from the prior period's high, low and close::

    pivot = (H + L + C) / 3
    r1 = 2 * pivot - L        s1 = 2 * pivot - H
    r2 = pivot + (H - L)      s2 = pivot - (H - L)
    r3 = r1 + (H - L)         s3 = s1 - (H - L)

Levels are rounded to cents half away from zero, using the shortest decimal
representation of each float so that ``2.675`` rounds to ``2.68``.
"""
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from strategy.errors import MissingBarData
from strategy.market_types import LevelSet, PivotLadder, PriceBar

_CENT = Decimal('0.01')


def round_price(value: float) -> float:
    return float(Decimal(repr(float(value))).quantize(_CENT, rounding=ROUND_HALF_UP))


def calculate_levels(bar: Optional[PriceBar], symbol: Optional[str] = None,
                     timeframe: str = 'daily') -> LevelSet:
    if bar is None:
        raise MissingBarData(symbol, timeframe)
    high, low, close = float(bar.high), float(bar.low), float(bar.close)
    span = high - low
    pivot = (high + low + close) / 3
    r1 = pivot * 2 - low
    s1 = pivot * 2 - high
    return LevelSet(
        s3=round_price(s1 - span),
        s2=round_price(pivot - span),
        s1=round_price(s1),
        pivot=round_price(pivot),
        r1=round_price(r1),
        r2=round_price(pivot + span),
        r3=round_price(r1 + span),
    )


def calculate_ladder(bars: Mapping[str, Optional[PriceBar]], symbol: Optional[str] = None,
                     computed_at: Optional[datetime] = None) -> PivotLadder:
    """Build the daily/weekly/monthly ladder; any absent bar raises ``MissingBarData``."""
    return PivotLadder(
        daily=calculate_levels(bars.get('daily'), symbol, 'daily'),
        weekly=calculate_levels(bars.get('weekly'), symbol, 'weekly'),
        monthly=calculate_levels(bars.get('monthly'), symbol, 'monthly'),
        computed_at=computed_at or datetime.now(timezone.utc),
    )
