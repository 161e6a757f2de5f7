import sys

sys.path.insert(0, '.')

import pytest

from strategy.errors import MissingBarData
from strategy.market_types import LEVEL_NAMES, PriceBar
from strategy.pivots import calculate_ladder, calculate_levels, round_price


def test_reference_bar_levels():
    levels = calculate_levels(PriceBar(high=110.0, low=90.0, close=100.0))
    assert levels.to_dict() == {
        's3': 70.0, 's2': 80.0, 's1': 90.0, 'pivot': 100.0,
        'r1': 110.0, 'r2': 120.0, 'r3': 130.0,
    }


def test_levels_are_rounded_to_cents():
    levels = calculate_levels(PriceBar(high=105.5, low=98.25, close=101.0))
    assert levels.pivot == 101.58
    assert levels.s1 == 97.67
    assert levels.r1 == 104.92
    assert levels.s2 == 94.33
    assert levels.r2 == 108.83
    assert levels.s3 == 90.42
    assert levels.r3 == 112.17


def test_levels_are_ordered_low_to_high():
    levels = calculate_levels(PriceBar(high=52.37, low=49.81, close=50.02))
    prices = [price for _, price in levels.ordered()]
    assert [name for name, _ in levels.ordered()] == list(LEVEL_NAMES)
    assert prices == sorted(prices)


@pytest.mark.parametrize('value, expected', [
    (2.675, 2.68),
    (-1.005, -1.01),
    (1.004, 1.0),
    (99.995, 100.0),
    (0.125, 0.13),
])
def test_round_price_half_away_from_zero(value, expected):
    assert round_price(value) == expected


def test_missing_bar_raises_with_timeframe():
    bar = PriceBar(high=110.0, low=90.0, close=100.0)
    with pytest.raises(MissingBarData) as excinfo:
        calculate_ladder({'daily': bar, 'weekly': None, 'monthly': bar}, 'SPY')
    assert excinfo.value.symbol == 'SPY'
    assert excinfo.value.timeframe == 'weekly'


def test_ladder_roundtrip_keeps_levels():
    bar = PriceBar(high=110.0, low=90.0, close=100.0)
    ladder = calculate_ladder({'daily': bar, 'weekly': bar, 'monthly': bar}, 'SPY')
    restored = type(ladder).from_dict(ladder.to_dict())
    assert restored.same_levels(ladder)
    assert restored.computed_at == ladder.computed_at
