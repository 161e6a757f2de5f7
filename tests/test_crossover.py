import sys

sys.path.insert(0, '.')

from strategy.crossover import CrossoverDetector, level_rank
from strategy.market_types import LevelSet
from tests.fakes import at, make_bar

LEVELS = LevelSet(s3=70.0, s2=80.0, s1=90.0, pivot=100.0, r1=110.0, r2=120.0, r3=130.0)


def _detect(o, h, l, c, previous_close=None, exclude=()):
    bar = make_bar('QQQ', at(10, 0), o, h, l, c)
    return CrossoverDetector().detect(bar, LEVELS, previous_close, exclude=exclude)


def test_open_below_close_above_crosses():
    crossover = _detect(79.5, 81.2, 79.0, 80.6)
    assert crossover.level_name == 's2'
    assert crossover.level_price == 80.0
    assert crossover.target_name == 's1'
    assert crossover.target_price == 90.0


def test_target_is_next_level_not_two_above():
    crossover = _detect(80.0, 82.0, 79.9, 81.0)
    assert crossover.level_name == 's2'
    assert crossover.target_name == 's1'
    assert crossover.target_name != 's3'


def test_gap_over_level_uses_previous_close():
    assert _detect(90.5, 91.0, 90.2, 90.8) is None
    crossover = _detect(90.5, 91.0, 90.2, 90.8, previous_close=89.7)
    assert crossover.level_name == 's1'


def test_previous_close_at_level_is_not_a_cross():
    assert _detect(90.5, 91.0, 90.2, 90.8, previous_close=90.0) is None


def test_close_at_level_is_not_a_cross():
    assert _detect(89.0, 90.4, 88.8, 90.0) is None


def test_lowest_crossed_level_wins():
    # One bar running from below s1 to above r1
    crossover = _detect(89.0, 111.0, 88.0, 110.5)
    assert crossover.level_name == 's1'
    assert crossover.target_name == 'pivot'


def test_top_level_has_no_entry():
    crossover = _detect(129.5, 131.0, 129.0, 130.4)
    assert crossover.level_name == 'r3'
    assert crossover.no_entry
    assert crossover.target_price is None


def test_excluded_level_is_skipped():
    crossover = _detect(89.0, 101.5, 88.8, 101.2, exclude=('s1',))
    assert crossover.level_name == 'pivot'
    assert crossover.target_name == 'r1'


def test_level_rank_follows_ladder_order():
    assert level_rank('s3') < level_rank('s1') < level_rank('pivot') < level_rank('r3')
