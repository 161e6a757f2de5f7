from dataclasses import dataclass
from typing import Iterable, Optional

from strategy.market_types import LEVEL_NAMES, Bar, LevelSet


@dataclass(frozen=True)
class Crossover:
    level_name: str
    level_price: float
    target_name: Optional[str]
    target_price: Optional[float]

    @property
    def no_entry(self) -> bool:
        """True for a crossing of the top of the ladder, where there is no target above."""
        return self.target_price is None


class CrossoverDetector:
    """Report the lowest daily level a bar has freshly crossed upward.

    A level counts as crossed when the bar opened at or below it and closed above
    it, or when the previous bar closed below it and this bar closed above it.
    The second test catches bars that gap over a level between minutes.
    """

    def detect(self, bar: Bar, levels: LevelSet, previous_close: Optional[float] = None,
               exclude: Iterable[str] = ()) -> Optional[Crossover]:
        ordered = levels.ordered()
        for index, (name, price) in enumerate(ordered):
            if name in exclude:
                continue
            if not self._crossed(bar, price, previous_close):
                continue
            if index + 1 < len(ordered):
                target_name, target_price = ordered[index + 1]
                return Crossover(name, price, target_name, target_price)
            return Crossover(name, price, None, None)
        return None

    @staticmethod
    def _crossed(bar: Bar, level: float, previous_close: Optional[float]) -> bool:
        if bar.close <= level:
            return False
        if bar.open <= level:
            return True
        return previous_close is not None and previous_close < level


def level_rank(name: str) -> int:
    return LEVEL_NAMES.index(name)
