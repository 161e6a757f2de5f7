import logging
import math
from typing import Optional

from config import config
from strategy.errors import InsufficientSizing
from strategy.execution_types import BracketRequest
from strategy.pivots import round_price


logger = logging.getLogger(__name__)


class BracketSizer:
    """Prices and sizes one long bracket from a crossed level and its target."""

    def __init__(self, capital_fraction: Optional[float] = None, entry_tolerance: Optional[float] = None,
                 exit_tolerance: Optional[float] = None, stop_risk_ratio: Optional[float] = None,
                 time_in_force: Optional[str] = None):
        risk_cfg = config.section('risk')
        self.capital_fraction = float(
            capital_fraction if capital_fraction is not None else risk_cfg.get('capital_fraction', 0.1)
        )
        self.entry_tolerance = float(
            entry_tolerance if entry_tolerance is not None else risk_cfg.get('entry_tolerance', 0.01)
        )
        self.exit_tolerance = float(
            exit_tolerance if exit_tolerance is not None else risk_cfg.get('exit_tolerance', 0.01)
        )
        self.stop_risk_ratio = float(
            stop_risk_ratio if stop_risk_ratio is not None else risk_cfg.get('stop_risk_ratio', 1 / 3)
        )
        self.time_in_force = time_in_force or risk_cfg.get('time_in_force', 'day')

    def entry_price(self, level_price: float) -> float:
        return round_price(level_price + self.entry_tolerance)

    def take_profit_price(self, target_price: float) -> float:
        return round_price(target_price - self.exit_tolerance)

    def stop_price(self, level_price: float, target_price: float) -> float:
        return round_price(level_price - (target_price - level_price) * self.stop_risk_ratio)

    def quantity(self, symbol: str, cash: float, entry_price: float) -> int:
        if entry_price <= 0:
            raise InsufficientSizing(symbol, cash, entry_price)
        qty = math.floor(cash * self.capital_fraction / entry_price)
        if qty < 1:
            raise InsufficientSizing(symbol, cash, entry_price)
        return qty

    def build_request(self, symbol: str, level_price: float, target_price: float,
                      cash: float, client_order_id: Optional[str] = None) -> BracketRequest:
        entry = self.entry_price(level_price)
        request = BracketRequest(
            symbol=symbol,
            quantity=self.quantity(symbol, cash, entry),
            limit_price=entry,
            take_profit_limit=self.take_profit_price(target_price),
            stop_price=self.stop_price(level_price, target_price),
            time_in_force=self.time_in_force,
            client_order_id=client_order_id,
        )
        logger.debug(
            "Sized %s bracket: qty=%s entry=%.2f tp=%.2f stop=%.2f (cash=%.2f)",
            symbol,
            request.quantity,
            request.limit_price,
            request.take_profit_limit,
            request.stop_price,
            cash,
        )
        return request
