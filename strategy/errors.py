from typing import Optional


class TradingError(Exception):
    """Base class for per-instrument failures that must not stop the stream."""

    def __init__(self, symbol: Optional[str], message: str):
        self.symbol = symbol
        super().__init__(f"{symbol}: {message}" if symbol else message)


class MissingBarData(TradingError):
    def __init__(self, symbol: Optional[str], timeframe: str):
        self.timeframe = timeframe
        super().__init__(symbol, f"no completed {timeframe} bar available")


class InsufficientSizing(TradingError):
    def __init__(self, symbol: str, cash: float, entry_price: float):
        self.cash = cash
        self.entry_price = entry_price
        super().__init__(symbol, f"cash {cash:.2f} cannot buy one share at {entry_price:.2f}")


class OrderPlacementFailed(TradingError):
    pass


class GatewayQueryFailed(TradingError):
    pass


class StatePersistenceFailed(TradingError):
    pass
