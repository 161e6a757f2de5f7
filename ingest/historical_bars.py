import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz

from config import config
from strategy.market_types import PriceBar, parse_timestamp

from .alpaca_rest import AlpacaRESTClient


logger = logging.getLogger(__name__)

_ALPACA_TIMEFRAMES = {
    "daily": "1Day",
    "weekly": "1Week",
    "monthly": "1Month",
}

# Calendar days requested per timeframe; enough to span holidays and short months
_LOOKBACK_DAYS = {
    "daily": 10,
    "weekly": 21,
    "monthly": 70,
}


class AlpacaHistoricalBars:
    """Fetches the last completed daily, weekly or monthly bar for pivot computation."""

    def __init__(self, rest: Optional[AlpacaRESTClient] = None, timezone: Optional[str] = None,
                 feed: str = "iex"):
        broker_cfg = config.section("broker")
        self._rest = rest or AlpacaRESTClient(
            base_url=broker_cfg.get("data_url") or "https://data.alpaca.markets"
        )
        self._tz = pytz.timezone(timezone or config.section("session").get("timezone", "America/New_York"))
        self._feed = feed

    async def get_last_bar(self, symbol: str, timeframe: str,
                           now: Optional[datetime] = None) -> Optional[PriceBar]:
        if timeframe not in _ALPACA_TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe {timeframe!r}")
        local_now = self._localize(now)
        period_start = self.period_start(timeframe, local_now)
        params = {
            "timeframe": _ALPACA_TIMEFRAMES[timeframe],
            "start": (period_start - timedelta(days=_LOOKBACK_DAYS[timeframe])).date().isoformat(),
            "adjustment": "raw",
            "feed": self._feed,
            "limit": 100,
        }
        data = await self._rest.get(f"/v2/stocks/{symbol}/bars", params=params)
        completed = [
            bar for bar in self._parse_bars(data)
            if bar.timestamp is not None and bar.timestamp.astimezone(self._tz) < period_start
        ]
        if not completed:
            logger.warning("No completed %s bar for %s before %s", timeframe, symbol, period_start.date())
            return None
        return max(completed, key=lambda bar: bar.timestamp)

    def period_start(self, timeframe: str, local_now: datetime) -> datetime:
        """Local midnight that opens the current day, week (Monday) or month."""
        day = local_now.date()
        if timeframe == "weekly":
            day = day - timedelta(days=day.weekday())
        elif timeframe == "monthly":
            day = day.replace(day=1)
        return self._tz.localize(datetime(day.year, day.month, day.day))

    async def close(self) -> None:
        await self._rest.close()

    def _localize(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(self._tz)
        if now.tzinfo is None:
            return self._tz.localize(now)
        return now.astimezone(self._tz)

    @staticmethod
    def _parse_bars(data: Any) -> List[PriceBar]:
        raw_bars: List[Dict[str, Any]] = []
        if isinstance(data, dict):
            raw_bars = data.get("bars") or []
        bars = []
        for raw in raw_bars:
            try:
                bars.append(PriceBar(
                    high=float(raw["h"]),
                    low=float(raw["l"]),
                    close=float(raw["c"]),
                    timestamp=parse_timestamp(raw["t"]),
                ))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed historical bar %s: %s", raw, exc)
        return bars
