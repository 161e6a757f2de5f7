import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pytz

from api.alerts import alert_webhook
from api.metrics import metrics
from config import config
from config.utils import parse_clock_time
from orchestration.state_store import TickerStateStore
from strategy.crossover import Crossover, CrossoverDetector
from strategy.errors import StatePersistenceFailed
from strategy.market_types import Bar, LevelSet, PivotLadder
from strategy.monitor_states import IdleState, OrderPendingState, WatchingState
from strategy.monitoring_state import MonitoringState, MonitorPhase, TickerState, Transition


logger = logging.getLogger(__name__)

LOWER_CROSSOVER_POLICIES = ('ignore', 'cancel')

# Idle -> Watching -> placement, or cancel -> Idle -> Watching, fits well inside this
_MAX_PASSES_PER_BAR = 4


@dataclass
class BarTick:
    """Working copy of one symbol's record while a single bar is evaluated."""

    bar: Bar
    state: TickerState
    previous_close: Optional[float]
    after_cutoff: bool
    transitions: List[Transition] = field(default_factory=list)
    excluded_level: Optional[str] = None

    @property
    def symbol(self) -> str:
        return self.bar.symbol

    @property
    def monitoring(self) -> Optional[MonitoringState]:
        return self.state.monitoring

    @property
    def levels(self) -> Optional[LevelSet]:
        return self.state.ladder.daily if self.state.ladder else None

    def set_monitoring(self, monitoring: Optional[MonitoringState]) -> None:
        self.state = self.state.evolve(monitoring=monitoring)


class MonitoringStateMachine:
    """Per-symbol monitoring lifecycle driven by one-minute bars.

    Every bar is handled under the symbol's store lock as read, decide, act,
    persist. Bars at or before the stored last bar are ignored, so replays and
    late arrivals produce no transitions. When a write exhausts its retries the
    unsaved record stays here and is used for that symbol's next bar.

    An armed record carries a client order id derived from the arming bar. A
    record loaded as armed without order ids is resolved by looking that id up
    at the broker, so a restart never places the same bracket twice.
    """

    def __init__(self, store: TickerStateStore, order_manager, detector: Optional[CrossoverDetector] = None,
                 strategy_cfg=None, session_cfg=None):
        strategy_cfg = strategy_cfg if strategy_cfg is not None else config.section('strategy')
        session_cfg = session_cfg if session_cfg is not None else config.section('session')
        self.store = store
        self.order_manager = order_manager
        self.detector = detector or CrossoverDetector()
        self.quarter_mark_ratio = float(strategy_cfg.get('quarter_mark_ratio', 0.25))
        self.cancel_advance_ratio = float(strategy_cfg.get('cancel_advance_ratio', 0.5))
        self.lower_crossover_policy = str(strategy_cfg.get('lower_crossover_policy', 'ignore')).lower()
        if self.lower_crossover_policy not in LOWER_CROSSOVER_POLICIES:
            raise ValueError(f"Unknown lower_crossover_policy '{self.lower_crossover_policy}'")
        self.reset_on_close_below_level = bool(strategy_cfg.get('reset_on_close_below_level', False))
        self.timezone = pytz.timezone(session_cfg.get('timezone', 'America/New_York'))
        self.order_cutoff = parse_clock_time(session_cfg.get('order_cutoff'), default='15:30')
        self._unsaved: Dict[str, TickerState] = {}

        self.state_map = {
            MonitorPhase.IDLE: IdleState,
            MonitorPhase.WATCHING: WatchingState,
            MonitorPhase.ARMED: WatchingState,
            MonitorPhase.ORDER_PENDING: OrderPendingState,
            MonitorPhase.HOLDING: OrderPendingState,
        }

    @property
    def unsaved_symbols(self) -> List[str]:
        return sorted(self._unsaved)

    def is_after_cutoff(self, timestamp: datetime) -> bool:
        return timestamp.astimezone(self.timezone).time() >= self.order_cutoff

    def client_order_id(self, bar: Bar, level_name: str) -> str:
        """Deterministic id for the bracket armed by ``bar`` at ``level_name``."""
        local = bar.timestamp.astimezone(self.timezone)
        return f"{bar.symbol}-{local:%Y%m%d-%H%M}-{level_name}"

    async def on_bar(self, bar: Bar) -> List[Transition]:
        started = time.perf_counter()
        symbol = bar.symbol
        async with self.store.lock(symbol):
            state = await self._load(symbol)
            if state.last_bar is not None and bar.timestamp <= state.last_bar.timestamp:
                metrics.record_bar_skipped(symbol)
                logger.debug(
                    "%s bar %s not newer than %s; ignored",
                    symbol,
                    bar.timestamp.isoformat(),
                    state.last_bar.timestamp.isoformat(),
                )
                return []

            tick = BarTick(
                bar=bar,
                state=state,
                previous_close=state.previous_close,
                after_cutoff=self.is_after_cutoff(bar.timestamp),
            )
            try:
                await self._dispatch(tick)
            except StatePersistenceFailed as exc:
                logger.error("%s checkpoint failed mid-bar: %s", symbol, exc)

            unchanged = tick.state is state and symbol not in self._unsaved
            tick.state = tick.state.evolve(last_bar=bar)
            if unchanged:
                await self._commit_last_bar(tick.state)
            else:
                await self._commit(tick.state)

        metrics.record_bar(symbol, time.perf_counter() - started)
        metrics.update_phase(symbol, tick.state.phase.value)
        return tick.transitions

    async def apply_ladder(self, symbol: str, ladder: PivotLadder) -> bool:
        """Install a freshly computed ladder and reset the symbol to Idle.

        A ladder with the same levels for the same trading date leaves the
        record untouched. Returns True when the record was replaced.
        """
        async with self.store.lock(symbol):
            current = await self._load(symbol)
            if current.ladder is not None and ladder.same_levels(current.ladder) \
                    and self._trading_date(current.ladder.computed_at) == self._trading_date(ladder.computed_at):
                logger.debug("%s ladder unchanged; recompute skipped", symbol)
                return False

            if current.monitoring is not None:
                logger.info(
                    "%s dropping %s tracking at %s on level recompute",
                    symbol,
                    current.phase.value,
                    current.monitoring.level_name,
                )
            fresh = TickerState(symbol=symbol, ladder=ladder)
            self._unsaved.pop(symbol, None)
            await self._commit(fresh)
            metrics.update_phase(symbol, fresh.phase.value)
            logger.info(
                "%s ladder installed: daily s1=%.2f pivot=%.2f r1=%.2f",
                symbol,
                ladder.daily.s1,
                ladder.daily.pivot,
                ladder.daily.r1,
            )
            return True

    def detect(self, tick: BarTick) -> Optional[Crossover]:
        levels = tick.levels
        if levels is None:
            return None
        exclude = (tick.excluded_level,) if tick.excluded_level else ()
        return self.detector.detect(tick.bar, levels, tick.previous_close, exclude=exclude)

    async def checkpoint(self, tick: BarTick) -> None:
        """Persist the in-progress record before an external side effect."""
        await self.store.save(tick.state)

    async def notify_order(self, symbol: str, action: str, monitoring: MonitoringState) -> None:
        await alert_webhook.order_alert(symbol, action, monitoring.level_name, monitoring.level_price)

    async def _dispatch(self, tick: BarTick) -> None:
        for _ in range(_MAX_PASSES_PER_BAR):
            processor = self.state_map[tick.state.phase](tick, self)
            if not await processor.process():
                return
        logger.warning("%s bar %s hit the per-bar pass limit", tick.symbol, tick.bar.timestamp.isoformat())

    async def _load(self, symbol: str) -> TickerState:
        pending = self._unsaved.get(symbol)
        if pending is not None:
            return pending
        state = await self.store.get(symbol)
        return state if state is not None else TickerState(symbol=symbol)

    async def _commit(self, state: TickerState) -> None:
        try:
            await self.store.save(state)
        except StatePersistenceFailed as exc:
            await self._keep_unsaved(state, exc)
            return
        self._unsaved.pop(state.symbol, None)

    async def _commit_last_bar(self, state: TickerState) -> None:
        """Bars that leave the rest of the record alone only advance ``last_bar``."""
        try:
            updated = await self.store.set_fields(state.symbol, last_bar=state.last_bar)
        except StatePersistenceFailed as exc:
            await self._keep_unsaved(state, exc)
            return
        if not updated:
            await self._commit(state)

    async def _keep_unsaved(self, state: TickerState, exc: StatePersistenceFailed) -> None:
        self._unsaved[state.symbol] = state
        logger.error("%s state kept in memory after failed write: %s", state.symbol, exc)
        await alert_webhook.persistence_alert(state.symbol, str(exc))

    def _trading_date(self, timestamp: datetime):
        return timestamp.astimezone(self.timezone).date()

    def _emit_transition(self, tick: BarTick, from_state: str, to_state: str, action: str, **details) -> None:
        transition = Transition(
            symbol=tick.symbol,
            from_state=from_state,
            to_state=to_state,
            action=action,
            details=details,
        )
        tick.transitions.append(transition)
        metrics.record_transition(action)
        logger.info(
            "%s %s -> %s (%s) at %s close=%.2f",
            tick.symbol,
            from_state,
            to_state,
            action,
            tick.bar.timestamp.isoformat(),
            tick.bar.close,
        )
