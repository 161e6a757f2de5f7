from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from strategy.crossover import level_rank
from strategy.errors import GatewayQueryFailed, InsufficientSizing, OrderPlacementFailed
from strategy.monitoring_state import MonitoringState, MonitorPhase

if TYPE_CHECKING:
    from .crossover import Crossover
    from .monitor import BarTick, MonitoringStateMachine


logger = logging.getLogger(__name__)

class MonitorStateProcessor(ABC):
    """Handles one bar for one phase.

    ``process`` returns True when the phase changed in a way that requires the
    same bar to be evaluated again by the next phase's processor.
    """

    def __init__(self, tick: BarTick, machine: MonitoringStateMachine):
        self.tick = tick
        self.machine = machine

    @abstractmethod
    async def process(self) -> bool:
        pass

    def _start_watching(self, crossover: Crossover, from_state: str, action: str) -> None:
        self.tick.set_monitoring(MonitoringState(
            level_name=crossover.level_name,
            level_price=crossover.level_price,
            target_price=crossover.target_price,
        ))
        self.machine._emit_transition(
            self.tick, from_state, 'watching', action,
            level=crossover.level_name, level_price=crossover.level_price,
            target=crossover.target_name, target_price=crossover.target_price,
        )


class IdleState(MonitorStateProcessor):
    async def process(self) -> bool:
        if self.tick.after_cutoff:
            return False
        crossover = self.machine.detect(self.tick)
        if crossover is None:
            return False
        if crossover.no_entry:
            self.machine._emit_transition(
                self.tick, 'idle', 'idle', 'no_entry',
                level=crossover.level_name, level_price=crossover.level_price,
            )
            return False
        self._start_watching(crossover, 'idle', 'start_watching')
        return True


class WatchingState(MonitorStateProcessor):
    async def process(self) -> bool:
        tick = self.tick
        bar = tick.bar
        monitoring = tick.monitoring
        phase = monitoring.phase.value

        # Armed without order ids means placement may have happened before the last write
        if monitoring.phase == MonitorPhase.ARMED:
            return await self._recover(monitoring)

        if self.machine.reset_on_close_below_level and bar.close < monitoring.level_price:
            tick.set_monitoring(None)
            self.machine._emit_transition(tick, phase, 'idle', 'closed_below_level')
            return True

        quarter_mark = monitoring.price_at(self.machine.quarter_mark_ratio)
        if bar.close > monitoring.level_price and bar.high >= quarter_mark:
            if tick.after_cutoff:
                return False
            monitoring = monitoring.evolve(
                reached_quarter_mark=True,
                client_order_id=self.machine.client_order_id(bar, monitoring.level_name),
            )
            tick.set_monitoring(monitoring)
            self.machine._emit_transition(tick, 'watching', 'armed', 'quarter_mark', quarter_mark=quarter_mark)
            await self.machine.checkpoint(tick)
            return await self._place(monitoring)

        crossover = self.machine.detect(tick)
        if crossover is None or crossover.no_entry or crossover.level_name == monitoring.level_name:
            return False
        self._start_watching(crossover, phase, 'supersede')
        return True

    async def _recover(self, monitoring: MonitoringState) -> bool:
        tick = self.tick
        client_order_id = monitoring.client_order_id
        ids = None
        if client_order_id:
            try:
                ids = await self.machine.order_manager.find_bracket(client_order_id)
            except GatewayQueryFailed as exc:
                logger.warning("%s armed order lookup failed, holding armed: %s", tick.symbol, exc)
                return False
        if ids is None:
            tick.set_monitoring(monitoring.evolve(reached_quarter_mark=False, client_order_id=None))
            self.machine._emit_transition(tick, 'armed', 'watching', 'order_not_found', client_order_id=client_order_id)
            return True
        tick.set_monitoring(monitoring.evolve(order_ids=ids))
        self.machine._emit_transition(
            tick, 'armed', 'order_pending', 'order_recovered',
            level=monitoring.level_name, entry_id=ids.entry, client_order_id=client_order_id,
        )
        return True

    async def _place(self, monitoring: MonitoringState) -> bool:
        tick = self.tick
        try:
            ids = await self.machine.order_manager.place(
                tick.symbol, monitoring.level_price, monitoring.target_price,
                client_order_id=monitoring.client_order_id,
            )
        except (OrderPlacementFailed, InsufficientSizing) as exc:
            tick.set_monitoring(monitoring.evolve(reached_quarter_mark=False, client_order_id=None))
            self.machine._emit_transition(tick, 'armed', 'watching', 'order_failed', error=str(exc))
            return False
        tick.set_monitoring(monitoring.evolve(order_ids=ids))
        self.machine._emit_transition(
            tick, 'armed', 'order_pending', 'place_order',
            level=monitoring.level_name, entry_id=ids.entry,
        )
        await self.machine.notify_order(tick.symbol, 'bracket placed', monitoring)
        return False


class OrderPendingState(MonitorStateProcessor):
    async def process(self) -> bool:
        tick = self.tick
        monitoring = tick.monitoring
        ids = monitoring.order_ids
        phase = monitoring.phase.value
        manager = self.machine.order_manager

        try:
            legs_open = await manager.legs_open(ids)
            entry_filled = monitoring.entry_filled
            if legs_open and not entry_filled:
                entry_filled = await manager.is_filled(ids.entry)
        except GatewayQueryFailed as exc:
            logger.warning("%s order status unknown, holding %s: %s", tick.symbol, phase, exc)
            return False

        if not legs_open:
            tick.set_monitoring(None)
            self.machine._emit_transition(tick, phase, 'idle', 'bracket_resolved', entry_id=ids.entry)
            return True

        if entry_filled:
            if not monitoring.entry_filled:
                tick.set_monitoring(monitoring.evolve(entry_filled=True))
                self.machine._emit_transition(tick, phase, 'holding', 'entry_filled', entry_id=ids.entry)
            return False

        if tick.after_cutoff:
            if await manager.cancel(ids, reason='cutoff'):
                tick.set_monitoring(None)
                self.machine._emit_transition(tick, phase, 'idle', 'cutoff_cancel', entry_id=ids.entry)
            return False

        if tick.bar.close > monitoring.price_at(self.machine.cancel_advance_ratio):
            if not await manager.cancel(ids, reason='advanced'):
                return False
            tick.set_monitoring(None)
            # The cancelled setup is not re-entered on the bar that invalidated it
            tick.excluded_level = monitoring.level_name
            self.machine._emit_transition(tick, phase, 'idle', 'advance_cancel', entry_id=ids.entry)
            return True

        if self.machine.lower_crossover_policy != 'cancel':
            return False
        crossover = self.machine.detect(tick)
        if crossover is None or crossover.no_entry:
            return False
        if level_rank(crossover.level_name) >= level_rank(monitoring.level_name):
            return False
        if not await manager.cancel(ids, reason='lower_crossover'):
            return False
        self._start_watching(crossover, phase, 'lower_crossover_cancel')
        return True
