import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from orchestration.state_store import MemoryTickerStateStore, build_state_store
from strategy.errors import StatePersistenceFailed
from strategy.monitoring_state import MonitoringState, MonitorPhase, TickerState
from tests.fakes import FlakyStore, at, make_bar, make_ladder


def test_set_fields_requires_existing_record():
    async def _run():
        store = MemoryTickerStateStore()
        assert not await store.set_fields('QQQ', last_bar=make_bar('QQQ', at(9, 45), 1, 1, 1, 1))
        assert await store.get('QQQ') is None

        await store.save(TickerState('QQQ', ladder=make_ladder()))
        watching = MonitoringState(level_name='s1', level_price=90.0, target_price=100.0)
        assert await store.set_fields('QQQ', monitoring=watching)
        state = await store.get('QQQ')
        assert state.phase == MonitorPhase.WATCHING
        assert state.ladder.daily.pivot == 100.0

    asyncio.run(_run())


def test_save_upserts_and_all_lists_every_symbol():
    async def _run():
        store = MemoryTickerStateStore()
        await store.save(TickerState('SPY', ladder=make_ladder()))
        await store.save(TickerState('QQQ'))
        await store.save(TickerState('QQQ', last_bar=make_bar('QQQ', at(9, 45), 90, 91, 89, 90.5)))
        states = await store.all()
        assert [state.symbol for state in states] == ['QQQ', 'SPY']
        assert states[0].previous_close == 90.5

    asyncio.run(_run())


def test_unknown_field_rejected():
    async def _run():
        store = MemoryTickerStateStore()
        await store.save(TickerState('QQQ'))
        with pytest.raises(KeyError):
            await store.set_fields('QQQ', phase='idle')

    asyncio.run(_run())


def test_lock_is_per_symbol():
    store = MemoryTickerStateStore()
    assert store.lock('QQQ') is store.lock('QQQ')
    assert store.lock('QQQ') is not store.lock('SPY')


def test_exhausted_retries_raise():
    async def _run():
        store = FlakyStore()
        store.fail_writes = True
        with pytest.raises(StatePersistenceFailed):
            await store.save(TickerState('QQQ'))
        assert store.write_attempts == store.write_retries

    asyncio.run(_run())


def test_build_state_store_backends():
    assert isinstance(build_state_store({'backend': 'memory'}), MemoryTickerStateStore)
    with pytest.raises(RuntimeError):
        build_state_store({'backend': 'postgres', 'dsn': '${PIVOT_TRADER_DSN}'})
    with pytest.raises(RuntimeError):
        build_state_store({'backend': 'redis'})
