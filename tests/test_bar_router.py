import asyncio
import sys

sys.path.insert(0, '.')

from ingest.bar_router import BarRouter
from tests.fakes import at, make_bar


def _bar(symbol, minute, close=100.0):
    return make_bar(symbol, at(10, minute), close, close, close, close)


def test_bars_handled_in_order_per_symbol():
    async def _run():
        seen = []

        async def handler(bar):
            # Yield so symbols interleave
            await asyncio.sleep(0)
            seen.append((bar.symbol, bar.timestamp.minute))

        router = BarRouter(handler, queue_maxsize=10)
        await router.route_batch([_bar('QQQ', 1), _bar('SPY', 1), _bar('QQQ', 2), _bar('SPY', 2), _bar('QQQ', 3)])
        await router.join()
        await router.stop()

        assert [minute for symbol, minute in seen if symbol == 'QQQ'] == [1, 2, 3]
        assert [minute for symbol, minute in seen if symbol == 'SPY'] == [1, 2]
        assert sorted(router.symbols) == ['QQQ', 'SPY']

    asyncio.run(_run())


def test_handler_error_does_not_stop_other_bars():
    async def _run():
        seen = []

        async def handler(bar):
            if bar.symbol == 'BAD' and bar.timestamp.minute == 1:
                raise RuntimeError('boom')
            seen.append((bar.symbol, bar.timestamp.minute))

        router = BarRouter(handler, queue_maxsize=10)
        await router.route_batch([_bar('BAD', 1), _bar('QQQ', 1), _bar('BAD', 2)])
        await router.join()
        await router.stop()

        assert ('QQQ', 1) in seen
        assert ('BAD', 2) in seen

    asyncio.run(_run())


def test_full_queue_drops_oldest_bar():
    async def _run():
        seen = []

        async def handler(bar):
            seen.append(bar.timestamp.minute)

        router = BarRouter(handler, queue_maxsize=2)
        for minute in (1, 2, 3):
            router.submit(_bar('QQQ', minute))
        await router.join()
        await router.stop()

        assert seen == [2, 3]

    asyncio.run(_run())


def test_stopped_router_drops_bars():
    async def _run():
        seen = []

        async def handler(bar):
            seen.append(bar)

        router = BarRouter(handler, queue_maxsize=2)
        await router.stop()
        router.submit(_bar('QQQ', 1))
        assert router.symbols == []
        assert seen == []

    asyncio.run(_run())
