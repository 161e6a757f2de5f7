import asyncio
import sys
from datetime import datetime

sys.path.insert(0, '.')

import pytest

from ingest.alpaca_rest import AlpacaAPIError
from ingest.historical_bars import AlpacaHistoricalBars
from strategy.execution_types import BracketRequest
from strategy.transports.alpaca import AlpacaTransport
from tests.fakes import NY, ny


class FakeRest:
    def __init__(self, responses=None, errors=None):
        self.responses = responses or {}
        self.errors = errors or {}
        self.calls = []
        self.closed = False

    async def _call(self, method, path, **kwargs):
        self.calls.append((method, path, kwargs))
        if (method, path) in self.errors:
            raise self.errors[(method, path)]
        return self.responses.get((method, path))

    async def get(self, path, params=None):
        return await self._call('GET', path, params=params)

    async def post(self, path, body=None):
        return await self._call('POST', path, body=body)

    async def delete(self, path, params=None):
        return await self._call('DELETE', path, params=params)

    async def close(self):
        self.closed = True


BRACKET_ACK = {
    'id': 'entry-1',
    'symbol': 'QQQ',
    'legs': [
        {'id': 'stop-1', 'type': 'stop'},
        {'id': 'tp-1', 'type': 'limit'},
    ],
}


def test_bracket_submission_maps_legs_by_type():
    async def _run():
        rest = FakeRest({('POST', '/v2/orders'): BRACKET_ACK})
        transport = AlpacaTransport(rest)
        request = BracketRequest('QQQ', 10, 90.01, 99.99, 86.67)
        ids = await transport.place_bracket_order(request)
        assert (ids.entry, ids.take_profit, ids.stop_loss) == ('entry-1', 'tp-1', 'stop-1')
        assert rest.calls[0][2]['body']['order_class'] == 'bracket'

    asyncio.run(_run())


def test_bracket_ack_without_legs_is_an_error():
    async def _run():
        rest = FakeRest({('POST', '/v2/orders'): {'id': 'entry-1', 'legs': None}})
        with pytest.raises(AlpacaAPIError):
            await AlpacaTransport(rest).place_bracket_order(BracketRequest('QQQ', 10, 90.01, 99.99, 86.67))

    asyncio.run(_run())


def test_cancel_of_terminal_order_is_not_an_error():
    async def _run():
        rest = FakeRest(errors={
            ('DELETE', '/v2/orders/done'): AlpacaAPIError(422, 42210000, 'order is not cancelable', ''),
            ('DELETE', '/v2/orders/down'): AlpacaAPIError(500, None, 'internal', ''),
        })
        transport = AlpacaTransport(rest)
        assert not await transport.cancel_order('done')
        assert await transport.cancel_order('live')
        with pytest.raises(AlpacaAPIError):
            await transport.cancel_order('down')

    asyncio.run(_run())


def test_order_status_and_account_parsing():
    async def _run():
        rest = FakeRest({
            ('GET', '/v2/orders/entry-1'): {
                'id': 'entry-1', 'symbol': 'QQQ', 'status': 'filled',
                'filled_at': '2024-03-04T14:47:03.123456789Z', 'canceled_at': None,
            },
            ('GET', '/v2/account'): {'buying_power': '40000.50', 'non_marginable_buying_power': '20000.25'},
        })
        transport = AlpacaTransport(rest)
        status = await transport.get_order('entry-1')
        assert status.is_filled
        assert not status.is_open
        account = await transport.get_account()
        assert account.available_cash == 20000.25

    asyncio.run(_run())


def test_list_orders_requests_nested_and_drops_empty_filters():
    async def _run():
        rest = FakeRest({('GET', '/v2/orders'): [BRACKET_ACK]})
        orders = await AlpacaTransport(rest).list_orders({'status': 'closed', 'after': None, 'symbols': 'QQQ'})
        assert orders == [BRACKET_ACK]
        params = rest.calls[0][2]['params']
        assert params['nested'] == 'true'
        assert params['status'] == 'closed'
        assert params['symbols'] == 'QQQ'
        assert 'after' not in params

    asyncio.run(_run())


def _bars_payload(*bars):
    return {'bars': [{'t': t, 'o': c, 'h': h, 'l': l, 'c': c, 'v': 1000} for t, h, l, c in bars]}


def test_last_completed_daily_bar_excludes_today():
    async def _run():
        rest = FakeRest({('GET', '/v2/stocks/QQQ/bars'): _bars_payload(
            ('2024-03-04T05:00:00Z', 110.0, 90.0, 100.0),
            ('2024-03-05T05:00:00Z', 111.0, 95.0, 105.0),
            ('2024-03-06T05:00:00Z', 120.0, 100.0, 110.0),
        )})
        source = AlpacaHistoricalBars(rest, timezone='America/New_York')
        bar = await source.get_last_bar('QQQ', 'daily', now=ny(2024, 3, 6, 8, 0))
        assert (bar.high, bar.low, bar.close) == (111.0, 95.0, 105.0)

        params = rest.calls[0][2]['params']
        assert params['timeframe'] == '1Day'
        assert params['start'] == '2024-02-25'

    asyncio.run(_run())


def test_last_completed_weekly_bar_uses_monday_boundary():
    async def _run():
        rest = FakeRest({('GET', '/v2/stocks/QQQ/bars'): _bars_payload(
            ('2024-02-26T05:00:00Z', 112.0, 88.0, 101.0),
            ('2024-03-04T05:00:00Z', 115.0, 99.0, 104.0),
        )})
        source = AlpacaHistoricalBars(rest, timezone='America/New_York')
        bar = await source.get_last_bar('QQQ', 'weekly', now=ny(2024, 3, 6, 8, 0))
        assert bar.close == 101.0
        assert rest.calls[0][2]['params']['timeframe'] == '1Week'

    asyncio.run(_run())


def test_no_completed_bar_returns_none():
    async def _run():
        rest = FakeRest({('GET', '/v2/stocks/QQQ/bars'): _bars_payload(
            ('2024-03-01T05:00:00Z', 112.0, 88.0, 101.0),
        )})
        source = AlpacaHistoricalBars(rest, timezone='America/New_York')
        assert await source.get_last_bar('QQQ', 'monthly', now=ny(2024, 3, 6, 8, 0)) is None
        await source.close()
        assert rest.closed

    asyncio.run(_run())


def test_period_start_boundaries():
    source = AlpacaHistoricalBars(FakeRest(), timezone='America/New_York')
    local = NY.localize(datetime(2024, 3, 6, 8, 0))
    assert source.period_start('daily', local).date().isoformat() == '2024-03-06'
    assert source.period_start('weekly', local).date().isoformat() == '2024-03-04'
    assert source.period_start('monthly', local).date().isoformat() == '2024-03-01'


def test_client_order_id_sent_and_looked_up():
    async def _run():
        rest = FakeRest({
            ('POST', '/v2/orders'): BRACKET_ACK,
            ('GET', '/v2/orders:by_client_order_id'): BRACKET_ACK,
        })
        transport = AlpacaTransport(rest)
        request = BracketRequest('QQQ', 10, 90.01, 99.99, 86.67, client_order_id='QQQ-20240304-0946-s1')
        await transport.place_bracket_order(request)
        assert rest.calls[0][2]['body']['client_order_id'] == 'QQQ-20240304-0946-s1'

        ids = await transport.get_bracket_by_client_id('QQQ-20240304-0946-s1')
        assert (ids.entry, ids.take_profit, ids.stop_loss) == ('entry-1', 'tp-1', 'stop-1')
        assert rest.calls[1][2]['params']['client_order_id'] == 'QQQ-20240304-0946-s1'

    asyncio.run(_run())


def test_unknown_client_order_id_returns_none():
    async def _run():
        rest = FakeRest(errors={
            ('GET', '/v2/orders:by_client_order_id'): AlpacaAPIError(404, 40410000, 'order not found', ''),
        })
        assert await AlpacaTransport(rest).get_bracket_by_client_id('QQQ-20240304-0946-s1') is None

        rest.errors[('GET', '/v2/orders:by_client_order_id')] = AlpacaAPIError(500, None, 'internal', '')
        with pytest.raises(AlpacaAPIError):
            await AlpacaTransport(rest).get_bracket_by_client_id('QQQ-20240304-0946-s1')

    asyncio.run(_run())


def test_payload_omits_client_order_id_when_unset():
    assert 'client_order_id' not in BracketRequest('QQQ', 10, 90.01, 99.99, 86.67).as_payload()
