import asyncio
import sys
from types import SimpleNamespace

sys.path.insert(0, '.')

from api import fastapi_server
from api.fastapi_server import flatten_order
from strategy.execution import BracketOrderManager
from strategy.simulators.paper import PaperBroker
from tests.fakes import at, make_bar

PARENT = {
    'id': 'entry-1', 'symbol': 'QQQ', 'qty': '10', 'filled_qty': '10', 'side': 'buy', 'type': 'limit',
    'limit_price': '90.01', 'stop_price': None, 'filled_avg_price': '90.01', 'status': 'filled',
    'submitted_at': '2024-03-04T14:46:01Z', 'filled_at': '2024-03-04T14:47:03Z',
    'canceled_at': None, 'replaced_at': None,
}


def test_order_without_legs_has_null_leg_fields():
    row = flatten_order(dict(PARENT, legs=None))
    assert row['id'] == 'entry-1'
    assert abs(row['amount'] - 900.1) < 1e-9
    for prefix in ('stop', 'limit'):
        assert row[f'{prefix}_status'] is None
        assert row[f'{prefix}_limit_price'] is None
        assert row[f'{prefix}_amount'] is None


def test_legs_mapped_by_type_not_position():
    stop_leg = dict(PARENT, id='stop-1', side='sell', type='stop', limit_price=None, stop_price='86.67',
                    status='canceled', filled_avg_price=None, filled_at=None)
    tp_leg = dict(PARENT, id='tp-1', side='sell', type='limit', limit_price='99.99',
                  status='filled', filled_avg_price='99.99')
    row = flatten_order(dict(PARENT, legs=[stop_leg, tp_leg]))
    assert row['limit_limit_price'] == '99.99'
    assert row['limit_status'] == 'filled'
    assert abs(row['limit_amount'] - 999.9) < 1e-9
    assert row['stop_stop_price'] == '86.67'
    assert row['stop_status'] == 'canceled'
    assert row['stop_amount'] is None


def test_paper_orders_flatten():
    async def _run():
        broker = PaperBroker()
        manager = BracketOrderManager(broker)
        await manager.place('QQQ', 90.0, 100.0)
        broker.on_bar(make_bar('QQQ', at(10, 0), 90.5, 90.6, 89.9, 90.2))
        rows = [flatten_order(order) for order in await manager.list_orders()]
        assert len(rows) == 1
        assert rows[0]['status'] == 'filled'
        assert rows[0]['limit_status'] == 'held'
        assert rows[0]['stop_type'] == 'stop'

    asyncio.run(_run())


def test_health_reports_unsaved_symbols(monkeypatch):
    system = SimpleNamespace(running=True, machine=SimpleNamespace(unsaved_symbols=['QQQ']))
    monkeypatch.setattr(fastapi_server, 'trading_system', system)
    body = asyncio.run(fastapi_server.health())
    assert body['system_running']
    assert body['unsaved_symbols'] == ['QQQ']

    monkeypatch.setattr(fastapi_server, 'trading_system', None)
    assert asyncio.run(fastapi_server.health())['unsaved_symbols'] == []
