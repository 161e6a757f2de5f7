import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging


trading_system = None

_ORDER_FIELDS = (
    'qty', 'filled_qty', 'side', 'type', 'limit_price', 'stop_price', 'filled_avg_price',
    'status', 'submitted_at', 'filled_at', 'canceled_at', 'replaced_at',
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start())
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Pivot Trader API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.section('api').get('cors_origins', [])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _amount(order: Optional[Dict[str, Any]]) -> Optional[float]:
    if not order:
        return None
    try:
        return float(order.get('qty')) * float(order.get('filled_avg_price'))
    except (TypeError, ValueError):
        return None


def _split_legs(order: Dict[str, Any]):
    """Return (take_profit_leg, stop_leg); either may be None."""
    legs = order.get('legs') or []
    take_profit = next((leg for leg in legs if (leg.get('type') or '').lower() == 'limit'), None)
    stop = next((leg for leg in legs if (leg.get('type') or '').lower() in ('stop', 'stop_limit')), None)
    if take_profit is None and len(legs) > 0:
        take_profit = legs[0]
    if stop is None and len(legs) > 1:
        stop = legs[1]
    return take_profit, stop


def flatten_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """One row per bracket: parent fields, then ``stop_*`` and ``limit_*`` leg fields.

    Leg fields are None when the parent carries no legs.
    """
    row: Dict[str, Any] = {'id': order.get('id'), 'symbol': order.get('symbol')}
    for name in _ORDER_FIELDS:
        row[name] = order.get(name)
    row['amount'] = _amount(order)

    take_profit, stop = _split_legs(order)
    for prefix, leg in (('stop', stop), ('limit', take_profit)):
        for name in _ORDER_FIELDS:
            row[f'{prefix}_{name}'] = leg.get(name) if leg else None
        row[f'{prefix}_amount'] = _amount(leg)
    return row


@app.get("/")
async def root():
    return {
        "service": "Pivot Point Trading System",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "system_running": trading_system.running if trading_system else False,
        "unsaved_symbols": trading_system.machine.unsaved_symbols if trading_system else [],
    }

@app.get("/api/tickers")
async def get_tickers():
    if not trading_system:
        return {"error": "Trading system not initialized"}

    states = await trading_system.store.all()
    tickers = [state.to_dict() for state in states]
    return {
        "tickers": tickers,
        "count": len(tickers),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

@app.get("/api/orders")
async def get_orders(after: Optional[str] = None, until: Optional[str] = None,
                     status: Optional[str] = None, symbols: Optional[str] = None):
    if not trading_system:
        return {"error": "Trading system not initialized"}

    params = {"after": after, "until": until, "status": status, "symbols": symbols}
    try:
        orders = await trading_system.order_manager.list_orders(params)
    except Exception as exc:
        raise HTTPException(status_code=502, detail=f"Order listing failed: {exc}") from exc

    rows: List[Dict[str, Any]] = [flatten_order(order) for order in orders]
    return {
        "orders": rows,
        "count": len(rows),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
