import logging
import time
from typing import Any, Dict, List, Optional

from api.metrics import metrics
from config import config
from risk.position_sizer import BracketSizer
from strategy.errors import GatewayQueryFailed, OrderPlacementFailed
from strategy.execution_types import BracketOrderIds, OrderStatus
from strategy.simulators.paper import PaperBroker
from strategy.transports.alpaca import AlpacaAPIError, AlpacaTransport


logger = logging.getLogger(__name__)


def build_gateway(broker_cfg=None):
    """Return the paper simulator or the Alpaca transport depending on ``broker.simulate``."""
    broker_cfg = broker_cfg if broker_cfg is not None else config.section("broker")
    if broker_cfg.get("simulate", False):
        equity = float(broker_cfg.get("paper_equity", 100000.0))
        logger.info("Using in-process paper broker with %.2f equity", equity)
        return PaperBroker(initial_equity=equity)
    logger.info("Using Alpaca %s gateway", "paper" if broker_cfg.get("paper", True) else "live")
    return AlpacaTransport()


class BracketOrderManager:
    """Place, cancel and inspect bracket orders against a broker gateway."""

    def __init__(self, gateway=None, sizer: Optional[BracketSizer] = None):
        self.gateway = gateway if gateway is not None else build_gateway()
        self.sizer = sizer or BracketSizer()

    @property
    def paper_mode(self) -> bool:
        return isinstance(self.gateway, PaperBroker)

    async def place(self, symbol: str, level_price: float, target_price: float,
                    client_order_id: Optional[str] = None) -> BracketOrderIds:
        """Size and submit one bracket.

        ``client_order_id`` tags the entry so the bracket can be found again
        with ``find_bracket`` after a restart.

        ``InsufficientSizing`` propagates unchanged; every gateway failure is
        reported as ``OrderPlacementFailed``.
        """
        try:
            account = await self.gateway.get_account()
        except Exception as exc:
            self._log_transport_error(f"account query for {symbol}", exc)
            metrics.record_order_failed("account")
            raise OrderPlacementFailed(symbol, f"account query failed: {exc}") from exc

        request = self.sizer.build_request(
            symbol, level_price, target_price, account.available_cash, client_order_id=client_order_id,
        )

        started = time.perf_counter()
        try:
            ids = await self.gateway.place_bracket_order(request)
        except Exception as exc:
            self._log_transport_error(f"bracket order for {symbol}", exc)
            metrics.record_order_failed("rejected")
            raise OrderPlacementFailed(symbol, f"bracket submission failed: {exc}") from exc
        metrics.record_order_send_latency(time.perf_counter() - started)
        metrics.record_order_placed()
        logger.info(
            "Placed %s bracket qty=%s entry=%.2f tp=%.2f stop=%.2f (entry_id=%s)",
            symbol,
            request.quantity,
            request.limit_price,
            request.take_profit_limit,
            request.stop_price,
            ids.entry,
        )
        return ids

    async def find_bracket(self, client_order_id: str) -> Optional[BracketOrderIds]:
        """Look up a bracket by the client order id it was placed with. None when the broker has none."""
        try:
            return await self.gateway.get_bracket_by_client_id(client_order_id)
        except Exception as exc:
            self._log_transport_error(f"lookup of {client_order_id}", exc)
            metrics.record_gateway_query_failure()
            raise GatewayQueryFailed(None, f"bracket {client_order_id} lookup failed: {exc}") from exc

    async def cancel(self, ids: BracketOrderIds, reason: str = "manual") -> bool:
        """Cancel every leg. Already terminal legs count as cancelled.

        Returns False when the gateway failed on any leg, so the caller keeps
        tracking the bracket and retries later.
        """
        ok = True
        for order_id in (ids.entry, ids.take_profit, ids.stop_loss):
            try:
                await self.gateway.cancel_order(order_id)
            except Exception as exc:
                self._log_transport_error(f"cancel order {order_id}", exc)
                ok = False
        if ok:
            metrics.record_order_cancelled(reason)
        return ok

    async def legs_open(self, ids: BracketOrderIds) -> bool:
        take_profit = await self._get_order(ids.take_profit)
        stop_loss = await self._get_order(ids.stop_loss)
        return take_profit.is_open and stop_loss.is_open

    async def is_filled(self, order_id: str) -> bool:
        status = await self._get_order(order_id)
        return status.is_filled

    async def cancel_all_orders(self) -> int:
        cancelled = await self.gateway.cancel_all_orders()
        logger.info("Cancel-all completed: %s orders", cancelled)
        return cancelled

    async def close_all_positions(self) -> int:
        closed = await self.gateway.close_all_positions()
        logger.info("Close-all completed: %s positions", closed)
        return closed

    async def list_orders(self, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self.gateway.list_orders(params)

    async def close(self):
        await self.gateway.close()

    async def _get_order(self, order_id: str) -> OrderStatus:
        try:
            return await self.gateway.get_order(order_id)
        except Exception as exc:
            self._log_transport_error(f"status query for {order_id}", exc)
            metrics.record_gateway_query_failure()
            raise GatewayQueryFailed(None, f"order {order_id} status unavailable: {exc}") from exc

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, AlpacaAPIError):
            logger.error(
                "Alpaca %s failed (status=%s, code=%s, msg=%s)",
                action,
                error.status,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)
