from typing import Any, Dict, List, Optional

from ingest.alpaca_rest import AlpacaAPIError, AlpacaRESTClient

from strategy.execution_types import AccountSnapshot, BracketOrderIds, BracketRequest, OrderStatus


__all__ = ["AlpacaTransport", "AlpacaAPIError"]

# Alpaca answers 404 for unknown ids and 422 for orders that are no longer cancelable
_ALREADY_TERMINAL = (404, 422)


class AlpacaTransport:
    """Thin adapter around the Alpaca trading REST API with typed responses."""

    def __init__(self, rest: Optional[AlpacaRESTClient] = None) -> None:
        self._rest = rest

    def _client(self) -> AlpacaRESTClient:
        if self._rest is None:
            self._rest = AlpacaRESTClient()
        return self._rest

    async def get_account(self) -> AccountSnapshot:
        data = await self._client().get("/v2/account")
        if not isinstance(data, dict):
            raise AlpacaAPIError(200, None, "unexpected account payload", str(data))
        return AccountSnapshot(
            buying_power=self._as_float(data.get("buying_power")) or 0.0,
            non_marginable_buying_power=self._as_float(data.get("non_marginable_buying_power")),
        )

    async def place_bracket_order(self, request: BracketRequest) -> BracketOrderIds:
        data = await self._client().post("/v2/orders", body=request.as_payload())
        return self._parse_bracket_ack(data)

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel one order. Returns False when the order was already terminal."""
        try:
            await self._client().delete(f"/v2/orders/{order_id}")
            return True
        except AlpacaAPIError as exc:
            if exc.status in _ALREADY_TERMINAL:
                return False
            raise

    async def get_order(self, order_id: str) -> OrderStatus:
        data = await self._client().get(f"/v2/orders/{order_id}")
        if not isinstance(data, dict):
            raise AlpacaAPIError(200, None, "unexpected order payload", str(data))
        return OrderStatus.from_payload(data)

    async def get_bracket_by_client_id(self, client_order_id: str) -> Optional[BracketOrderIds]:
        """Bracket placed with ``client_order_id``, or None when Alpaca has no such order."""
        try:
            data = await self._client().get(
                "/v2/orders:by_client_order_id",
                params={"client_order_id": client_order_id, "nested": "true"},
            )
        except AlpacaAPIError as exc:
            if exc.status == 404:
                return None
            raise
        return self._parse_bracket_ack(data)

    async def list_orders(self, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        query = {"nested": "true", "status": "all", "limit": 500}
        query.update({k: v for k, v in (params or {}).items() if v is not None})
        data = await self._client().get("/v2/orders", params=query)
        return data if isinstance(data, list) else []

    async def cancel_all_orders(self) -> int:
        data = await self._client().delete("/v2/orders")
        return len(data) if isinstance(data, list) else 0

    async def close_all_positions(self) -> int:
        data = await self._client().delete("/v2/positions", params={"cancel_orders": "true"})
        return len(data) if isinstance(data, list) else 0

    async def close(self) -> None:
        if self._rest:
            try:
                await self._rest.close()
            finally:
                self._rest = None

    def _parse_bracket_ack(self, payload: Any) -> BracketOrderIds:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise AlpacaAPIError(200, None, "bracket acknowledgement without id", str(payload))
        take_profit_id = None
        stop_loss_id = None
        for leg in payload.get("legs") or []:
            leg_type = (leg.get("type") or "").lower()
            if leg_type == "limit" and take_profit_id is None:
                take_profit_id = leg.get("id")
            elif leg_type in ("stop", "stop_limit") and stop_loss_id is None:
                stop_loss_id = leg.get("id")
        if not take_profit_id or not stop_loss_id:
            raise AlpacaAPIError(200, None, "bracket acknowledgement missing legs", str(payload))
        return BracketOrderIds(
            entry=str(payload["id"]),
            take_profit=str(take_profit_id),
            stop_loss=str(stop_loss_id),
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
