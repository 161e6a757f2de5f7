import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from config import config


def resolve_credential(value: Optional[str]) -> Optional[str]:
    # Unresolved ${VAR} placeholders mean the variable is not set
    if not value or str(value).startswith("${"):
        return None
    return str(value)


class AlpacaAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Alpaca API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class AlpacaRESTClient:
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, timeout_s: Optional[float] = None):
        broker_cfg = config.section("broker")
        self.base_url = (base_url or broker_cfg.get("trading_url") or "https://paper-api.alpaca.markets").rstrip("/")
        self.api_key = resolve_credential(api_key or broker_cfg.get("api_key"))
        self.api_secret = resolve_credential(api_secret or broker_cfg.get("api_secret"))
        self.timeout_s = float(timeout_s or broker_cfg.get("request_timeout_s", 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self.api_key or not self.api_secret:
            raise RuntimeError("Alpaca API key/secret required")
        session = await self._get_session()
        headers = {
            "APCA-API-KEY-ID": self.api_key,
            "APCA-API-SECRET-KEY": self.api_secret,
        }
        url = f"{self.base_url}{path}"

        async with session.request(
            method.upper(),
            url,
            params=params or None,
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type and text:
                try:
                    payload = json.loads(text)
                except Exception:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("message")
                raise AlpacaAPIError(resp.status, code, msg, text)

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("POST", path, body=body)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("DELETE", path, params=params)
