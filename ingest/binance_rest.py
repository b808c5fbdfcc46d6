import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from config.utils import get_config_section


logger = logging.getLogger(__name__)

SPOT_BASE_URL = "https://api.binance.com"


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class BinanceRESTClient:
    """Minimal async client for the Binance spot REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ):
        exchange = dict(settings) if settings is not None else get_config_section(config, "exchange")
        self.base_url = (base_url or exchange.get("base_url") or SPOT_BASE_URL).rstrip("/")
        self.api_key: Optional[str] = api_key or exchange.get("api_key")
        self.api_secret: Optional[str] = api_secret or exchange.get("api_secret")
        self.recv_window = int(exchange.get("recv_window_ms", 5000))
        self.timeout = aiohttp.ClientTimeout(total=float(exchange.get("request_timeout_s", 15)))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _sign(self, params: Dict[str, Any]) -> str:
        query = urlencode(params, doseq=True)
        return hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {}

        if signed:
            if not self.has_credentials:
                raise RuntimeError("Binance API key/secret required for signed request")
            params.setdefault("timestamp", int(time.time() * 1000))
            params.setdefault("recvWindow", self.recv_window)
            params["signature"] = self._sign(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        async with session.request(method.upper(), url, params=params, headers=headers) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any = text
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                logger.debug("%s %s failed with status %s: %s", method.upper(), path, resp.status, text)
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # Binance accepts signed params in the query string
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
