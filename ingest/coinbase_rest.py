import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional

import aiohttp


class CoinbaseAPIError(Exception):
    def __init__(
        self,
        status: int,
        code: Optional[str],
        message: Optional[str],
        body: str,
        retry_after: Optional[float] = None,
    ):
        self.status = status
        self.code = code
        self.message = message
        self.body = body
        self.retry_after = retry_after
        text = f"Coinbase API error (status={status}, code={code}, message={message})"
        super().__init__(text)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_not_found(self) -> bool:
        text = f"{self.code or ''} {self.message or ''} {self.body or ''}".lower()
        return self.status == 404 or 'not_found' in text or 'not found' in text


def _credential(value: Any) -> Optional[str]:
    # Unresolved ${ENV} placeholders count as missing.
    if not value or (isinstance(value, str) and value.startswith('${')):
        return None
    return str(value)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


class CoinbaseRESTClient:
    def __init__(self, exchange_cfg: Optional[Dict[str, Any]] = None):
        exchange_cfg = exchange_cfg or {}
        # Advanced Trade v3 brokerage endpoints live under this host
        self.base_url = str(exchange_cfg.get("base_url") or "https://api.coinbase.com").rstrip("/")
        self.api_key: Optional[str] = _credential(exchange_cfg.get("api_key"))
        self.api_secret: Optional[str] = _credential(exchange_cfg.get("api_secret"))
        self.timeout_s = float(exchange_cfg.get("request_timeout_s", 15))
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

    def _sign(self, timestamp: str, method: str, path: str, body: str) -> str:
        message = f"{timestamp}{method.upper()}{path}{body}"
        return hmac.new(
            self.api_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Any:
        session = await self._get_session()
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        payload_text = json.dumps(body) if body is not None else ""

        if signed:
            if not self.api_key or not self.api_secret:
                raise RuntimeError("Coinbase API key/secret required for signed request")
            timestamp = str(int(time.time()))
            headers["CB-ACCESS-KEY"] = self.api_key
            headers["CB-ACCESS-TIMESTAMP"] = timestamp
            # Signature covers the path only; query strings are excluded
            headers["CB-ACCESS-SIGN"] = self._sign(timestamp, method, path, payload_text)

        url = f"{self.base_url}{path}"
        async with session.request(
            method.upper(),
            url,
            params={k: v for k, v in (params or {}).items() if v is not None} or None,
            data=payload_text or None,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            try:
                payload: Any = json.loads(text) if text else {}
            except ValueError:
                payload = text

            if resp.status >= 400:
                code = None
                message = None
                if isinstance(payload, dict):
                    code = payload.get("error") or payload.get("code")
                    message = payload.get("message") or payload.get("error_details")
                raise CoinbaseAPIError(
                    resp.status,
                    None if code is None else str(code),
                    message,
                    text,
                    retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                )

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = True) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, body: Optional[Dict[str, Any]] = None, signed: bool = True) -> Any:
        return await self._request("POST", path, body=body, signed=signed)
