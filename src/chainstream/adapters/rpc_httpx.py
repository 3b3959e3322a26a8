from __future__ import annotations
import itertools
from typing import Any, Sequence

import httpx

from ..domain.errors import RateLimited, RPCError
from ..ports.rpc import RPCTransport


def _retry_after(r: httpx.Response) -> float | None:
    ra = r.headers.get("Retry-After")
    return float(ra) if ra and ra.isdigit() else None


class HttpxRPC(RPCTransport):
    """JSON-RPC over HTTP for a single endpoint. Failover lives in the provider pool."""

    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 60,
        max_conn: int = 64,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = rpc_url
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn // 2)),
            transport=transport,
        )

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            r = await self.client.post(self.url, json=payload)
        except httpx.TransportError as e:
            raise RPCError(f"{method} transport error: {type(e).__name__}: {e}", endpoint=self.url) from e
        if r.status_code == 429:
            raise RateLimited(f"{method} rate limited (HTTP 429)", endpoint=self.url, retry_after=_retry_after(r))
        if r.is_error:
            raise RPCError(f"{method} HTTP {r.status_code}", code=r.status_code, endpoint=self.url)
        try:
            data = r.json()
        except ValueError as e:
            raise RPCError(f"{method} malformed response body", endpoint=self.url) from e
        if not isinstance(data, dict):
            raise RPCError(f"{method} malformed response: {type(data).__name__}", endpoint=self.url)
        if data.get("error") is not None:
            err = data["error"]
            if isinstance(err, dict):
                code, msg = err.get("code"), err.get("message")
            else:
                code, msg = None, str(err)
            raise RPCError(f"{method} RPC error code={code} message={msg}", code=code, endpoint=self.url)
        if "result" not in data:
            raise RPCError(f"{method} response has neither result nor error", endpoint=self.url)
        return data["result"]

    async def aclose(self) -> None:
        await self.client.aclose()
