from __future__ import annotations

from typing import Any

import httpx


class SyncClient:
    """Calls the API's maintenance endpoints with the scheduler's API key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 130.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def run_reconciliation(self) -> dict[str, Any]:
        return await self._request("POST", "/sync/reconcile")

    async def run_scheduled_check(self) -> dict[str, Any]:
        return await self._request("POST", "/sync/scheduled")

    async def _request(self, method: str, path: str) -> dict[str, Any]:
        if self._client is not None:
            response = await self._client.request(method, f"{self.base_url}{path}", headers=self.headers)
            response.raise_for_status()
            return response.json()
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.request(method, f"{self.base_url}{path}", headers=self.headers)
            response.raise_for_status()
            return response.json()
