"""Supabase client helpers."""
from typing import Any, Dict, List, Optional

import httpx

from core.config import get_settings


class SupabaseError(RuntimeError):
    """Raised when a Supabase table cannot be read."""

    def __init__(self, table: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"Error fetching {table}: {message}")
        self.table = table
        self.status_code = status_code


class SupabaseConfigurationError(SupabaseError):
    """Raised when credentials are missing."""


class SupabaseClient:
    """Lightweight async client for Supabase REST endpoints."""

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self._url = url or settings.supabase_url
        self._key = key or settings.supabase_key
        self._timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._url and self._key)

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": str(self._key),
            "Authorization": f"Bearer {self._key}",
        }

    async def fetch(self, endpoint: str) -> Any:
        table = endpoint.split("?", 1)[0]
        if not self.is_configured:
            raise SupabaseConfigurationError(table, "Supabase credentials not configured")

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(
                    f"{self._url}/rest/v1/{endpoint}", headers=self._headers()
                )
            except httpx.HTTPError as exc:
                raise SupabaseError(table, str(exc) or type(exc).__name__) from exc
            if response.status_code == 200:
                return response.json()
            raise SupabaseError(
                table,
                f"Supabase error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    async def fetch_table(self, table: str) -> List[Dict[str, Any]]:
        """Read every row of ``table``; the REST API hands back the full collection."""

        rows = await self.fetch(f"{table}?select=*")
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise SupabaseError(table, f"expected a list of rows, got {type(rows).__name__}")
        return rows
