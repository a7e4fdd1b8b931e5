"""Tests for core/clients/supabase.py using httpx.MockTransport."""

from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from core.clients.supabase import SupabaseClient, SupabaseConfigurationError, SupabaseError
from core.config import Settings


def _client(handler):
    return SupabaseClient(
        url="https://example.supabase.co",
        key="secret",
        transport=httpx.MockTransport(handler),
    )


class TestSupabaseClient:
    """Test full-collection reads."""

    @pytest.mark.asyncio
    async def test_fetch_table(self):
        """Rows come back as a list; the request carries the key headers."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["select"] = request.url.params.get("select")
            seen["apikey"] = request.headers.get("apikey")
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=[{"id": 1}])

        rows = await _client(handler).fetch_table("ahj")
        assert rows == [{"id": 1}]
        assert seen == {
            "path": "/rest/v1/ahj",
            "select": "*",
            "apikey": "secret",
            "auth": "Bearer secret",
        }

    @pytest.mark.asyncio
    async def test_error_status(self):
        """Non-200 responses raise with the status code."""
        client = _client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(SupabaseError) as excinfo:
            await client.fetch_table("utility")
        assert excinfo.value.status_code == 500
        assert "utility" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_list_body(self):
        """A JSON object instead of rows is an error."""
        client = _client(lambda request: httpx.Response(200, json={"message": "nope"}))
        with pytest.raises(SupabaseError):
            await client.fetch_table("financier")

    @pytest.mark.asyncio
    async def test_null_body_is_empty(self):
        """A null body is an empty collection."""
        client = _client(lambda request: httpx.Response(200, content=b"null"))
        assert await client.fetch_table("financier") == []

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Connection failures are wrapped."""

        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(SupabaseError):
            await _client(handler).fetch_table("podio_data")

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        """An unconfigured client refuses to fetch."""
        blank = SimpleNamespace(supabase_url=None, supabase_key=None)
        with patch("core.clients.supabase.get_settings", return_value=blank):
            client = SupabaseClient()
        assert client.is_configured is False
        with pytest.raises(SupabaseConfigurationError):
            await client.fetch_table("ahj")


class TestSettings:
    """Test environment-driven configuration."""

    def test_env_aliases(self, monkeypatch, tmp_path):
        """Supabase credentials read from their conventional names."""
        monkeypatch.setenv("SUPABASE_URL", "https://env.supabase.co")
        monkeypatch.setenv("SUPABASE_ANON_KEY", "env-key")
        settings = Settings(_env_file=None, cache_dir=tmp_path)
        assert settings.supabase_url == "https://env.supabase.co"
        assert settings.supabase_key == "env-key"
        assert settings.cache_path == tmp_path / "dashboard_raw_cache.json"

    def test_defaults(self, monkeypatch):
        """Table names and fallback point have defaults."""
        monkeypatch.delenv("PROJECTS_TABLE", raising=False)
        settings = Settings(_env_file=None)
        assert settings.projects_table == "podio_data"
        assert (settings.fallback_latitude, settings.fallback_longitude) == (40.7608, -111.8910)
        assert settings.fetch_timeout_seconds == 25.0
