"""Tests for domain/dashboard/service.py.

The storage client is an AsyncMock; the disk cache lives under tmp_path.
"""

import asyncio
import threading
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.clients.supabase import SupabaseError
from domain.dashboard.cache import RawBatchCache
from domain.dashboard.errors import ServiceNotInitializedError
from domain.dashboard.models import Filter, RawBatch, SortDirection, Viewer
from domain.dashboard.service import DashboardService, build_view


def _tables(raw_batch):
    return {
        "podio_data": list(raw_batch.projects),
        "ahj": list(raw_batch.ahjs),
        "utility": list(raw_batch.utilities),
        "financier": list(raw_batch.financiers),
    }


def _client(raw_batch, failing=()):
    tables = _tables(raw_batch)

    def fetch_table(table):
        if table in failing:
            raise SupabaseError(table, "Supabase error 503: unavailable", status_code=503)
        return tables[table]

    client = AsyncMock()
    client.fetch_table.side_effect = fetch_table
    return client


def _failing_client():
    client = AsyncMock()
    client.fetch_table.side_effect = SupabaseError("podio_data", "connection refused")
    return client


# ============================================================================
# build_view
# ============================================================================


class TestBuildView:
    """Test the pure view derivation."""

    def test_no_batch_is_empty(self):
        """Without data the view carries only state."""
        view = build_view(None, is_loading=True)
        assert view.projects == ()
        assert view.is_loading is True

    def test_full_pipeline(self, raw_batch):
        """Raw rows come out normalized, linked, counted and sorted."""
        view = build_view(raw_batch)
        assert [project.id for project in view.projects] == ["P1", "P2", "P3", "P4"]
        counts = {entity.id: entity.project_count for entity in view.ahjs}
        assert counts == {"A1": 1, "A2": 1, "A3": 1}
        assert [financier.id for financier in view.financiers] == ["F1"]

    def test_idempotent(self, raw_batch):
        """Identical inputs give identical views."""
        filters = (Filter(type="class", value="A", id="f1"),)
        assert build_view(raw_batch, filters, "ut") == build_view(raw_batch, filters, "ut")
        assert build_view(raw_batch).to_dict() == build_view(raw_batch).to_dict()

    def test_viewer_masking(self, raw_batch):
        """Non-admin viewers see other reps' open projects masked and sunk."""
        view = build_view(raw_batch, viewer=Viewer(rep_id="rep-2"))
        assert view.projects[-1].id == "P3"
        assert view.projects[-1].is_masked is True

    def test_search_cannot_reach_restricted_details(self, raw_batch):
        """Searching another rep's open project by street finds nothing."""
        restricted = {
            "project_id": "P9",
            "address": "77 Secret Lane",
            "city": "Provo",
            "state": "UT",
            "zip": "84601",
            "ahj_item_id": "A2",
            "utility_company_item_id": "U2",
            "status": "Design",
            "rep_id": "rep-1",
        }
        batch = replace(raw_batch, projects=raw_batch.projects + (restricted,))

        owner_view = build_view(batch, search_text="Secret", viewer=Viewer(rep_id="rep-1"))
        assert [project.id for project in owner_view.projects] == ["P9"]

        view = build_view(batch, search_text="Secret", viewer=Viewer(rep_id="rep-2"))
        assert view.projects == ()
        assert view.ahjs == ()
        assert view.utilities == ()

        by_city = build_view(batch, search_text="Provo", viewer=Viewer(rep_id="rep-2"))
        masked = [project for project in by_city.projects if project.id == "P9"]
        assert masked[0].address == "Project details restricted"

    def test_empty_result_state(self, raw_batch):
        """Filters matching nothing give the no-results state."""
        view = build_view(raw_batch, search_text="no such place")
        assert view.is_empty_result is True
        assert view.error is None


# ============================================================================
# DashboardService
# ============================================================================


class TestRefresh:
    """Test fetching and failure recovery."""

    @pytest.mark.asyncio
    async def test_refresh_success(self, settings, raw_batch):
        """A successful refresh fills the view and writes the cache."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        assert service.view().is_loading is True

        view = await service.refresh()
        assert len(view.projects) == 4
        assert view.error is None
        assert view.is_loading is False
        assert view.fetched_at is not None
        assert settings.cache_path.exists()

    @pytest.mark.asyncio
    async def test_failure_without_cache(self, settings, raw_batch):
        """With nothing to fall back on, the view is empty with an error."""
        service = DashboardService(client=_client(raw_batch, failing={"utility"}), settings=settings)
        view = await service.refresh()
        assert view.projects == ()
        assert "Error fetching utility" in view.error
        assert view.is_loading is False
        assert view.is_empty_result is False

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_batch(self, settings, raw_batch):
        """A failed refresh after a good one keeps the old data."""
        client = _client(raw_batch)
        service = DashboardService(client=client, settings=settings)
        await service.refresh()

        client.fetch_table.side_effect = SupabaseError("ahj", "timeout")
        view = await service.refresh()
        assert len(view.projects) == 4
        assert "previously loaded" in view.error

    @pytest.mark.asyncio
    async def test_failure_uses_disk_cache(self, settings, raw_batch):
        """A cold start falls back to the disk cache."""
        RawBatchCache(settings.cache_path).save(raw_batch, timestamp=1700000000.0)
        service = DashboardService(client=_failing_client(), settings=settings)

        view = await service.refresh()
        assert len(view.projects) == 4
        assert "cached data" in view.error
        assert view.fetched_at == 1700000000.0

    @pytest.mark.asyncio
    async def test_timeout(self, settings, raw_batch):
        """A slow fetch times out into a warning."""

        async def slow(table):
            await asyncio.sleep(1)
            return []

        client = AsyncMock()
        client.fetch_table.side_effect = slow
        fast_settings = settings.model_copy(update={"fetch_timeout_seconds": 0.05})
        service = DashboardService(client=client, settings=fast_settings)

        view = await service.refresh()
        assert "Timed out" in view.error
        assert view.projects == ()

    @pytest.mark.asyncio
    async def test_partial_failure_is_all_or_nothing(self, settings, raw_batch):
        """One failing table discards the whole batch."""
        service = DashboardService(client=_client(raw_batch, failing={"financier"}), settings=settings)
        view = await service.refresh()
        assert view.projects == ()
        assert view.financiers == ()

    @pytest.mark.asyncio
    async def test_cache_io_runs_off_the_event_loop(self, settings, raw_batch):
        """Cache writes and fallback reads happen in a worker thread."""
        loop_thread = threading.get_ident()
        threads = {}

        def save(batch, timestamp):
            threads["save"] = threading.get_ident()
            return True

        def load():
            threads["load"] = threading.get_ident()
            return None

        cache = MagicMock(spec=RawBatchCache)
        cache.save.side_effect = save
        cache.load.side_effect = load

        client = _client(raw_batch)
        service = DashboardService(client=client, settings=settings, cache=cache)
        await service.refresh()
        cache.save.assert_called_once()
        assert cache.save.call_args.args[0] == raw_batch

        cold = DashboardService(client=_failing_client(), settings=settings, cache=cache)
        view = await cold.refresh()
        cache.load.assert_called_once_with()
        assert view.projects == ()
        assert threads["save"] != loop_thread
        assert threads["load"] != loop_thread

    @pytest.mark.asyncio
    async def test_clear_cache(self, settings, raw_batch):
        """Clearing removes the disk copy but keeps the loaded data."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()
        assert await service.clear_cache() is True
        assert not settings.cache_path.exists()
        assert await service.clear_cache() is False
        assert len(service.view().projects) == 4


class TestMutations:
    """Test the mutation surface."""

    def test_mutations_before_refresh_raise(self, settings, raw_batch):
        """Mutating before the first refresh is a contract violation."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        with pytest.raises(ServiceNotInitializedError):
            service.add_filter(Filter(type="ahj", value="A"))
        with pytest.raises(ServiceNotInitializedError):
            service.set_search_text("provo")
        with pytest.raises(ServiceNotInitializedError):
            service.set_reference_point(40.0, -111.0)

    @pytest.mark.asyncio
    async def test_add_duplicate_filter(self, settings, raw_batch):
        """Adding an identical filter twice stores one."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()
        assert service.add_filter(Filter(type="ahj", value="A")) is not None
        assert service.add_filter(Filter(type="ahj", value="A")) is None
        assert len(service.view().filters) == 1

    @pytest.mark.asyncio
    async def test_filters_and_search_apply(self, settings, raw_batch):
        """Filters and search text narrow the view; clearing restores it."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()

        stored = service.add_filter(Filter(type="qualified45day", value="true"))
        assert [project.id for project in service.view().projects] == ["P1", "P3"]

        service.set_search_text("lehi")
        assert [project.id for project in service.view().projects] == ["P3"]

        assert service.remove_filter(stored.id) is True
        assert service.remove_filter(stored.id) is False
        service.clear_filters()
        assert service.view().search_text == ""
        assert len(service.view().projects) == 4

    @pytest.mark.asyncio
    async def test_sort_and_reference_point(self, settings, raw_batch):
        """Sort spec and reference point reorder the lists."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()

        service.set_sort_spec("address", "desc")
        assert service.view().sort.direction is SortDirection.DESC
        assert service.view().projects[0].id == "P4"

        service.set_reference_point(40.30, -111.70)
        view = service.view()
        assert view.ahjs[0].id == "A2"
        assert view.ahjs[-1].id == "A3"

        service.set_reference_point(None, None)
        assert service.reference_point is None

    @pytest.mark.asyncio
    async def test_invalid_reference_point(self, settings, raw_batch):
        """Out-of-range reference points are rejected."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()
        with pytest.raises(ValueError):
            service.set_reference_point(95.0, 0.0)

    @pytest.mark.asyncio
    async def test_view_is_memoized(self, settings, raw_batch):
        """Unchanged state returns the same snapshot object."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()
        first = service.view()
        assert service.view() is first
        service.set_search_text("provo")
        assert service.view() is not first

    @pytest.mark.asyncio
    async def test_filter_query_round_trip(self, settings, raw_batch):
        """Filters survive a trip through the query string."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()
        service.add_filter(Filter(type="ahj", value="Provo"))
        service.add_filter(Filter(type="class", value="A", entity_type="utility"))
        query = service.filter_query()

        service.clear_filters()
        restored = service.apply_filter_query(query)
        assert [(item.type, item.value, item.entity_type) for item in restored] == [
            ("ahj", "Provo", None),
            ("class", "A", "utility"),
        ]

    @pytest.mark.asyncio
    async def test_nearest_and_relationships(self, settings, raw_batch):
        """Nearest projects and adjacency maps read from the current view."""
        service = DashboardService(client=_client(raw_batch), settings=settings)
        await service.refresh()
        service.set_reference_point(40.23, -111.66)
        assert service.nearest_projects(1)[0].id == "P1"
        assert service.relationships()["utility"]["U1"] == frozenset({"A1", "A3"})

    @pytest.mark.asyncio
    async def test_empty_refresh(self, settings):
        """Empty collections are a valid, empty batch."""
        service = DashboardService(client=_client(RawBatch()), settings=settings)
        view = await service.refresh()
        assert view.error is None
        assert view.is_empty_result is True
