"""Stateful dashboard service: owns the raw batch and the user's view state."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Hashable, List, Optional, Sequence, Tuple, Union

from core.clients.supabase import SupabaseClient, SupabaseError
from core.config import Settings, get_settings

from .cache import RawBatchCache
from .errors import FetchError, ServiceNotInitializedError
from .filters import FilterSet, apply, from_query_string, sort_projects, to_query_string
from .linker import link, mask_projects
from .models import (
    DashboardView,
    EntityKind,
    Filter,
    Project,
    RawBatch,
    ReferencePoint,
    SortDirection,
    SortSpec,
    Viewer,
)
from .normalizer import index_by_id, normalize, normalize_financiers
from .proximity import measure_projects, rank, rank_projects
from .relationships import aggregate, relationship_maps

logger = logging.getLogger(__name__)


def build_view(
    batch: Optional[RawBatch],
    filters: Sequence[Filter] = (),
    search_text: str = "",
    sort_spec: Optional[SortSpec] = None,
    reference: Optional[ReferencePoint] = None,
    viewer: Optional[Viewer] = None,
    fallback: Tuple[float, float] = (40.7608, -111.8910),
    *,
    is_loading: bool = False,
    error: Optional[str] = None,
    fetched_at: Optional[float] = None,
) -> DashboardView:
    """Derive the full view from raw data and view state.

    Pure and deterministic: identical arguments give an identical view, so
    callers may memoize on them.
    """

    sort_spec = sort_spec or SortSpec()
    state = dict(
        is_loading=is_loading,
        error=error,
        filters=tuple(filters),
        search_text=search_text,
        sort=sort_spec,
        fetched_at=fetched_at,
    )
    if batch is None:
        return DashboardView(**state)

    ahjs = normalize(batch.ahjs, EntityKind.AHJ)
    utilities = normalize(batch.utilities, EntityKind.UTILITY)
    financiers = normalize_financiers(batch.financiers)
    projects = link(
        batch.projects,
        index_by_id(ahjs),
        index_by_id(utilities),
        index_by_id(financiers),
        fallback,
    )

    # Restricted rows are masked before any filter or search sees them.
    projects = mask_projects(projects, viewer)
    result = apply(projects, ahjs, utilities, filters, search_text, viewer=viewer)

    visible_projects = measure_projects(result.projects, reference)
    visible_projects = sort_projects(visible_projects, sort_spec)

    return DashboardView(
        projects=tuple(visible_projects),
        ahjs=tuple(rank(aggregate(result.projects, result.ahjs), reference)),
        utilities=tuple(rank(aggregate(result.projects, result.utilities), reference)),
        financiers=tuple(financiers),
        **state,
    )


def _describe_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


class DashboardService:
    """Single owner of raw data, filters, search text, sort and reference point.

    Reads return immutable :class:`DashboardView` snapshots. Mutations are
    only valid once :meth:`refresh` has run at least once.
    """

    def __init__(
        self,
        client: Optional[SupabaseClient] = None,
        settings: Optional[Settings] = None,
        cache: Optional[RawBatchCache] = None,
        viewer: Optional[Viewer] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or SupabaseClient()
        self._cache = cache if cache is not None else RawBatchCache(self._settings.cache_path)
        self._viewer = viewer
        self._lock = asyncio.Lock()

        self._batch: Optional[RawBatch] = None
        self._revision = 0
        self._fetched_at: Optional[float] = None
        self._error: Optional[str] = None
        self._is_loading = False
        self._initialized = False

        self._filters = FilterSet()
        self._search_text = ""
        self._sort = SortSpec()
        self._reference: Optional[ReferencePoint] = None
        if (
            self._settings.default_reference_latitude is not None
            and self._settings.default_reference_longitude is not None
        ):
            self._reference = ReferencePoint(
                self._settings.default_reference_latitude,
                self._settings.default_reference_longitude,
            )

        self._memo: Optional[Tuple[Hashable, DashboardView]] = None

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def viewer(self) -> Optional[Viewer]:
        return self._viewer

    @property
    def reference_point(self) -> Optional[ReferencePoint]:
        return self._reference

    @property
    def fallback(self) -> Tuple[float, float]:
        return self._settings.fallback_latitude, self._settings.fallback_longitude

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def refresh(self) -> DashboardView:
        """Fetch all four collections together and rebuild the view.

        Fetch failures never raise: the previous batch (or the disk cache)
        stays visible and the view carries the error message instead.
        """

        async with self._lock:
            self._is_loading = True
            try:
                batch = await self._fetch_batch()
            except FetchError as exc:
                await self._recover(str(exc))
            else:
                self._accept(batch, time.time())
                await asyncio.to_thread(self._cache.save, batch, self._fetched_at)
            finally:
                self._is_loading = False
                self._initialized = True
        return self.view()

    async def _fetch_batch(self) -> RawBatch:
        tables = (
            self._settings.projects_table,
            self._settings.ahj_table,
            self._settings.utility_table,
            self._settings.financier_table,
        )
        timeout = self._settings.fetch_timeout_seconds
        start = time.time()
        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    *(self._client.fetch_table(table) for table in tables),
                    return_exceptions=True,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise FetchError(f"Timed out after {timeout:g}s loading dashboard data") from exc

        for table, outcome in zip(tables, results):
            if isinstance(outcome, SupabaseError):
                raise FetchError(str(outcome)) from outcome
            if isinstance(outcome, BaseException):
                raise FetchError(f"Error fetching {table}: {outcome}") from outcome

        projects, ahjs, utilities, financiers = results
        logger.info(
            "Fetched dashboard data in %.2fs (projects=%d, ahj=%d, utility=%d, financier=%d)",
            time.time() - start,
            len(projects),
            len(ahjs),
            len(utilities),
            len(financiers),
        )
        return RawBatch.from_lists(projects, ahjs, utilities, financiers)

    def _accept(self, batch: RawBatch, fetched_at: float) -> None:
        self._batch = batch
        self._fetched_at = fetched_at
        self._error = None
        self._revision += 1

    async def _recover(self, message: str) -> None:
        if self._batch is not None:
            logger.warning("%s; keeping previously loaded data", message)
            self._error = f"{message}. Showing previously loaded data."
            return

        cached = await asyncio.to_thread(self._cache.load)
        if cached is None:
            logger.warning("%s; no cached data available", message)
            self._error = message
            return

        batch, timestamp = cached
        logger.warning("%s; falling back to cached data from %s", message, _describe_timestamp(timestamp))
        self._accept(batch, timestamp)
        self._error = f"{message}. Showing cached data from {_describe_timestamp(timestamp)}."

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise ServiceNotInitializedError(operation)

    def add_filter(self, item: Filter) -> Optional[Filter]:
        """Add ``item``; returns the stored filter, or ``None`` for a duplicate."""

        self._require_initialized("add_filter")
        return self._filters.add(item)

    def remove_filter(self, filter_id: str) -> bool:
        self._require_initialized("remove_filter")
        return self._filters.remove(filter_id)

    def clear_filters(self) -> None:
        self._require_initialized("clear_filters")
        self._filters.clear()
        self._search_text = ""

    def replace_filters(self, filters: Sequence[Filter]) -> Tuple[Filter, ...]:
        self._require_initialized("replace_filters")
        self._filters.replace_all(filters)
        return self._filters.snapshot()

    def set_search_text(self, text: str) -> None:
        self._require_initialized("set_search_text")
        self._search_text = text or ""

    def set_sort_spec(self, field: str, direction: Union[SortDirection, str] = SortDirection.ASC) -> SortSpec:
        self._require_initialized("set_sort_spec")
        self._sort = SortSpec(field=field, direction=SortDirection(direction))
        return self._sort

    def set_reference_point(self, latitude: Optional[float], longitude: Optional[float]) -> Optional[ReferencePoint]:
        """Set or clear (both ``None``) the point distances are measured from."""

        self._require_initialized("set_reference_point")
        if latitude is None or longitude is None:
            self._reference = None
        else:
            self._reference = ReferencePoint(latitude, longitude)
        return self._reference

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _view_key(self) -> Hashable:
        return (
            self._revision,
            self._filters.snapshot(),
            self._search_text,
            self._sort,
            self._reference,
            self._viewer,
            self._error,
            self._is_loading,
            self._fetched_at,
        )

    def view(self) -> DashboardView:
        key = self._view_key()
        if self._memo is not None and self._memo[0] == key:
            return self._memo[1]
        snapshot = build_view(
            self._batch,
            self._filters.snapshot(),
            self._search_text,
            self._sort,
            self._reference,
            self._viewer,
            self.fallback,
            is_loading=self._is_loading or (self._batch is None and self._error is None),
            error=self._error,
            fetched_at=self._fetched_at,
        )
        self._memo = (key, snapshot)
        return snapshot

    async def clear_cache(self) -> bool:
        """Remove the disk fallback copy; returns whether one existed."""

        return await asyncio.to_thread(self._cache.clear)

    def filter_query(self) -> str:
        return to_query_string(self._filters)

    def apply_filter_query(self, query: str) -> Tuple[Filter, ...]:
        return self.replace_filters(from_query_string(query))

    def nearest_projects(self, limit: int = 10) -> List[Project]:
        return rank_projects(self.view().projects, self._reference)[:limit]

    def relationships(self) -> Dict[str, Dict[str, FrozenSet[str]]]:
        return relationship_maps(self.view().projects)


__all__ = ["DashboardService", "build_view"]
