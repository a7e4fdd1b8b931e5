"""Dashboard API routes."""
import math
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from domain.dashboard.errors import ServiceNotInitializedError
from domain.dashboard.models import Filter, FilterSource, Project, SortDirection
from domain.dashboard.proximity import km_to_miles
from domain.dashboard.service import DashboardService

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@lru_cache()
def get_dashboard_service() -> DashboardService:
    return DashboardService()


class FilterRequest(BaseModel):
    type: str
    value: str = ""
    entity_id: Optional[str] = Field(default=None, alias="entityId")
    entity_type: Optional[str] = Field(default=None, alias="entityType")
    filter_source: FilterSource = Field(default=FilterSource.MANUAL, alias="filterSource")
    label: str = ""

    model_config = {"populate_by_name": True}

    def to_filter(self) -> Filter:
        return Filter(
            type=self.type,
            value=self.value,
            entity_id=self.entity_id or None,
            entity_type=self.entity_type or None,
            filter_source=self.filter_source,
            label=self.label,
        )


class SearchRequest(BaseModel):
    text: str = ""


class SortRequest(BaseModel):
    field: str = "address"
    direction: SortDirection = SortDirection.ASC


class LocationRequest(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class FilterQueryRequest(BaseModel):
    query: str = ""


def _not_ready(exc: ServiceNotInitializedError) -> HTTPException:
    return HTTPException(status_code=409, detail=str(exc))


@router.get("/health")
async def health(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, Any]:
    current = service.view()
    return {
        "status": "ok" if current.error is None else "degraded",
        "initialized": service.is_initialized,
        "error": current.error,
        "fetched_at": current.fetched_at,
    }


@router.get("")
@router.get("/")
async def get_view(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, Any]:
    return service.view().to_dict()


@router.post("/refresh")
async def refresh(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, Any]:
    current = await service.refresh()
    return current.to_dict()


@router.delete("/cache")
async def clear_cache(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, bool]:
    """Drop the on-disk fallback copy; the loaded data stays in memory."""
    return {"cleared": await service.clear_cache()}


@router.post("/filters", status_code=201)
async def add_filter(
    request: FilterRequest, service: DashboardService = Depends(get_dashboard_service)
) -> Dict[str, Any]:
    try:
        stored = service.add_filter(request.to_filter())
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    if stored is None:
        raise HTTPException(status_code=409, detail="An identical filter is already active")
    return stored.to_dict()


@router.delete("/filters/{filter_id}")
async def remove_filter(
    filter_id: str, service: DashboardService = Depends(get_dashboard_service)
) -> Dict[str, Any]:
    try:
        removed = service.remove_filter(filter_id)
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    if not removed:
        raise HTTPException(status_code=404, detail=f"Filter {filter_id} not found")
    return {"removed": filter_id}


@router.delete("/filters")
async def clear_filters(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, Any]:
    try:
        service.clear_filters()
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    return service.view().to_dict()


@router.get("/filters/query")
async def get_filter_query(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, str]:
    return {"query": service.filter_query()}


@router.post("/filters/query")
async def apply_filter_query(
    request: FilterQueryRequest, service: DashboardService = Depends(get_dashboard_service)
) -> Dict[str, List[Dict[str, Any]]]:
    try:
        filters = service.apply_filter_query(request.query)
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    return {"filters": [item.to_dict() for item in filters]}


@router.put("/search")
async def set_search(
    request: SearchRequest, service: DashboardService = Depends(get_dashboard_service)
) -> Dict[str, Any]:
    try:
        service.set_search_text(request.text)
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    return service.view().to_dict()


@router.put("/sort")
async def set_sort(
    request: SortRequest, service: DashboardService = Depends(get_dashboard_service)
) -> Dict[str, Any]:
    try:
        service.set_sort_spec(request.field, request.direction)
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    return service.view().to_dict()


@router.put("/location")
async def set_location(
    request: LocationRequest, service: DashboardService = Depends(get_dashboard_service)
) -> Dict[str, Any]:
    if (request.latitude is None) != (request.longitude is None):
        raise HTTPException(status_code=422, detail="latitude and longitude must be set together")
    try:
        service.set_reference_point(request.latitude, request.longitude)
    except ServiceNotInitializedError as exc:
        raise _not_ready(exc) from exc
    return service.view().to_dict()


@router.get("/projects/nearest")
async def nearest_projects(
    limit: int = Query(10, ge=1, le=500),
    service: DashboardService = Depends(get_dashboard_service),
) -> Dict[str, Any]:
    projects = service.nearest_projects(limit)
    return {"projects": [_with_miles(project) for project in projects]}


def _with_miles(project: Project) -> Dict[str, Any]:
    payload = project.to_dict()
    payload["distanceMiles"] = km_to_miles(project.distance) if math.isfinite(project.distance) else None
    return payload


@router.get("/relationships")
async def relationships(service: DashboardService = Depends(get_dashboard_service)) -> Dict[str, Any]:
    maps = service.relationships()
    return {
        kind: {entity_id: sorted(related) for entity_id, related in mapping.items()}
        for kind, mapping in maps.items()
    }
