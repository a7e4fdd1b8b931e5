"""Great-circle distances and the display order of entity lists.

All distances are kilometres. Entities and projects without usable
coordinates, or with no reference point set, carry ``math.inf``.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

from .models import Entity, Project, ReferencePoint

EARTH_RADIUS_KM = 6371.0
KM_TO_MILES = 0.621371


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance in kilometres between two points."""

    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def km_to_miles(distance_km: float) -> float:
    return distance_km * KM_TO_MILES


def entity_distance(entity: Entity, reference: Optional[ReferencePoint]) -> float:
    if reference is None or not entity.has_valid_coordinates:
        return math.inf
    assert entity.latitude is not None and entity.longitude is not None
    return haversine(reference.latitude, reference.longitude, entity.latitude, entity.longitude)


def project_distance(project: Project, reference: Optional[ReferencePoint]) -> float:
    if reference is None or project.latitude is None or project.longitude is None:
        return math.inf
    return haversine(reference.latitude, reference.longitude, project.latitude, project.longitude)


def entity_sort_key(
    entity: Entity, reference: Optional[ReferencePoint]
) -> Tuple[int, float, int, str, str]:
    """Located entities first, then nearest, then busiest, then by name.

    Without a reference point the first two components are constant, so the
    order falls through to project count and name. The id closes the order.
    """

    if reference is not None and entity.has_valid_coordinates:
        located, distance = 0, entity.distance
    elif reference is not None:
        located, distance = 1, math.inf
    else:
        located, distance = 0, 0.0
    return (located, distance, -entity.project_count, entity.name.casefold(), entity.id)


def rank(entities: Iterable[Entity], reference: Optional[ReferencePoint]) -> List[Entity]:
    """Attach distances and return the entities in display order."""

    measured = [replace(entity, distance=entity_distance(entity, reference)) for entity in entities]
    measured.sort(key=lambda entity: entity_sort_key(entity, reference))
    return measured


def rank_projects(
    projects: Iterable[Project], reference: Optional[ReferencePoint]
) -> List[Project]:
    """Attach distances to projects and order them nearest first (stable for ties)."""

    measured = [replace(project, distance=project_distance(project, reference)) for project in projects]
    measured.sort(key=lambda project: (project.distance, project.id))
    return measured


def measure_projects(
    projects: Iterable[Project], reference: Optional[ReferencePoint]
) -> List[Project]:
    return [replace(project, distance=project_distance(project, reference)) for project in projects]


__all__ = [
    "EARTH_RADIUS_KM",
    "entity_distance",
    "entity_sort_key",
    "haversine",
    "km_to_miles",
    "measure_projects",
    "project_distance",
    "rank",
    "rank_projects",
]
