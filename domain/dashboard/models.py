"""Canonical domain models for the field-sales dashboard."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

RawRecord = Mapping[str, Any]


class EntityKind(str, Enum):
    AHJ = "ahj"
    UTILITY = "utility"
    FINANCIER = "financier"

    @property
    def label(self) -> str:
        return ENTITY_LABELS[self]

    @property
    def opposite(self) -> "EntityKind":
        if self is EntityKind.AHJ:
            return EntityKind.UTILITY
        if self is EntityKind.UTILITY:
            return EntityKind.AHJ
        raise ValueError("financiers have no opposite entity kind")


ENTITY_LABELS = {
    EntityKind.AHJ: "AHJ",
    EntityKind.UTILITY: "Utility",
    EntityKind.FINANCIER: "Financier",
}


class Classification(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    UNKNOWN = "Unknown"


class CoordStatus(str, Enum):
    VALID = "valid"
    EMPTY = "empty"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class FilterType(str, Enum):
    SEARCH = "search"
    AHJ = "ahj"
    UTILITY = "utility"
    FINANCIER = "financier"
    CLASS = "class"
    MY_PROJECTS = "myprojects"
    QUALIFIED_45_DAY = "qualified45day"


class FilterSource(str, Enum):
    MANUAL = "manual"
    ENTITY_SELECTION = "entity-selection"
    SEARCH = "search"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class Coordinates:
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: Optional[CoordStatus] = None

    @property
    def is_valid(self) -> bool:
        return self.status is None and self.latitude is not None and self.longitude is not None

    @property
    def coord_status(self) -> CoordStatus:
        if self.is_valid:
            return CoordStatus.VALID
        return self.status or CoordStatus.UNKNOWN


@dataclass(frozen=True)
class Entity:
    """A normalized Authority Having Jurisdiction or Utility."""

    id: str
    name: str
    kind: EntityKind
    classification: Classification = Classification.UNKNOWN
    project_count: int = 0
    related_opposite_ids: FrozenSet[str] = frozenset()
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    coord_status: CoordStatus = CoordStatus.UNKNOWN
    distance: float = 0.0

    @property
    def has_valid_coordinates(self) -> bool:
        return (
            self.coord_status is CoordStatus.VALID
            and self.latitude is not None
            and self.longitude is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "classification": self.classification.value,
            "projectCount": self.project_count,
            "relatedOppositeIds": sorted(self.related_opposite_ids),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "coordStatus": self.coord_status.value,
            "distance": _json_distance(self.distance),
        }


@dataclass(frozen=True)
class Financier:
    """Financiers carry identity and grade only."""

    id: str
    name: str
    classification: Classification = Classification.UNKNOWN

    kind = EntityKind.FINANCIER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "classification": self.classification.value,
        }


@dataclass(frozen=True)
class Project:
    id: str
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_is_fallback: bool = False
    ahj: Optional[Entity] = None
    utility: Optional[Entity] = None
    financier: Optional[Financier] = None
    ahj_item_id: Optional[str] = None
    utility_company_item_id: Optional[str] = None
    fin_id: Optional[str] = None
    status: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    county: str = ""
    milestone: str = ""
    contract_signed_date: str = ""
    qualifies_45_day: Union[bool, str, None] = None
    is_masked: bool = False
    rep_id: Optional[str] = None
    distance: float = math.inf

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "locationIsFallback": self.location_is_fallback,
            "ahj": _entity_ref(self.ahj),
            "utility": _entity_ref(self.utility),
            "financier": _entity_ref(self.financier),
            "ahjItemId": self.ahj_item_id,
            "utilityCompanyItemId": self.utility_company_item_id,
            "finId": self.fin_id,
            "status": self.status,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "county": self.county,
            "milestone": self.milestone,
            "contractSignedDate": self.contract_signed_date,
            "qualifies45Day": self.qualifies_45_day,
            "isMasked": self.is_masked,
            "repId": self.rep_id,
            "distance": _json_distance(self.distance),
        }


@dataclass(frozen=True)
class Filter:
    """One active filter criterion.

    ``type`` is kept as a plain string so unknown kinds can travel through the
    filter set untouched; the engine ignores anything it does not recognise.
    """

    type: str
    value: str = ""
    id: str = ""
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    filter_source: FilterSource = FilterSource.MANUAL
    label: str = ""

    @property
    def kind(self) -> Optional[FilterType]:
        return parse_filter_type(self.type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "value": self.value,
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "filterSource": self.filter_source.value,
            "label": self.label,
        }


FILTER_TYPE_ALIASES = {"45day": FilterType.QUALIFIED_45_DAY}


def parse_filter_type(raw_type: Any) -> Optional[FilterType]:
    if isinstance(raw_type, FilterType):
        return raw_type
    normalized = str(raw_type or "").strip().lower()
    if normalized in FILTER_TYPE_ALIASES:
        return FILTER_TYPE_ALIASES[normalized]
    try:
        return FilterType(normalized)
    except ValueError:
        return None


@dataclass(frozen=True)
class SortSpec:
    field: str = "address"
    direction: SortDirection = SortDirection.ASC

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "direction": self.direction.value}


@dataclass(frozen=True)
class ReferencePoint:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0) or not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"reference point out of range: ({self.latitude}, {self.longitude})"
            )


@dataclass(frozen=True)
class Viewer:
    """The signed-in rep, as handed over by the auth collaborator."""

    rep_id: Optional[str] = None
    is_admin: bool = False


@dataclass(frozen=True)
class RawBatch:
    """The four raw collections, always fetched and replaced together."""

    projects: Tuple[Dict[str, Any], ...] = ()
    ahjs: Tuple[Dict[str, Any], ...] = ()
    utilities: Tuple[Dict[str, Any], ...] = ()
    financiers: Tuple[Dict[str, Any], ...] = ()

    @classmethod
    def from_lists(
        cls,
        projects: List[Dict[str, Any]],
        ahjs: List[Dict[str, Any]],
        utilities: List[Dict[str, Any]],
        financiers: List[Dict[str, Any]],
    ) -> "RawBatch":
        return cls(tuple(projects), tuple(ahjs), tuple(utilities), tuple(financiers))

    @property
    def is_empty(self) -> bool:
        return not (self.projects or self.ahjs or self.utilities or self.financiers)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "projects": list(self.projects),
            "ahjs": list(self.ahjs),
            "utilities": list(self.utilities),
            "financiers": list(self.financiers),
        }


@dataclass(frozen=True)
class DashboardView:
    """Read-only snapshot handed to the UI collaborator."""

    projects: Tuple[Project, ...] = ()
    ahjs: Tuple[Entity, ...] = ()
    utilities: Tuple[Entity, ...] = ()
    financiers: Tuple[Financier, ...] = ()
    is_loading: bool = False
    error: Optional[str] = None
    filters: Tuple[Filter, ...] = ()
    search_text: str = ""
    sort: SortSpec = field(default_factory=SortSpec)
    fetched_at: Optional[float] = None

    @property
    def is_empty_result(self) -> bool:
        """True when data is present but the active filters match nothing."""

        return not self.is_loading and self.error is None and not self.projects

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projects": [project.to_dict() for project in self.projects],
            "ahjs": [entity.to_dict() for entity in self.ahjs],
            "utilities": [entity.to_dict() for entity in self.utilities],
            "financiers": [financier.to_dict() for financier in self.financiers],
            "isLoading": self.is_loading,
            "error": self.error,
            "filters": [item.to_dict() for item in self.filters],
            "searchText": self.search_text,
            "sort": self.sort.to_dict(),
            "fetchedAt": self.fetched_at,
        }


def _json_distance(distance: float) -> Optional[float]:
    if math.isinf(distance) or math.isnan(distance):
        return None
    return distance


def _entity_ref(entity: Union[Entity, Financier, None]) -> Optional[Dict[str, str]]:
    if entity is None:
        return None
    return {
        "id": entity.id,
        "name": entity.name,
        "classification": entity.classification.value,
    }


__all__ = [
    "Classification",
    "CoordStatus",
    "Coordinates",
    "DashboardView",
    "Entity",
    "EntityKind",
    "Filter",
    "FilterSource",
    "FilterType",
    "Financier",
    "Project",
    "RawBatch",
    "RawRecord",
    "ReferencePoint",
    "SortDirection",
    "SortSpec",
    "Viewer",
    "parse_filter_type",
]
