"""Active filter set, the staged filter engine and URL encoding of filters.

The engine runs in a fixed order:

1. narrow projects, every recognised filter ANDed with the others;
2. without authority/utility filters, limit entity lists to entities the
   remaining projects reference (only when anything is active at all);
3. with authority/utility filters, select entities directly from the full
   pools and cross-filter the opposite list for a single selected entity;
4. widen entity lists for search text by co-occurrence and own name;
5. narrow entity lists for classification filters.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Set, Tuple
from urllib.parse import parse_qsl, urlencode

from .extraction import normalize_classification
from .models import (
    Entity,
    EntityKind,
    Filter,
    FilterSource,
    FilterType,
    Project,
    SortDirection,
    SortSpec,
    Viewer,
)
from .relationships import co_occurring_ids, project_entity, project_entity_ids

logger = logging.getLogger(__name__)

RELATION_FILTER_KINDS = {
    FilterType.AHJ: EntityKind.AHJ,
    FilterType.UTILITY: EntityKind.UTILITY,
    FilterType.FINANCIER: EntityKind.FINANCIER,
}
GRADE_LETTERS = ("A", "B", "C")
QUALIFIED_VALUES = ("true", "yes")


# ============================================================================
# Filter set
# ============================================================================


def default_label(item: Filter) -> str:
    kind = item.kind
    if kind is FilterType.SEARCH:
        return f'Search: "{item.value}"'
    if kind in RELATION_FILTER_KINDS:
        return f"{RELATION_FILTER_KINDS[kind].label}: {item.value or item.entity_id}"
    if kind is FilterType.CLASS:
        scope = _entity_type(item)
        prefix = f"{scope.label} " if scope is not None else ""
        return f"{prefix}Class {item.value}"
    if kind is FilterType.QUALIFIED_45_DAY:
        return "45-Day Qualified"
    if kind is FilterType.MY_PROJECTS:
        return "My Projects"
    return f"{item.type}: {item.value}"


class FilterSet:
    """Ordered collection of active filters.

    Filters are unique on ``(type, value)``, or on ``(type, entity_id)`` for
    filters that select a specific entity.
    """

    def __init__(self, filters: Iterable[Filter] = ()) -> None:
        self._filters: List[Filter] = []
        for item in filters:
            self.add(item)

    def __iter__(self) -> Iterator[Filter]:
        return iter(self._filters)

    def __len__(self) -> int:
        return len(self._filters)

    def __contains__(self, filter_id: object) -> bool:
        return any(item.id == filter_id for item in self._filters)

    def snapshot(self) -> Tuple[Filter, ...]:
        return tuple(self._filters)

    def add(self, item: Filter) -> Optional[Filter]:
        """Store ``item`` and return it with an id; ``None`` when an equal filter exists."""

        key = _identity(item)
        if any(_identity(existing) == key for existing in self._filters):
            logger.debug("Ignoring duplicate filter %s=%r", item.type, item.value)
            return None
        stored = replace(
            item,
            id=item.id or uuid.uuid4().hex,
            label=item.label or default_label(item),
        )
        self._filters.append(stored)
        return stored

    def remove(self, filter_id: str) -> bool:
        remaining = [item for item in self._filters if item.id != filter_id]
        removed = len(remaining) != len(self._filters)
        self._filters = remaining
        return removed

    def clear(self) -> None:
        self._filters = []

    def replace_all(self, filters: Iterable[Filter]) -> None:
        self.clear()
        for item in filters:
            self.add(item)


def _identity(item: Filter) -> Tuple[str, str]:
    kind = item.kind
    type_key = kind.value if kind is not None else item.type.strip().lower()
    if item.entity_id:
        return type_key, f"entity:{item.entity_id}"
    return type_key, item.value.strip().casefold()


# ============================================================================
# Predicates
# ============================================================================


def is_qualified(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in QUALIFIED_VALUES
    return False


def _entity_type(item: Filter) -> Optional[EntityKind]:
    raw = (item.entity_type or "").strip().lower()
    if raw in (EntityKind.AHJ.value, EntityKind.UTILITY.value):
        return EntityKind(raw)
    return None


def _is_active(item: Filter, viewer: Optional[Viewer]) -> bool:
    kind = item.kind
    if kind is None:
        return False
    if kind is FilterType.QUALIFIED_45_DAY:
        return True
    if kind is FilterType.MY_PROJECTS:
        return bool(_rep_id(item, viewer))
    if kind in RELATION_FILTER_KINDS:
        return bool(item.entity_id or item.value.strip())
    return bool(item.value.strip())


def _rep_id(item: Filter, viewer: Optional[Viewer]) -> str:
    if viewer is not None and viewer.rep_id:
        return viewer.rep_id
    return item.value.strip()


def _grade_letter(value: str) -> Optional[str]:
    letter = value.strip().upper()
    return letter if letter in GRADE_LETTERS else None


def entity_matches(entity: Entity, item: Filter) -> bool:
    """Does ``entity`` itself satisfy an authority/utility filter.

    An explicit ``entity_id`` wins; otherwise a bare grade letter compares
    classifications, and anything else is an id or case-insensitive name match.
    """

    if item.entity_id:
        return entity.id == item.entity_id
    value = item.value.strip()
    letter = _grade_letter(value)
    if letter is not None:
        return entity.classification.value == letter
    return entity.id == value or value.casefold() in entity.name.casefold()


def _relation_matches(project: Project, kind: EntityKind, item: Filter) -> bool:
    linked = project.financier if kind is EntityKind.FINANCIER else project_entity(project, kind)
    if item.entity_id:
        return item.entity_id in _reference_ids(project, kind)
    value = item.value.strip()
    letter = _grade_letter(value)
    if letter is not None:
        return linked is not None and linked.classification.value == letter
    if value in _reference_ids(project, kind):
        return True
    return linked is not None and value.casefold() in linked.name.casefold()


def _reference_ids(project: Project, kind: EntityKind) -> Set[str]:
    if kind is EntityKind.FINANCIER:
        ids = {project.fin_id} if project.fin_id else set()
        if project.financier is not None:
            ids.add(project.financier.id)
        return ids
    return project_entity_ids(project, kind)


def _search_matches(project: Project, needle: str) -> bool:
    needle = needle.casefold()
    haystack = (
        project.address,
        project.city,
        project.state,
        project.zip,
        project.ahj.name if project.ahj is not None else "",
        project.utility.name if project.utility is not None else "",
    )
    return any(needle in field.casefold() for field in haystack if field)


def _class_matches(project: Project, item: Filter) -> bool:
    grade = normalize_classification(item.value)
    scope = _entity_type(item)
    kinds = (scope,) if scope is not None else (EntityKind.AHJ, EntityKind.UTILITY)
    for kind in kinds:
        linked = project_entity(project, kind)
        if linked is not None and linked.classification is grade:
            return True
    return False


def project_predicate(item: Filter, viewer: Optional[Viewer] = None) -> Optional[Callable[[Project], bool]]:
    """Return the project test for ``item``, or ``None`` when the filter is ignored."""

    if not _is_active(item, viewer):
        return None
    kind = item.kind
    if kind is FilterType.SEARCH:
        return lambda project: _search_matches(project, item.value.strip())
    if kind in RELATION_FILTER_KINDS:
        relation = RELATION_FILTER_KINDS[kind]
        return lambda project: _relation_matches(project, relation, item)
    if kind is FilterType.CLASS:
        return lambda project: _class_matches(project, item)
    if kind is FilterType.MY_PROJECTS:
        rep_id = _rep_id(item, viewer)
        return lambda project: project.rep_id == rep_id
    if kind is FilterType.QUALIFIED_45_DAY:
        return lambda project: is_qualified(project.qualifies_45_day)
    return None


# ============================================================================
# Engine
# ============================================================================


@dataclass(frozen=True)
class FilterResult:
    projects: Tuple[Project, ...]
    ahjs: Tuple[Entity, ...]
    utilities: Tuple[Entity, ...]


def filter_projects(
    projects: Iterable[Project],
    filters: Iterable[Filter],
    search_text: str = "",
    viewer: Optional[Viewer] = None,
) -> List[Project]:
    remaining = list(projects)
    predicates = [predicate for predicate in (project_predicate(item, viewer) for item in filters) if predicate]
    needle = search_text.strip()
    if needle:
        predicates.append(lambda project: _search_matches(project, needle))
    for predicate in predicates:
        remaining = [project for project in remaining if predicate(project)]
    return remaining


def _referenced(entities: Iterable[Entity], ids: FrozenSet[str]) -> List[Entity]:
    return [entity for entity in entities if entity.id in ids]


def _co_occurring_with(
    projects: Sequence[Project], selected_id: str, kind: EntityKind
) -> FrozenSet[str]:
    sharing = [project for project in projects if selected_id in project_entity_ids(project, kind)]
    return co_occurring_ids(sharing, kind.opposite)


def apply(
    projects: Sequence[Project],
    ahjs: Sequence[Entity],
    utilities: Sequence[Entity],
    filters: Sequence[Filter],
    search_text: str = "",
    sort_spec: Optional[SortSpec] = None,
    viewer: Optional[Viewer] = None,
) -> FilterResult:
    """Run the filter stages and return the visible projects and entity lists."""

    active = [item for item in filters if _is_active(item, viewer)]
    ignored = len(filters) - len(active)
    if ignored:
        logger.debug("Ignoring %d unrecognised or empty filters", ignored)

    narrowed = filter_projects(projects, active, search_text, viewer)
    pools = {EntityKind.AHJ: list(ahjs), EntityKind.UTILITY: list(utilities)}
    by_kind: Dict[EntityKind, List[Filter]] = {
        EntityKind.AHJ: [item for item in active if item.kind is FilterType.AHJ],
        EntityKind.UTILITY: [item for item in active if item.kind is FilterType.UTILITY],
    }
    needles = [item.value.strip() for item in active if item.kind is FilterType.SEARCH]
    if search_text.strip():
        needles.append(search_text.strip())

    if by_kind[EntityKind.AHJ] or by_kind[EntityKind.UTILITY]:
        visible = _select_entities(narrowed, pools, by_kind)
    else:
        visible = dict(pools)
        if active or needles:
            visible = {
                kind: _referenced(pool, co_occurring_ids(narrowed, kind)) for kind, pool in pools.items()
            }
        if needles:
            visible = _propagate_search(narrowed, pools, needles)
        class_filters = [item for item in active if item.kind is FilterType.CLASS]
        for item in class_filters:
            visible = _propagate_class(narrowed, visible, item)

    if sort_spec is not None:
        narrowed = sort_projects(narrowed, sort_spec)

    return FilterResult(
        projects=tuple(narrowed),
        ahjs=tuple(visible[EntityKind.AHJ]),
        utilities=tuple(visible[EntityKind.UTILITY]),
    )


def _select_entities(
    narrowed: Sequence[Project],
    pools: Dict[EntityKind, List[Entity]],
    by_kind: Dict[EntityKind, List[Filter]],
) -> Dict[EntityKind, List[Entity]]:
    visible: Dict[EntityKind, List[Entity]] = {}
    for kind, pool in pools.items():
        kind_filters = by_kind[kind]
        if kind_filters:
            visible[kind] = [entity for entity in pool if any(entity_matches(entity, item) for item in kind_filters)]
        else:
            visible[kind] = list(pool)

    for kind, kind_filters in by_kind.items():
        selections = [
            item
            for item in kind_filters
            if item.filter_source is FilterSource.ENTITY_SELECTION and item.entity_id
        ]
        if len(selections) != 1:
            continue
        opposite = kind.opposite
        allowed = _co_occurring_with(narrowed, selections[0].entity_id or "", kind)
        visible[opposite] = _referenced(visible[opposite], allowed)
    return visible


def _propagate_search(
    narrowed: Sequence[Project],
    pools: Dict[EntityKind, List[Entity]],
    needles: Sequence[str],
) -> Dict[EntityKind, List[Entity]]:
    lowered = [needle.casefold() for needle in needles]
    visible: Dict[EntityKind, List[Entity]] = {}
    for kind, pool in pools.items():
        linked = co_occurring_ids(narrowed, kind)
        visible[kind] = [
            entity
            for entity in pool
            if entity.id in linked or all(needle in entity.name.casefold() for needle in lowered)
        ]
    return visible


def _propagate_class(
    narrowed: Sequence[Project],
    visible: Dict[EntityKind, List[Entity]],
    item: Filter,
) -> Dict[EntityKind, List[Entity]]:
    grade = normalize_classification(item.value)
    scope = _entity_type(item)
    matched = [project for project in narrowed if _class_matches(project, item)]
    result: Dict[EntityKind, List[Entity]] = {}
    for kind, entities in visible.items():
        linked = co_occurring_ids(matched, kind)
        own_grade_counts = scope is None or scope is kind
        result[kind] = [
            entity
            for entity in entities
            if entity.id in linked or (own_grade_counts and entity.classification is grade)
        ]
    return result


# ============================================================================
# Project sort
# ============================================================================

RELATION_SORT_FIELDS = ("ahj", "utility", "financier")
SORT_FIELD_ALIASES = {
    "ahjItemId": "ahj_item_id",
    "utilityCompanyItemId": "utility_company_item_id",
    "finId": "fin_id",
    "contractSignedDate": "contract_signed_date",
    "qualifies45Day": "qualifies_45_day",
    "repId": "rep_id",
    "locationIsFallback": "location_is_fallback",
}
PROJECT_FIELDS = frozenset(field.name for field in fields(Project))


def _sort_value(project: Project, field_name: str) -> Any:
    if field_name in RELATION_SORT_FIELDS:
        linked = getattr(project, field_name)
        return linked.name if linked is not None else None
    attribute = SORT_FIELD_ALIASES.get(field_name, field_name)
    if attribute not in PROJECT_FIELDS:
        return None
    value = getattr(project, attribute)
    if isinstance(value, float) and math.isinf(value):
        return None
    return value


def _comparable(value: Any) -> Tuple[int, Any]:
    if value is None:
        return 1, ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return 0, float(value)
    return 1, str(value).casefold()


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def sort_projects(projects: Iterable[Project], sort_spec: SortSpec) -> List[Project]:
    """Order projects by ``sort_spec``; masked rows and missing values always sink."""

    ordered = sorted(projects, key=lambda project: project.id)
    field_name = sort_spec.field
    descending = sort_spec.direction is SortDirection.DESC
    ordered.sort(
        key=lambda project: _comparable(_sort_value(project, field_name)),
        reverse=descending,
    )
    ordered.sort(key=lambda project: _is_missing(_sort_value(project, field_name)))
    ordered.sort(key=lambda project: project.is_masked)
    return ordered


# ============================================================================
# URL parameters
# ============================================================================

SEARCH_PARAM = "search"
CLASS_PARAM = "class"
QUALIFIED_PARAM = "qualified45Day"
MY_PROJECTS_PARAM = "myProjects"
# Stands for "the current viewer" when a my-projects filter names no rep.
MY_PROJECTS_SELF = "me"
LEGACY_CLASS_PARAM = "classification"
LEGACY_ENTITY_TYPE_PARAM = "entityType"
ENTITY_PARAM_SUFFIX = "Entity"


def filters_to_params(filters: Iterable[Filter]) -> List[Tuple[str, str]]:
    """Encode filters as ordered query pairs; unrecognised types are skipped."""

    params: List[Tuple[str, str]] = []
    for item in filters:
        kind = item.kind
        if kind is FilterType.SEARCH:
            params.append((SEARCH_PARAM, item.value))
        elif kind in RELATION_FILTER_KINDS:
            if item.entity_id:
                params.append((f"{kind.value}{ENTITY_PARAM_SUFFIX}", f"{item.entity_id}:{item.value}"))
            else:
                params.append((kind.value, item.value))
        elif kind is FilterType.CLASS:
            params.append((CLASS_PARAM, f"{item.entity_type or ''}:{item.value}"))
        elif kind is FilterType.QUALIFIED_45_DAY:
            params.append((QUALIFIED_PARAM, "true"))
        elif kind is FilterType.MY_PROJECTS:
            params.append((MY_PROJECTS_PARAM, item.value.strip() or MY_PROJECTS_SELF))
    return params


def filters_from_params(pairs: Iterable[Tuple[str, str]]) -> List[Filter]:
    """Decode query pairs into filters without ids, in parameter order."""

    decoded: List[Filter] = []
    legacy_class: Optional[str] = None
    legacy_scope: Optional[str] = None
    entity_keys = {
        f"{kind.value}{ENTITY_PARAM_SUFFIX}": kind for kind in RELATION_FILTER_KINDS
    }

    for key, value in pairs:
        if key == SEARCH_PARAM and value.strip():
            decoded.append(Filter(type=FilterType.SEARCH.value, value=value, filter_source=FilterSource.SEARCH))
        elif key in (FilterType.AHJ.value, FilterType.UTILITY.value, FilterType.FINANCIER.value):
            if value.strip():
                decoded.append(Filter(type=key, value=value))
        elif key in entity_keys:
            entity_id, _, label_value = value.partition(":")
            if entity_id:
                decoded.append(
                    Filter(
                        type=entity_keys[key].value,
                        value=label_value or entity_id,
                        entity_id=entity_id,
                        filter_source=FilterSource.ENTITY_SELECTION,
                    )
                )
        elif key == CLASS_PARAM:
            scope, separator, grade = value.partition(":")
            if not separator:
                scope, grade = "", value
            if grade.strip():
                decoded.append(Filter(type=FilterType.CLASS.value, value=grade, entity_type=scope or None))
        elif key == QUALIFIED_PARAM and is_qualified(value):
            decoded.append(Filter(type=FilterType.QUALIFIED_45_DAY.value, value="true"))
        elif key == MY_PROJECTS_PARAM and value.strip():
            rep_id = "" if value == MY_PROJECTS_SELF else value
            decoded.append(Filter(type=FilterType.MY_PROJECTS.value, value=rep_id))
        elif key == LEGACY_CLASS_PARAM:
            legacy_class = value
        elif key == LEGACY_ENTITY_TYPE_PARAM:
            legacy_scope = value

    if legacy_class and legacy_class.strip():
        decoded.append(
            Filter(type=FilterType.CLASS.value, value=legacy_class, entity_type=legacy_scope or None)
        )
    return decoded


def to_query_string(filters: Iterable[Filter]) -> str:
    return urlencode(filters_to_params(filters))


def from_query_string(query: str) -> List[Filter]:
    return filters_from_params(parse_qsl(query.lstrip("?"), keep_blank_values=False))


__all__ = [
    "FilterResult",
    "FilterSet",
    "apply",
    "default_label",
    "entity_matches",
    "filter_projects",
    "filters_from_params",
    "filters_to_params",
    "from_query_string",
    "is_qualified",
    "project_predicate",
    "sort_projects",
    "to_query_string",
]
