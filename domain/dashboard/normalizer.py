"""Normalization of raw authority, utility and financier rows into canonical entities."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, TypeVar, Union

from .extraction import (
    extract_classification,
    extract_coordinates,
    extract_id,
    extract_name,
)
from .models import Entity, EntityKind, Financier, RawRecord

logger = logging.getLogger(__name__)

T = TypeVar("T", Entity, Financier)


def normalize_entity(raw: RawRecord, kind: EntityKind) -> Union[Entity, None]:
    """Return the canonical entity for ``raw`` or ``None`` when it has no identifier."""

    entity_id = extract_id(raw, kind)
    if not entity_id:
        return None

    # Some rows keep a dedicated ``coordinates`` payload; otherwise search the row itself.
    coordinate_source = raw.get("coordinates") if isinstance(raw.get("coordinates"), (Mapping, str)) else None
    coordinates = extract_coordinates(coordinate_source or raw)

    return Entity(
        id=entity_id,
        name=extract_name(raw, kind),
        kind=kind,
        classification=extract_classification(raw),
        latitude=coordinates.latitude,
        longitude=coordinates.longitude,
        coord_status=coordinates.coord_status,
    )


def normalize(raw_entities: Iterable[RawRecord], kind: EntityKind) -> List[Entity]:
    """Normalize authority or utility rows.

    Rows without a stable identifier are dropped and logged; later duplicates of
    an identifier already seen are dropped as well so each id maps to exactly one
    entity. ``project_count``, ``related_opposite_ids`` and ``distance`` are left
    at their placeholder values for the aggregation and ranking stages.
    """

    if kind is EntityKind.FINANCIER:
        raise ValueError("use normalize_financiers for financier rows")

    entities: List[Entity] = []
    seen: set[str] = set()
    dropped = 0
    duplicates = 0
    for raw in raw_entities:
        if not isinstance(raw, Mapping):
            dropped += 1
            continue
        entity = normalize_entity(raw, kind)
        if entity is None:
            dropped += 1
            logger.debug("Dropping %s row without identifier", kind.label)
            continue
        if entity.id in seen:
            duplicates += 1
            continue
        seen.add(entity.id)
        entities.append(entity)

    if dropped or duplicates:
        logger.info(
            "Normalized %d %s rows (%d without identifier, %d duplicate ids dropped)",
            len(entities),
            kind.label,
            dropped,
            duplicates,
        )
    return entities


def normalize_financiers(raw_financiers: Iterable[RawRecord]) -> List[Financier]:
    financiers: List[Financier] = []
    seen: set[str] = set()
    for raw in raw_financiers:
        if not isinstance(raw, Mapping):
            continue
        financier_id = extract_id(raw, EntityKind.FINANCIER)
        if not financier_id or financier_id in seen:
            continue
        seen.add(financier_id)
        financiers.append(
            Financier(
                id=financier_id,
                name=extract_name(raw, EntityKind.FINANCIER),
                classification=extract_classification(raw),
            )
        )
    return financiers


def index_by_id(entities: Iterable[T]) -> Dict[str, T]:
    return {entity.id: entity for entity in entities}


__all__ = ["index_by_id", "normalize", "normalize_entity", "normalize_financiers"]
