"""Per-entity project counts and co-occurrence sets over the filtered projects."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from .models import Entity, EntityKind, Project

logger = logging.getLogger(__name__)


def project_entity(project: Project, kind: EntityKind) -> Optional[Entity]:
    if kind is EntityKind.AHJ:
        return project.ahj
    if kind is EntityKind.UTILITY:
        return project.utility
    return None


def project_reference(project: Project, kind: EntityKind) -> Optional[str]:
    if kind is EntityKind.AHJ:
        return project.ahj_item_id
    if kind is EntityKind.UTILITY:
        return project.utility_company_item_id
    return project.fin_id


def project_entity_ids(project: Project, kind: EntityKind) -> Set[str]:
    """Both the linked entity's id and the raw foreign key, whichever are present."""

    ids: Set[str] = set()
    linked = project_entity(project, kind)
    if linked is not None and linked.id:
        ids.add(linked.id)
    reference = project_reference(project, kind)
    if reference:
        ids.add(reference)
    return ids


def projects_for_entity(entity: Entity, projects: Sequence[Project]) -> List[Project]:
    """Projects referencing ``entity`` by id, or by linked name when no id matches.

    The name pass repairs rows whose id linking failed upstream; it only runs
    when the id pass finds nothing.
    """

    matched = [project for project in projects if entity.id in project_entity_ids(project, entity.kind)]
    if matched:
        return matched

    wanted = entity.name.casefold()
    by_name = []
    for project in projects:
        linked = project_entity(project, entity.kind)
        if linked is not None and linked.name.casefold() == wanted:
            by_name.append(project)
    if by_name:
        logger.debug(
            "Matched %d projects to %s %s by name only", len(by_name), entity.kind.label, entity.id
        )
    return by_name


def co_occurring_ids(projects: Iterable[Project], kind: EntityKind) -> FrozenSet[str]:
    ids: Set[str] = set()
    for project in projects:
        ids.update(project_entity_ids(project, kind))
    return frozenset(ids)


def aggregate(filtered_projects: Sequence[Project], entities: Iterable[Entity]) -> List[Entity]:
    """Recompute ``project_count`` and ``related_opposite_ids`` for each visible entity."""

    enriched: List[Entity] = []
    for entity in entities:
        matched = projects_for_entity(entity, filtered_projects)
        enriched.append(
            replace(
                entity,
                project_count=len(matched),
                related_opposite_ids=co_occurring_ids(matched, entity.kind.opposite),
            )
        )
    return enriched


def relationship_maps(projects: Iterable[Project]) -> Dict[str, Dict[str, FrozenSet[str]]]:
    """AHJ-to-utility and utility-to-AHJ adjacency across ``projects``."""

    ahj_to_utility: Dict[str, Set[str]] = {}
    utility_to_ahj: Dict[str, Set[str]] = {}
    for project in projects:
        ahj_ids = project_entity_ids(project, EntityKind.AHJ)
        utility_ids = project_entity_ids(project, EntityKind.UTILITY)
        for ahj_id in ahj_ids:
            ahj_to_utility.setdefault(ahj_id, set()).update(utility_ids)
        for utility_id in utility_ids:
            utility_to_ahj.setdefault(utility_id, set()).update(ahj_ids)
    return {
        EntityKind.AHJ.value: {key: frozenset(value) for key, value in ahj_to_utility.items()},
        EntityKind.UTILITY.value: {key: frozenset(value) for key, value in utility_to_ahj.items()},
    }


__all__ = [
    "aggregate",
    "co_occurring_ids",
    "project_entity",
    "project_entity_ids",
    "project_reference",
    "projects_for_entity",
    "relationship_maps",
]
