"""Attach normalized entities and coordinates to raw project rows."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .extraction import (
    PROJECT_COORDINATE_DEPTHS,
    extract_coordinates,
    extract_text,
    lookup,
)
from .models import Entity, Financier, Project, RawRecord, Viewer

logger = logging.getLogger(__name__)

PROJECT_ID_KEYS = ("project_id", "id", "item_id", "podio_item_id")

# Foreign-key fields, in lookup order. Object-valued fields contribute their ``id``.
AHJ_REFERENCE_KEYS = ("ahj_item_id", "ahj", "ahj_data")
UTILITY_REFERENCE_KEYS = ("utility_company_item_id", "utility", "utility_data")
FINANCIER_REFERENCE_KEYS = ("fin_id", "financier_id", "financier")

MASKED_ADDRESS = "Project details restricted"
MASKED_STATUS = "Restricted"


def _reference_text(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def resolve_reference(raw: RawRecord, keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        reference = _reference_text(raw.get(key))
        if reference:
            return reference
    return None


def _project_id(raw: RawRecord) -> str:
    for key in PROJECT_ID_KEYS:
        reference = _reference_text(raw.get(key))
        if reference:
            return reference
    return ""


def _compose_address(raw: RawRecord, city: str, state: str, zip_code: str) -> str:
    street = extract_text(raw, "address")
    if street and not (city or state or zip_code):
        return street
    parts = [part for part in (street, city) if part]
    locality = " ".join(part for part in (state, zip_code) if part)
    if locality:
        parts.append(locality)
    return ", ".join(parts)


def _qualification_flag(raw: RawRecord) -> Any:
    for path in (("qualifies_45_day",), ("qualifies45Day",), ("raw_payload", "qualifies_45_day")):
        value = lookup(raw, path)
        if value is not None and value != "":
            return value
    return None


def link_project(
    raw: RawRecord,
    ahj_index: Mapping[str, Entity],
    utility_index: Mapping[str, Entity],
    financier_index: Mapping[str, Financier],
    fallback: Tuple[float, float],
) -> Project:
    coordinates = extract_coordinates(raw, PROJECT_COORDINATE_DEPTHS)
    if coordinates.is_valid:
        latitude, longitude = coordinates.latitude, coordinates.longitude
        location_is_fallback = False
    else:
        latitude, longitude = fallback
        location_is_fallback = True

    ahj_id = resolve_reference(raw, AHJ_REFERENCE_KEYS)
    utility_id = resolve_reference(raw, UTILITY_REFERENCE_KEYS)
    fin_id = resolve_reference(raw, FINANCIER_REFERENCE_KEYS)

    city = extract_text(raw, "city")
    state = extract_text(raw, "state")
    zip_code = extract_text(raw, "zip")

    rep_id = _reference_text(raw.get("rep_id"))

    return Project(
        id=_project_id(raw),
        address=_compose_address(raw, city, state, zip_code),
        latitude=latitude,
        longitude=longitude,
        location_is_fallback=location_is_fallback,
        ahj=ahj_index.get(ahj_id) if ahj_id else None,
        utility=utility_index.get(utility_id) if utility_id else None,
        financier=financier_index.get(fin_id) if fin_id else None,
        ahj_item_id=ahj_id,
        utility_company_item_id=utility_id,
        fin_id=fin_id,
        status=extract_text(raw, "status"),
        city=city,
        state=state,
        zip=zip_code,
        county=extract_text(raw, "county"),
        milestone=extract_text(raw, "milestone"),
        contract_signed_date=extract_text(raw, "contract_signed_date"),
        qualifies_45_day=_qualification_flag(raw),
        rep_id=rep_id,
    )


def link(
    raw_projects: Iterable[RawRecord],
    ahj_index: Mapping[str, Entity],
    utility_index: Mapping[str, Entity],
    financier_index: Mapping[str, Financier],
    fallback: Tuple[float, float],
) -> List[Project]:
    """Resolve coordinates and entity references for every raw project.

    Unmatched foreign keys leave the relation ``None``; the raw key is kept on
    the project so later stages can still reason about it. Projects without a
    usable location are placed at ``fallback`` and flagged.
    """

    projects: List[Project] = []
    fallback_count = 0
    unresolved = 0
    for raw in raw_projects:
        if not isinstance(raw, Mapping):
            continue
        project = link_project(raw, ahj_index, utility_index, financier_index, fallback)
        if project.location_is_fallback:
            fallback_count += 1
        if (project.ahj_item_id and project.ahj is None) or (
            project.utility_company_item_id and project.utility is None
        ):
            unresolved += 1
        projects.append(project)

    if fallback_count or unresolved:
        logger.info(
            "Linked %d projects (%d placed at fallback location, %d with unresolved references)",
            len(projects),
            fallback_count,
            unresolved,
        )
    return projects


def is_complete(project: Project) -> bool:
    return "complete" in project.status.lower()


def mask_projects(projects: Iterable[Project], viewer: Optional[Viewer]) -> List[Project]:
    """Hide details of projects the viewer may not see.

    Admins see everything. Other reps see complete projects and their own.
    """

    if viewer is None or viewer.is_admin:
        return list(projects)

    visible: List[Project] = []
    for project in projects:
        own = bool(viewer.rep_id) and project.rep_id == viewer.rep_id
        if is_complete(project) or own:
            visible.append(project)
            continue
        visible.append(
            replace(
                project,
                address=MASKED_ADDRESS,
                status=MASKED_STATUS,
                latitude=None,
                longitude=None,
                is_masked=True,
            )
        )
    return visible


__all__ = [
    "AHJ_REFERENCE_KEYS",
    "FINANCIER_REFERENCE_KEYS",
    "MASKED_ADDRESS",
    "MASKED_STATUS",
    "UTILITY_REFERENCE_KEYS",
    "is_complete",
    "link",
    "link_project",
    "mask_projects",
    "resolve_reference",
]
