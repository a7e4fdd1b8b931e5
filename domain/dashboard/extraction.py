"""Field extraction from heterogeneous Supabase rows.

Rows synced from the CRM arrive in several shapes: the authoritative values
may sit at the top level or one or two levels down under ``raw_payload``, and
any of those payload levels may be a JSON-encoded string instead of a mapping.
Each field is therefore described as an ordered tuple of key paths, tried in
sequence; the first usable value wins.
"""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import Classification, Coordinates, CoordStatus, EntityKind

logger = logging.getLogger(__name__)

Path = Tuple[str, ...]

PAYLOAD_KEY = "raw_payload"

# Kind-specific primary key, then generic keys, then the kind-specific alternate.
ID_KEYS: Dict[EntityKind, Tuple[str, ...]] = {
    EntityKind.AHJ: ("ahj_item_id", "id", "_id", "ahj_id"),
    EntityKind.UTILITY: ("utility_company_item_id", "id", "_id", "utility_id"),
    EntityKind.FINANCIER: ("fin_id", "id", "_id", "financier_id"),
}

NAME_PATHS: Dict[EntityKind, Tuple[Path, ...]] = {
    # Authority names are only reliable two payload levels down.
    EntityKind.AHJ: (
        (PAYLOAD_KEY, PAYLOAD_KEY, "name"),
        ("name",),
        ("ahj_name",),
        ("authority_having_jurisdiction",),
        (PAYLOAD_KEY, "name"),
    ),
    EntityKind.UTILITY: (
        ("company_name",),
        ("name",),
        ("utility_name",),
        ("utility_company_name",),
        ("company",),
        (PAYLOAD_KEY, "company_name"),
        (PAYLOAD_KEY, "name"),
        (PAYLOAD_KEY, "utility_name"),
        (PAYLOAD_KEY, PAYLOAD_KEY, "company_name"),
        (PAYLOAD_KEY, PAYLOAD_KEY, "name"),
        (PAYLOAD_KEY, PAYLOAD_KEY, "utility_name"),
    ),
    EntityKind.FINANCIER: (
        ("company_name",),
        ("name",),
        ("financier_name",),
        (PAYLOAD_KEY, "company_name"),
        (PAYLOAD_KEY, "name"),
        (PAYLOAD_KEY, PAYLOAD_KEY, "company_name"),
    ),
}

CLASSIFICATION_KEYS = ("classification", "eligible-for-classification")
CLASSIFICATION_PATHS: Tuple[Path, ...] = tuple(
    prefix + (key,)
    for prefix in ((), (PAYLOAD_KEY,), (PAYLOAD_KEY, PAYLOAD_KEY))
    for key in CLASSIFICATION_KEYS
)
CLASSIFICATION_OBJECT_KEYS = ("classification", "eligible-for-classification", "class", "value", "text")

LATITUDE_KEYS = ("latitude", "Latitude", "lat", "Lat", "LATITUDE")
LONGITUDE_KEYS = ("longitude", "Longitude", "lng", "lon", "Lng", "Long", "LONGITUDE")
LOCATION_CONTAINERS = ("location", "Location", "geo", "Geo", "coordinates", "Coordinates")

# Payload depths searched for coordinates, most authoritative first.
ENTITY_COORDINATE_DEPTHS = (2, 1, 0)
PROJECT_COORDINATE_DEPTHS = (0, 2, 1)


class PayloadParseError(ValueError):
    """A nested payload was a string that is not valid JSON."""


def _coerce_float(value: Any) -> Optional[float]:
    try:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str) and not value.strip():
            return None
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _as_mapping(value: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PayloadParseError(str(exc)) from exc
        return parsed if isinstance(parsed, Mapping) else None
    return None


def payload_layers(raw: Any) -> List[Optional[Mapping[str, Any]]]:
    """Return ``[record, raw_payload, raw_payload.raw_payload]``; missing levels are ``None``.

    Raises :class:`PayloadParseError` when a level is an unparsable JSON string.
    """

    layers: List[Optional[Mapping[str, Any]]] = []
    current = _as_mapping(raw)
    for _ in range(3):
        layers.append(current)
        current = _as_mapping(current.get(PAYLOAD_KEY)) if current is not None else None
    return layers


def _lenient_layers(raw: Any) -> List[Optional[Mapping[str, Any]]]:
    layers: List[Optional[Mapping[str, Any]]] = []
    current: Any = raw
    for _ in range(3):
        try:
            mapping = _as_mapping(current)
        except PayloadParseError:
            logger.debug("Ignoring unparsable nested payload")
            mapping = None
        layers.append(mapping)
        current = mapping.get(PAYLOAD_KEY) if mapping is not None else None
    return layers


def lookup(raw: Any, path: Sequence[str]) -> Any:
    """Follow ``path`` through ``raw``, decoding JSON-string payload levels on the way."""

    current: Any = raw
    for key in path:
        try:
            mapping = _as_mapping(current)
        except PayloadParseError:
            return None
        if mapping is None:
            return None
        current = mapping.get(key)
    return current


def first_present(raw: Any, paths: Iterable[Sequence[str]]) -> Any:
    for path in paths:
        value = lookup(raw, path)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _scalar_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value).strip()
    return ""


def extract_id(raw: Any, kind: EntityKind) -> str:
    """Return the first non-empty identifier, searching the record then its payload."""

    keys = ID_KEYS[kind]
    paths = [(key,) for key in keys] + [(PAYLOAD_KEY, key) for key in keys]
    for path in paths:
        candidate = _scalar_text(lookup(raw, path))
        if candidate:
            return candidate
    return ""


def extract_name(raw: Any, kind: EntityKind) -> str:
    for path in NAME_PATHS[kind]:
        candidate = lookup(raw, path)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return f"Unknown {kind.label}"


def normalize_classification(value: Any) -> Classification:
    """Map free-text grades such as ``"Class A"``, ``"a class"`` or ``"ClassA"`` onto A/B/C."""

    if isinstance(value, Mapping):
        value = first_present(value, ((key,) for key in CLASSIFICATION_OBJECT_KEYS))
    if value is None or isinstance(value, (bool, Mapping)):
        return Classification.UNKNOWN

    compact = "".join(str(value).split()).upper()
    if compact.startswith("CLASS"):
        compact = compact[len("CLASS"):]
    elif compact.endswith("CLASS"):
        compact = compact[: -len("CLASS")]

    if compact in ("A", "B", "C"):
        return Classification(compact)
    return Classification.UNKNOWN


def extract_classification(raw: Any) -> Classification:
    for path in CLASSIFICATION_PATHS:
        value = lookup(raw, path)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        grade = normalize_classification(value)
        if grade is not Classification.UNKNOWN:
            return grade
    return Classification.UNKNOWN


def _find_key(layer: Mapping[str, Any], keys: Sequence[str]) -> Tuple[bool, Any]:
    for key in keys:
        if key in layer:
            return True, layer[key]
    return False, None


def _coordinates_in_layer(layer: Mapping[str, Any]) -> Optional[Tuple[Any, Any]]:
    has_lat, lat = _find_key(layer, LATITUDE_KEYS)
    has_lon, lon = _find_key(layer, LONGITUDE_KEYS)
    if has_lat and has_lon:
        return lat, lon

    for container_key in LOCATION_CONTAINERS:
        container = layer.get(container_key)
        if isinstance(container, Mapping):
            has_lat, lat = _find_key(container, LATITUDE_KEYS)
            has_lon, lon = _find_key(container, LONGITUDE_KEYS)
            if has_lat and has_lon:
                return lat, lon
        elif isinstance(container, (list, tuple)) and len(container) >= 2:
            # GeoJSON ordering: [longitude, latitude]
            return container[1], container[0]
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_coordinates(lat_value: Any, lon_value: Any) -> Coordinates:
    if _is_blank(lat_value) or _is_blank(lon_value):
        return Coordinates(status=CoordStatus.EMPTY)

    latitude = _coerce_float(lat_value)
    longitude = _coerce_float(lon_value)
    if latitude is None or longitude is None:
        return Coordinates(status=CoordStatus.INVALID)
    if not (-90.0 <= latitude <= 90.0) or not (-180.0 <= longitude <= 180.0):
        return Coordinates(status=CoordStatus.INVALID)
    if latitude == 0.0 and longitude == 0.0:
        return Coordinates(status=CoordStatus.INVALID)
    return Coordinates(latitude=latitude, longitude=longitude)


def extract_coordinates(
    raw: Any, depths: Sequence[int] = ENTITY_COORDINATE_DEPTHS
) -> Coordinates:
    """Locate a latitude/longitude pair within 0-2 levels of ``raw_payload`` nesting.

    ``depths`` gives the order in which payload levels are searched. The first
    level holding both a latitude and a longitude key decides the outcome.
    Status is ``EMPTY`` for a missing payload or blank values, ``INVALID`` for
    unparsable payloads, non-numeric or out-of-range values and the ``(0, 0)``
    sentinel, ``UNKNOWN`` when no level carries coordinates at all, and
    ``None`` (valid) otherwise.
    """

    if raw is None or (isinstance(raw, (str, Mapping)) and not raw):
        return Coordinates(status=CoordStatus.EMPTY)

    try:
        layers = payload_layers(raw)
    except PayloadParseError:
        logger.debug("Coordinate payload could not be parsed")
        return Coordinates(status=CoordStatus.INVALID)

    if layers[0] is None:
        return Coordinates(status=CoordStatus.INVALID)

    for depth in depths:
        layer = layers[depth]
        if layer is None:
            continue
        found = _coordinates_in_layer(layer)
        if found is not None:
            return validate_coordinates(*found)
    return Coordinates(status=CoordStatus.UNKNOWN)


def extract_text(raw: Any, key: str, depths: Sequence[int] = (0, 2, 1)) -> str:
    """Return a display string for ``key`` from the first payload level that has one."""

    layers = _lenient_layers(raw)
    for depth in depths:
        layer = layers[depth]
        if layer is None:
            continue
        text = _scalar_text(layer.get(key))
        if text:
            return text
    return ""


__all__ = [
    "CLASSIFICATION_PATHS",
    "ENTITY_COORDINATE_DEPTHS",
    "ID_KEYS",
    "NAME_PATHS",
    "PROJECT_COORDINATE_DEPTHS",
    "PayloadParseError",
    "extract_classification",
    "extract_coordinates",
    "extract_id",
    "extract_name",
    "extract_text",
    "first_present",
    "lookup",
    "normalize_classification",
    "payload_layers",
    "validate_coordinates",
]
