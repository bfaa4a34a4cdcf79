"""Field-level fusion of matched source records into one merged listing."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from listing_schema import (
    CITY_PRIORITY,
    DAYS_ON_MARKET_COLUMNS,
    FIELD_MAPPINGS,
    LISTING_STATUS_PRIORITY,
    NUMERIC_FIELDS,
    OVERVIEW_COLUMNS,
    PRICE_CONFLICT_FIELDS,
    PROPERTY_TYPE_PRIORITY,
    SIZE_CONFLICT_FIELDS,
    SOURCES,
    STATE_PRIORITY,
    ZESTIMATE_COLUMN,
    ZIP_PRIORITY,
    MergedListing,
    SourceRecord,
    clean_zip5,
)
from pipelines.matching import MatchCandidate
from pipelines.merge_config import MergeConfig
from pipelines.normalizer import normalize_address, parse_number
from pipelines.similarity import validate_coordinates

logger = logging.getLogger(__name__)

MAX_EXPECTED_CONFLICTS = 5
SINGLE_SOURCE_METHOD = "single_source"

Sources = Mapping[str, Optional[SourceRecord]]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_to_half(value: float) -> float:
    return math.floor(value * 2 + 0.5) / 2


def _as_number(value: float) -> Any:
    if float(value).is_integer():
        return int(value)
    return value


def _priority_index(portal: Optional[str]) -> int:
    if portal is None:
        return len(SOURCES)
    try:
        return SOURCES.index(portal)
    except ValueError:
        return len(SOURCES)


def _present(sources: Sources) -> List[SourceRecord]:
    return [sources[source] for source in SOURCES if sources.get(source) is not None]


def choose_by_priority(sources: Sources, chain: Sequence[Tuple[str, str]]) -> Optional[Any]:
    """Return the first non-blank value following the (source, column) chain."""
    for source, column in chain:
        record = sources.get(source)
        if record is None:
            continue
        value = record.get(column)
        if value not in (None, ""):
            return value
    return None


def merge_coordinates(sources: Sources) -> Tuple[Optional[float], Optional[float]]:
    coords = [
        (record.lat, record.lon)
        for record in _present(sources)
        if validate_coordinates(record.lat, record.lon)
    ]
    if not coords:
        return None, None
    if len(coords) == 1:
        return coords[0]
    lat = sum(lat for lat, _ in coords) / len(coords)
    lon = sum(lon for _, lon in coords) / len(coords)
    return lat, lon


def collect_numeric_values(field_name: str, sources: Sources) -> List[Dict[str, Any]]:
    mapping = FIELD_MAPPINGS.get(field_name, {source: field_name for source in SOURCES})
    values: List[Dict[str, Any]] = []
    for source in SOURCES:
        record = sources.get(source)
        column = mapping.get(source)
        if record is None or not column:
            continue
        number = parse_number(record.get(column))
        if number is None or number <= 0:
            continue
        values.append({"source": source, "value": _as_number(number), "field": column})
    return values


def detect_numeric_conflict(values: Sequence[float], threshold: float) -> bool:
    if len(values) < 2:
        return False
    low, high = min(values), max(values)
    if low == 0:
        return high > 0
    return (high - low) / low > threshold


def merge_numeric_field(
    field_name: str,
    sources: Sources,
    config: MergeConfig,
    conflicts: Dict[str, Dict[str, Any]],
) -> Optional[Any]:
    """Average a numeric field across sources, recording disagreements.

    A single valid value is returned untouched. With two or more, the mean is
    rounded half-up (bathrooms to the nearest 0.5) and, when the relative
    spread exceeds the field's threshold, a ledger entry is written into
    ``conflicts``.
    """
    values = collect_numeric_values(field_name, sources)
    if not values:
        return None
    if len(values) == 1:
        return values[0]["value"]

    numbers = [float(item["value"]) for item in values]
    average = sum(numbers) / len(numbers)
    if field_name == "bathrooms":
        resolved: Any = _as_number(round_to_half(average))
    else:
        resolved = round_half_up(average)

    if config.conflict_detection_enabled and detect_numeric_conflict(numbers, config.conflict_threshold(field_name)):
        conflicts[field_name] = {
            "values": values,
            "reason": f"{field_name} values differ beyond threshold",
            "resolution_method": "average",
            "resolved_value": resolved,
        }
        logger.debug("Conflict on %s: %s -> %s", field_name, numbers, resolved)
    return resolved


def extract_overview(record: Optional[SourceRecord]) -> Optional[str]:
    if record is None:
        return None
    for column in OVERVIEW_COLUMNS.get(record.source, []):
        value = record.get(column)
        if value not in (None, ""):
            return str(value)
    return None


def extract_zestimate(sources: Sources) -> Optional[Any]:
    source, column = ZESTIMATE_COLUMN
    record = sources.get(source)
    if record is None:
        return None
    number = parse_number(record.get(column))
    if number is None or number <= 0:
        return None
    return _as_number(number)


def merge_days_on_market(sources: Sources) -> Optional[int]:
    values = []
    for source, column in DAYS_ON_MARKET_COLUMNS:
        record = sources.get(source)
        if record is None:
            continue
        number = parse_number(record.get(column))
        if number is not None and number > 0:
            values.append(int(number))
    if not values:
        return None
    return round_half_up(sum(values) / len(values))


def calculate_quality_score(
    source_count: int,
    conflict_count: int,
    config: MergeConfig,
    confidence: Optional[float] = None,
) -> float:
    weights = config.quality_score_weights
    source_score = min(source_count / 3, 1.0)
    confidence_score = confidence if confidence is not None else config.default_match_confidence
    conflict_score = max(0.0, 1 - conflict_count / MAX_EXPECTED_CONFLICTS)
    quality = (
        source_score * weights.get("source_count", 0)
        + confidence_score * weights.get("confidence", 0)
        + conflict_score * weights.get("conflicts", 0)
    )
    return round_half_up(quality * 100) / 100


def pick_primary_match(matches: Mapping[str, Optional[MatchCandidate]]) -> Optional[MatchCandidate]:
    """Best match across sources: highest score, then source priority."""
    found = [(source, match) for source, match in matches.items() if match is not None]
    if not found:
        return None
    found.sort(key=lambda item: (-item[1].overall_score, _priority_index(item[0])))
    return found[0][1]


def merge_property_data(
    sources: Sources,
    config: MergeConfig,
    matches: Optional[Mapping[str, Optional[MatchCandidate]]] = None,
) -> MergedListing:
    """Fuse up to one record per source into an unpersisted MergedListing."""
    present = _present(sources)
    merged = MergedListing(address="")

    for record in present:
        setattr(merged, f"{record.source}_id", record.source_id or None)
        merged.original_addresses[record.source] = record.address or None
        merged.data_sources.append(
            {"source": record.source, "id": record.source_id, "last_updated": record.last_updated}
        )
    merged.source_count = len(merged.sources)

    raw_address = next((record.address for record in present if record.address), "")
    merged.address = normalize_address(raw_address)
    merged.lat, merged.lon = merge_coordinates(sources)
    zip5 = choose_by_priority(sources, ZIP_PRIORITY)
    merged.zip5 = clean_zip5(zip5)
    merged.city = choose_by_priority(sources, CITY_PRIORITY)
    merged.state = choose_by_priority(sources, STATE_PRIORITY)

    for field_name in NUMERIC_FIELDS:
        setattr(merged, field_name, merge_numeric_field(field_name, sources, config, merged.data_conflicts))

    merged.zestimate = extract_zestimate(sources)
    merged.days_on_market = merge_days_on_market(sources)
    for source in SOURCES:
        setattr(merged, f"{source}_overview", extract_overview(sources.get(source)))
    merged.property_type = choose_by_priority(sources, PROPERTY_TYPE_PRIORITY)
    merged.listing_status = choose_by_priority(sources, LISTING_STATUS_PRIORITY)

    merged.conflict_count = len(merged.data_conflicts)
    merged.has_price_conflicts = any(field_name in merged.data_conflicts for field_name in PRICE_CONFLICT_FIELDS)
    merged.has_size_conflicts = any(field_name in merged.data_conflicts for field_name in SIZE_CONFLICT_FIELDS)

    primary = pick_primary_match(matches or {})
    if primary is not None:
        merged.matching_method = primary.matching_method
        merged.confidence_score = primary.confidence
        merged.address_similarity_score = primary.scores.get(
            "address_exact", primary.scores.get("address_similarity")
        )
        if primary.distance_meters is not None:
            merged.coordinate_distance_meters = primary.distance_meters
    elif merged.source_count == 1:
        merged.matching_method = SINGLE_SOURCE_METHOD

    merged.quality_score = calculate_quality_score(
        merged.source_count, merged.conflict_count, config, merged.confidence_score
    )
    return merged
