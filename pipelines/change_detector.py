"""Change detection and change-tracked upsert of merged listings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from listing_schema import MONITORED_FIELDS, MergedListing, compute_listing_id, optional_value
from pipelines.normalizer import parse_number
from pipelines.storage import ListingStore

logger = logging.getLogger(__name__)

TOLERANT_NUMERIC_FIELDS = {"price", "last_sold_price", "sqft", "lot_size", "zestimate"}
INTEGER_FIELDS = {"bedrooms", "year_built", "days_on_market", "source_count"}
NUMERIC_TOLERANCE = 1.0
BATHROOM_TOLERANCE = 0.1
FIELD_SOURCES = {
    "zestimate": "zillow",
    "zillow_overview": "zillow",
    "redfin_overview": "redfin",
    "realtor_overview": "realtor",
}
DEFAULT_CHANGE_REASON = "Data merge process"
INITIAL_CHANGE_REASON = "initial"


@dataclass
class ChangeSet:
    changed_fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    contributing_sources: List[str] = field(default_factory=list)
    sources_changed: bool = False

    @property
    def change_count(self) -> int:
        return len(self.changed_fields)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed_fields) or self.sources_changed


@dataclass
class UpsertResult:
    action: str
    record: MergedListing
    changes: Optional[ChangeSet] = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_int(value: Any) -> Optional[int]:
    number = parse_number(value)
    return int(number) if number is not None else None


def has_field_changed(old_value: Any, new_value: Any, field_name: str) -> bool:
    old_value = optional_value(old_value)
    new_value = optional_value(new_value)
    if old_value is None and new_value is None:
        return False
    if old_value is None or new_value is None:
        return True

    if field_name in TOLERANT_NUMERIC_FIELDS or field_name == "bathrooms":
        old_num = parse_number(old_value)
        new_num = parse_number(new_value)
        if old_num is None and new_num is None:
            return False
        if old_num is None or new_num is None:
            return True
        tolerance = BATHROOM_TOLERANCE if field_name == "bathrooms" else NUMERIC_TOLERANCE
        return abs(old_num - new_num) > tolerance

    if field_name in INTEGER_FIELDS:
        return _to_int(old_value) != _to_int(new_value)

    return str(old_value).strip() != str(new_value).strip()


def _source_names(record: MergedListing) -> List[str]:
    return [entry.get("source") for entry in (record.data_sources or []) if entry.get("source")]


def determine_field_source(field_name: str, new: MergedListing, existing: MergedListing) -> str:
    if field_name in FIELD_SOURCES:
        return FIELD_SOURCES[field_name]
    new_sources = _source_names(new)
    old_sources = _source_names(existing)
    added = [source for source in new_sources if source not in old_sources]
    if added:
        return ",".join(added)
    if len(new_sources) != len(old_sources):
        return ",".join(new_sources)
    if len(new_sources) > 1:
        return "multiple"
    return new_sources[0] if new_sources else "unknown"


def detect_changes(existing: MergedListing, new: MergedListing) -> ChangeSet:
    """Compare the monitored fields of a stored listing with a fresh merge."""
    changes = ChangeSet()
    contributing: List[str] = []

    def contribute(source: str) -> None:
        if source and source != "unknown" and source not in contributing:
            contributing.append(source)

    for field_name in MONITORED_FIELDS:
        old_value = getattr(existing, field_name)
        new_value = getattr(new, field_name)
        if not has_field_changed(old_value, new_value, field_name):
            continue
        source = determine_field_source(field_name, new, existing)
        changes.changed_fields[field_name] = {"old": old_value, "new": new_value, "source": source}
        contribute(source)

    old_names = _source_names(existing)
    new_names = _source_names(new)
    if sorted(old_names) != sorted(new_names):
        changes.sources_changed = True
        for source in new_names:
            if source not in old_names:
                contribute(source)

    changes.contributing_sources = contributing
    return changes


def format_value_for_display(value: Any, field_name: str) -> str:
    value = optional_value(value)
    if value is None:
        return "null"
    number = parse_number(value) if not isinstance(value, str) else None
    if number is not None and ("price" in field_name or field_name == "zestimate"):
        return f"${number:,.0f}"
    if number is not None and field_name in ("sqft", "lot_size"):
        return f"{number:,.0f} sqft"
    text = str(value)
    return text if len(text) <= 50 else text[:47] + "..."


def _log_changes(record: MergedListing, changes: ChangeSet, change_reason: str) -> None:
    logger.info("Updated merged listing %s for address: %s", record.listing_id, record.address)
    for field_name, change in changes.changed_fields.items():
        logger.info(
            "  %s: %s -> %s (source: %s)",
            field_name,
            format_value_for_display(change["old"], field_name),
            format_value_for_display(change["new"], field_name),
            change.get("source") or "unknown",
        )
    logger.info("  Change reason: %s", change_reason)


def upsert_merged_listing(
    store: ListingStore,
    merged: MergedListing,
    change_reason: str = DEFAULT_CHANGE_REASON,
    now: Optional[str] = None,
) -> UpsertResult:
    """Insert, update or touch the stored listing keyed by ``merged.address``.

    Storage errors propagate to the caller.
    """
    now = now or _utc_now()
    existing = store.find_merged_by_address(merged.address)

    if existing is None:
        merged.listing_id = compute_listing_id(merged.address)
        merged.created_at = now
        merged.updated_at = now
        merged.last_merged_at = now
        merged.last_change_reason = INITIAL_CHANGE_REASON
        merged.change_source = "new_record"
        merged.changed_fields = {}
        merged.change_details = {"change_count": 0, "timestamp": now, "initial_creation": True}
        store.insert_merged(merged)
        logger.info("Created merged listing %s for address: %s", merged.listing_id, merged.address)
        return UpsertResult(action="inserted", record=merged)

    changes = detect_changes(existing, merged)
    if not changes.has_changes:
        store.touch_merged(existing.listing_id, now)
        existing.last_merged_at = now
        logger.debug("No changes detected for merged listing %s: %s", existing.listing_id, existing.address)
        return UpsertResult(action="unchanged", record=existing, changes=changes)

    merged.listing_id = existing.listing_id
    merged.created_at = existing.created_at
    merged.published = existing.published
    merged.published_at = existing.published_at
    merged.updated_at = now
    merged.last_merged_at = now
    merged.last_change_reason = change_reason
    merged.changed_fields = changes.changed_fields
    merged.change_source = ",".join(changes.contributing_sources)
    merged.change_details = {
        "change_count": changes.change_count,
        "timestamp": now,
        "previous_update": existing.updated_at,
    }
    store.update_merged(existing.listing_id, merged)
    _log_changes(merged, changes, change_reason)
    return UpsertResult(action="updated", record=merged, changes=changes)
