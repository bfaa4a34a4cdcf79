from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Tuple
import hashlib
import math
import numbers

import pandas as pd


SOURCES = ["zillow", "redfin", "realtor"]

# Raw provider column names for the fields every source record must expose.
SOURCE_COLUMNS: Dict[str, Dict[str, str]] = {
    "zillow": {
        "id": "zillow_id",
        "address": "address",
        "lat": "lat",
        "lon": "lon",
        "zip5": "zip5",
        "updated": "last_updated",
    },
    "redfin": {
        "id": "redfin_id",
        "address": "address",
        "lat": "lat",
        "lon": "lon",
        "zip5": "zip5",
        "updated": "last_updated",
    },
    "realtor": {
        "id": "realtor_id",
        "address": "street",
        "lat": "latitude",
        "lon": "longitude",
        "zip5": "zip5",
        "updated": "last_updated",
    },
}

# Merged numeric field -> provider column per source (None when the provider lacks it).
FIELD_MAPPINGS: Dict[str, Dict[str, Optional[str]]] = {
    "bedrooms": {"zillow": "bedrooms", "redfin": "bedrooms", "realtor": "beds"},
    "bathrooms": {"zillow": "bathrooms", "redfin": "bathrooms", "realtor": "baths"},
    "lot_size": {"zillow": None, "redfin": "lot_size", "realtor": "lot_sqft"},
    "sqft": {"zillow": "sqft", "redfin": "sqft", "realtor": "sqft"},
    "price": {"zillow": "price", "redfin": "price", "realtor": "list_price"},
    "last_sold_price": {"zillow": "last_sold_price", "redfin": None, "realtor": "last_sold_price"},
    "year_built": {"zillow": None, "redfin": "year_built", "realtor": "year_built"},
}

NUMERIC_FIELDS = list(FIELD_MAPPINGS)

PROPERTY_TYPE_PRIORITY: List[Tuple[str, str]] = [
    ("zillow", "property_type"),
    ("realtor", "property_type"),
    ("redfin", "property_type"),
]
LISTING_STATUS_PRIORITY: List[Tuple[str, str]] = [
    ("zillow", "listing_status"),
    ("redfin", "mls_status"),
    ("realtor", "status"),
]
ZIP_PRIORITY: List[Tuple[str, str]] = [("zillow", "zip5"), ("redfin", "zip5"), ("realtor", "zip5")]
CITY_PRIORITY: List[Tuple[str, str]] = [("zillow", "city"), ("redfin", "city"), ("realtor", "locality")]
STATE_PRIORITY: List[Tuple[str, str]] = [("zillow", "state"), ("redfin", "state"), ("realtor", "region")]

OVERVIEW_COLUMNS: Dict[str, List[str]] = {
    "zillow": ["img_src", "status_text"],
    "redfin": ["listing_remarks"],
    "realtor": ["text"],
}
DAYS_ON_MARKET_COLUMNS: List[Tuple[str, str]] = [("zillow", "days_on_zillow"), ("redfin", "dom")]
ZESTIMATE_COLUMN = ("zillow", "zestimate")

PRICE_CONFLICT_FIELDS = ("price", "last_sold_price")
SIZE_CONFLICT_FIELDS = ("sqft", "bedrooms", "bathrooms", "lot_size")

MONITORED_FIELDS = [
    "price",
    "last_sold_price",
    "bedrooms",
    "bathrooms",
    "sqft",
    "year_built",
    "lot_size",
    "zestimate",
    "property_type",
    "listing_status",
    "days_on_market",
    "zillow_overview",
    "redfin_overview",
    "realtor_overview",
    "source_count",
]


def optional_value(value: Any) -> Any:
    """Coerce pandas NA, NaN and blank strings to None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (list, dict, tuple)):
        return value
    if pd.isna(value):
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return value


def numeric_value(value: Any) -> Optional[float]:
    """Return value as a finite float or None."""
    value = optional_value(value)
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clean_zip5(value: Any) -> Optional[str]:
    """Return a zip code as text, undoing float columns ("16146.0") and lost leading zeros."""
    value = optional_value(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        number = float(value)
        if not number.is_integer():
            return str(value)
        text = str(int(number))
    else:
        text = str(value).strip()
        head, dot, tail = text.partition(".")
        if dot and head.isdigit() and tail.strip("0") == "":
            text = head
    if text.isdigit() and len(text) < 5:
        text = text.zfill(5)
    return text


@dataclass(frozen=True)
class SourceRecord:
    source: str
    source_id: str
    address: str
    lat: Optional[float]
    lon: Optional[float]
    zip5: Optional[str]
    last_updated: Optional[str]
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, source: str, row: Mapping[str, Any]) -> "SourceRecord":
        if source not in SOURCE_COLUMNS:
            raise ValueError(f"Unknown listing source: {source}")
        columns = SOURCE_COLUMNS[source]
        cleaned = {str(key): optional_value(value) for key, value in row.items()}
        source_id = cleaned.get(columns["id"])
        zip5 = clean_zip5(cleaned.get(columns["zip5"]))
        updated = cleaned.get(columns["updated"])
        return cls(
            source=source,
            source_id=str(source_id) if source_id is not None else "",
            address=str(cleaned.get(columns["address"]) or ""),
            lat=numeric_value(cleaned.get(columns["lat"])),
            lon=numeric_value(cleaned.get(columns["lon"])),
            zip5=zip5,
            last_updated=str(updated) if updated is not None else None,
            attributes=cleaned,
        )

    def get(self, column: Optional[str], default: Any = None) -> Any:
        if not column:
            return default
        value = self.attributes.get(column)
        return default if value is None else value


@dataclass
class MergedListing:
    address: str
    listing_id: Optional[str] = None
    original_addresses: Dict[str, Optional[str]] = field(default_factory=dict)
    lat: Optional[float] = None
    lon: Optional[float] = None
    zip5: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zillow_id: Optional[str] = None
    redfin_id: Optional[str] = None
    realtor_id: Optional[str] = None
    source_count: int = 0
    data_sources: List[Dict[str, Any]] = field(default_factory=list)
    price: Optional[int] = None
    last_sold_price: Optional[int] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[float] = None
    sqft: Optional[int] = None
    year_built: Optional[int] = None
    lot_size: Optional[int] = None
    zestimate: Optional[float] = None
    days_on_market: Optional[int] = None
    zillow_overview: Optional[str] = None
    redfin_overview: Optional[str] = None
    realtor_overview: Optional[str] = None
    property_type: Optional[str] = None
    listing_status: Optional[str] = None
    data_conflicts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    conflict_count: int = 0
    has_price_conflicts: bool = False
    has_size_conflicts: bool = False
    quality_score: Optional[float] = None
    matching_method: Optional[str] = None
    confidence_score: Optional[float] = None
    address_similarity_score: Optional[float] = None
    coordinate_distance_meters: Optional[float] = None
    published: bool = False
    published_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_merged_at: Optional[str] = None
    changed_fields: Dict[str, Any] = field(default_factory=dict)
    last_change_reason: Optional[str] = None
    change_source: Optional[str] = None
    change_details: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_ids(self) -> Dict[str, Optional[str]]:
        return {source: getattr(self, f"{source}_id") for source in SOURCES}

    @property
    def sources(self) -> List[str]:
        return [source for source, source_id in self.source_ids.items() if source_id]

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MergedListing":
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in record.items() if key in known})


MERGED_COLUMNS = [item.name for item in fields(MergedListing)]

JSON_COLUMNS = [
    "original_addresses",
    "data_sources",
    "data_conflicts",
    "changed_fields",
    "change_details",
]

STATISTICS_COLUMNS = [
    "run_date",
    "region",
    "total_processed",
    "total_merged",
    "exact_matches",
    "fuzzy_matches",
    "coordinate_matches",
    "no_matches",
    "conflicts_detected",
    "inserted",
    "updated",
    "unchanged",
    "duplicate_keys",
    "errors",
    "matches_by_method",
    "processing_time_seconds",
    "avg_confidence_score",
    "avg_quality_score",
]


def compute_listing_id(address: str) -> str:
    joined = (address or "").strip().lower()
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()
