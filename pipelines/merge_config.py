"""Merge configuration: defaults, validation and layered overrides.

Values are resolved in order: built-in defaults, an optional JSON file, ``MERGE_*``
environment variables, then explicit runtime overrides (usually CLI flags).
Any value that fails validation is reported and replaced by its default so a
bad setting never aborts a batch.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "coordinate_tolerance_meters": 50.0,
    "address_fuzzy_threshold": 0.8,
    "price_conflict_threshold": 0.05,
    "enable_fuzzy_matching": True,
    "min_confidence_score": 0.7,
    "max_coordinate_distance": 100.0,
    "conflict_detection_enabled": True,
    "field_conflict_thresholds": {
        "bedrooms": 0.1,
        "bathrooms": 0.1,
        "sqft": 0.1,
        "year_built": 0.02,
    },
    "quality_score_weights": {
        "source_count": 0.3,
        "confidence": 0.4,
        "conflicts": 0.3,
    },
    "default_match_confidence": 0.8,
    "use_blocking_index": False,
}

CONFIG_DESCRIPTIONS: Dict[str, str] = {
    "coordinate_tolerance_meters": "Maximum distance in meters for coordinate-based matching",
    "address_fuzzy_threshold": "Minimum similarity score for fuzzy address matching (0.0-1.0)",
    "price_conflict_threshold": "Relative spread that flags a conflict for fields without their own threshold (0.05 = 5%)",
    "enable_fuzzy_matching": "Enable fuzzy address matching",
    "min_confidence_score": "Minimum overall score for accepting a match",
    "max_coordinate_distance": "Distance in meters at which coordinate similarity reaches zero",
    "conflict_detection_enabled": "Record disagreeing numeric values in the conflict ledger",
    "field_conflict_thresholds": "Per-field relative spread thresholds overriding price_conflict_threshold",
    "quality_score_weights": "Weights for quality score calculation (must sum to 1.0)",
    "default_match_confidence": "Confidence used in the quality score when a listing has no match confidence",
    "use_blocking_index": "Score only candidates sharing a geo cell, address or house number",
}

ENV_PREFIX = "MERGE_"
ENV_KEYS = [
    "coordinate_tolerance_meters",
    "address_fuzzy_threshold",
    "price_conflict_threshold",
    "enable_fuzzy_matching",
    "min_confidence_score",
    "max_coordinate_distance",
    "conflict_detection_enabled",
    "default_match_confidence",
    "use_blocking_index",
]
BOOLEAN_KEYS = {"enable_fuzzy_matching", "conflict_detection_enabled", "use_blocking_index"}
WEIGHT_KEYS = ("source_count", "confidence", "conflicts")


@dataclass
class MergeConfig:
    coordinate_tolerance_meters: float = DEFAULT_CONFIG["coordinate_tolerance_meters"]
    address_fuzzy_threshold: float = DEFAULT_CONFIG["address_fuzzy_threshold"]
    price_conflict_threshold: float = DEFAULT_CONFIG["price_conflict_threshold"]
    enable_fuzzy_matching: bool = DEFAULT_CONFIG["enable_fuzzy_matching"]
    min_confidence_score: float = DEFAULT_CONFIG["min_confidence_score"]
    max_coordinate_distance: float = DEFAULT_CONFIG["max_coordinate_distance"]
    conflict_detection_enabled: bool = DEFAULT_CONFIG["conflict_detection_enabled"]
    field_conflict_thresholds: Dict[str, float] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_CONFIG["field_conflict_thresholds"])
    )
    quality_score_weights: Dict[str, float] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_CONFIG["quality_score_weights"])
    )
    default_match_confidence: float = DEFAULT_CONFIG["default_match_confidence"]
    use_blocking_index: bool = DEFAULT_CONFIG["use_blocking_index"]

    def conflict_threshold(self, field_name: str) -> float:
        return self.field_conflict_thresholds.get(field_name, self.price_conflict_threshold)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _in_unit_range(value: Any) -> bool:
    return _is_number(value) and 0 <= value <= 1


def _valid_field_thresholds(value: Any) -> bool:
    return isinstance(value, Mapping) and all(_in_unit_range(v) for v in value.values())


def _valid_weights(value: Any) -> bool:
    if not isinstance(value, Mapping):
        return False
    if any(not _is_number(value.get(key, 0)) for key in WEIGHT_KEYS):
        return False
    total = sum(value.get(key, 0) for key in WEIGHT_KEYS)
    return abs(total - 1.0) <= 0.01


_VALIDATORS: List[Tuple[str, Callable[[Any], bool], str]] = [
    (
        "coordinate_tolerance_meters",
        lambda v: _is_number(v) and 0 < v <= 1000,
        "coordinate_tolerance_meters must be between 0 and 1000",
    ),
    ("address_fuzzy_threshold", _in_unit_range, "address_fuzzy_threshold must be between 0.0 and 1.0"),
    ("price_conflict_threshold", _in_unit_range, "price_conflict_threshold must be between 0.0 and 1.0"),
    ("min_confidence_score", _in_unit_range, "min_confidence_score must be between 0.0 and 1.0"),
    (
        "max_coordinate_distance",
        lambda v: _is_number(v) and v > 0,
        "max_coordinate_distance must be greater than 0",
    ),
    ("enable_fuzzy_matching", lambda v: isinstance(v, bool), "enable_fuzzy_matching must be a boolean"),
    (
        "conflict_detection_enabled",
        lambda v: isinstance(v, bool),
        "conflict_detection_enabled must be a boolean",
    ),
    (
        "field_conflict_thresholds",
        _valid_field_thresholds,
        "field_conflict_thresholds values must be between 0.0 and 1.0",
    ),
    ("quality_score_weights", _valid_weights, "quality_score_weights must sum to 1.0"),
    ("default_match_confidence", _in_unit_range, "default_match_confidence must be between 0.0 and 1.0"),
    ("use_blocking_index", lambda v: isinstance(v, bool), "use_blocking_index must be a boolean"),
]


def _invalid_keys(values: Mapping[str, Any]) -> List[Tuple[str, str]]:
    return [(key, message) for key, check, message in _VALIDATORS if not check(values.get(key))]


def validate_config(config: Any) -> List[str]:
    """Return the list of validation errors; empty when the config is usable."""
    values = config.to_dict() if isinstance(config, MergeConfig) else dict(config)
    return [message for _, message in _invalid_keys(values)]


def _parse_env_value(key: str, raw: str) -> Any:
    if key in BOOLEAN_KEYS:
        return raw.strip().lower() == "true"
    return float(raw)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in ENV_KEYS:
        env_name = f"{ENV_PREFIX}{key.upper()}"
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = _parse_env_value(key, raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: not a number.", env_name, raw)
    return overrides


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Merge config file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Merge config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Merge config file {path} must contain a JSON object.")
    return dict(payload.get("config", payload))


def _apply(values: Dict[str, Any], layer: Mapping[str, Any], origin: str) -> None:
    for key, value in layer.items():
        if key not in DEFAULT_CONFIG:
            logger.warning("Unknown merge config key %r from %s; ignoring.", key, origin)
            continue
        if value is None:
            continue
        if isinstance(DEFAULT_CONFIG[key], dict) and isinstance(value, Mapping):
            merged = dict(values[key])
            merged.update(value)
            values[key] = merged
        else:
            values[key] = value


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> MergeConfig:
    values = copy.deepcopy(DEFAULT_CONFIG)
    if path is not None:
        _apply(values, _read_config_file(Path(path)), str(path))
    _apply(values, _env_overrides(os.environ if environ is None else environ), "environment")
    if overrides:
        _apply(values, overrides, "overrides")

    for key, message in _invalid_keys(values):
        logger.warning("Invalid merge config (%s); using default %r.", message, DEFAULT_CONFIG[key])
        values[key] = copy.deepcopy(DEFAULT_CONFIG[key])

    for key in ("coordinate_tolerance_meters", "max_coordinate_distance"):
        values[key] = float(values[key])
    return MergeConfig(**values)


def write_default_config(path: Path, overwrite: bool = False) -> Path:
    path = Path(path)
    if path.exists() and not overwrite:
        raise FileExistsError(f"Merge config file already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"config": copy.deepcopy(DEFAULT_CONFIG), "descriptions": dict(CONFIG_DESCRIPTIONS)}
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
    logger.info("Wrote default merge configuration to %s", path)
    return path
