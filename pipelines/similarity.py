"""Textual and geographic similarity primitives."""

from __future__ import annotations

import math
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein

from pipelines.normalizer import normalize_address, parse_number

EARTH_RADIUS_M = 6_371_000


def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a or "", b or "")


def text_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Return 1 - edit_distance / longest_length, in [0, 1]."""
    a = a or ""
    b = b or ""
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if not a or not b:
        return 0.0
    return 1.0 - levenshtein_distance(a, b) / longest


def address_similarity(a: Any, b: Any) -> float:
    return text_similarity(normalize_address(a), normalize_address(b))


def validate_coordinates(lat: Any, lon: Any) -> bool:
    latitude = parse_number(lat)
    longitude = parse_number(lon)
    if latitude is None or longitude is None:
        return False
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return haversine distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def coordinate_distance(lat1: Any, lon1: Any, lat2: Any, lon2: Any) -> float:
    """Haversine distance, or infinity when either pair is missing or out of range."""
    if not validate_coordinates(lat1, lon1) or not validate_coordinates(lat2, lon2):
        return math.inf
    return haversine_m(parse_number(lat1), parse_number(lon1), parse_number(lat2), parse_number(lon2))


def coordinate_similarity(distance: float, max_distance: float) -> float:
    if max_distance <= 0 or distance > max_distance:
        return 0.0
    return max(0.0, 1.0 - distance / max_distance)
