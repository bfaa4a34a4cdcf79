"""Address normalization used as the cross-source matching key."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

ABBREVIATIONS: Dict[str, str] = {
    "street": "st",
    "avenue": "ave",
    "boulevard": "blvd",
    "drive": "dr",
    "road": "rd",
    "lane": "ln",
    "court": "ct",
    "circle": "cir",
    "place": "pl",
    "terrace": "ter",
    "parkway": "pkwy",
    "highway": "hwy",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "northeast": "ne",
    "northwest": "nw",
    "southeast": "se",
    "southwest": "sw",
    "apartment": "apt",
    "suite": "ste",
}

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_RE = re.compile(r"[.,#]")
_ABBREVIATION_RE = re.compile(r"\b(" + "|".join(sorted(ABBREVIATIONS, key=len, reverse=True)) + r")\b")
# The keyword must end on a word boundary or run straight into digits ("apt4b").
_UNIT_RE = re.compile(r"\b(?:apt|apartment|unit|ste|suite)(?:\s+|(?=\d))(\w+)")
_STREET_NUMBER_RE = re.compile(r"^(\d+[a-z]?)\s+")
_UNIT_TOKEN_RE = re.compile(r"\bunit\s+(\w+)")


def clean_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value.strip())


def normalize_address(address: Any) -> str:
    """Return the canonical matching key for a free-text street address.

    Long and short street-type forms converge ("Street" and "St." both become
    "st") and apartment/suite designators are rewritten to "unit <token>".
    Non-string or blank input yields an empty string. The result is stable
    under re-normalization.
    """
    if not isinstance(address, str):
        return ""
    normalized = clean_whitespace(address.lower())
    if not normalized:
        return ""
    normalized = _PUNCTUATION_RE.sub("", normalized)
    normalized = _ABBREVIATION_RE.sub(lambda match: ABBREVIATIONS[match.group(1)], normalized)
    normalized = _UNIT_RE.sub(r"unit \1", normalized)
    return clean_whitespace(normalized)


def extract_address_components(address: Any) -> Dict[str, str]:
    """Split a normalized address into street number, street name and unit."""
    normalized = normalize_address(address)
    components = {"full": normalized, "street_number": "", "street_name": "", "unit": ""}
    if not normalized:
        return components

    number_match = _STREET_NUMBER_RE.match(normalized)
    street_name = normalized
    if number_match:
        components["street_number"] = number_match.group(1)
        street_name = street_name[number_match.end():]

    unit_match = _UNIT_TOKEN_RE.search(street_name)
    if unit_match:
        components["unit"] = unit_match.group(1)
        street_name = street_name[: unit_match.start()]

    components["street_name"] = street_name.strip()
    return components


def parse_number(value: Any) -> Optional[float]:
    """Parse provider numerics such as "$1,250,000" or 3.5; None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        clean = str(value).strip().replace("$", "").replace(",", "").replace("\xa0", "")
        if not clean:
            return None
        try:
            number = float(clean)
        except ValueError:
            return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number
