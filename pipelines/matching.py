"""Tiered match decision between a target listing and a pool of candidates."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from listing_schema import SourceRecord
from pipelines.merge_config import MergeConfig
from pipelines.normalizer import extract_address_components, normalize_address
from pipelines.similarity import (
    coordinate_distance,
    coordinate_similarity,
    text_similarity,
    validate_coordinates,
)

logger = logging.getLogger(__name__)

EXACT_COORDINATE_METERS = 10.0
EXACT_COORDINATE_CONFIDENCE = 0.95
ADDRESS_SANITY_METERS = 200.0
SUSPICIOUS_CONFIDENCE = 0.7
COORDINATE_ONLY_MIN_SIMILARITY = 0.8
HYBRID_ADDRESS_WEIGHT = 0.6
HYBRID_COORDINATE_WEIGHT = 0.4
# One grid cell spans 0.001 degrees, roughly 111 m of latitude.
CELL_DEGREES = 0.001
CELL_METERS = 111.32


@dataclass
class MatchCandidate:
    candidate: SourceRecord
    scores: Dict[str, float] = field(default_factory=dict)
    overall_score: float = 0.0
    matching_method: str = "none"
    confidence: float = 0.0
    distance_meters: Optional[float] = None
    position: int = 0

    def sort_key(self) -> Tuple[float, float, int]:
        distance = self.distance_meters if self.distance_meters is not None else math.inf
        return (-self.overall_score, distance, self.position)


@lru_cache(maxsize=65536)
def _normalized(address: str) -> str:
    return normalize_address(address)


def _address_score(target_address: str, candidate_address: str, config: MergeConfig, scores: Dict[str, float]) -> float:
    if not target_address or not candidate_address:
        return 0.0
    if target_address == candidate_address:
        scores["address_exact"] = 1.0
        return 1.0
    if not config.enable_fuzzy_matching:
        return 0.0
    similarity = text_similarity(target_address, candidate_address)
    scores["address_similarity"] = similarity
    if similarity >= config.address_fuzzy_threshold:
        return similarity
    return 0.0


def evaluate_candidate(
    target: SourceRecord,
    candidate: SourceRecord,
    config: MergeConfig,
    position: int = 0,
) -> Optional[MatchCandidate]:
    """Score one candidate against the target; None when no tier accepts it."""
    target_address = _normalized(target.address)
    candidate_address = _normalized(candidate.address)
    target_has_coords = validate_coordinates(target.lat, target.lon)
    candidate_has_coords = validate_coordinates(candidate.lat, candidate.lon)
    if not candidate_address and not candidate_has_coords:
        return None

    match = MatchCandidate(candidate=candidate, position=position)
    address_score = _address_score(target_address, candidate_address, config, match.scores)

    distance = math.inf
    coord_score = 0.0
    if target_has_coords and candidate_has_coords:
        distance = coordinate_distance(target.lat, target.lon, candidate.lat, candidate.lon)
        match.distance_meters = distance
        match.scores["coordinate_distance"] = distance
        if distance <= config.max_coordinate_distance:
            coord_score = coordinate_similarity(distance, config.max_coordinate_distance)
            match.scores["coordinate_similarity"] = coord_score

    address_plausible = distance <= ADDRESS_SANITY_METERS or not target_has_coords or not candidate_has_coords

    if distance <= EXACT_COORDINATE_METERS:
        method, confidence, overall = "coordinates_exact", EXACT_COORDINATE_CONFIDENCE, EXACT_COORDINATE_CONFIDENCE
    elif distance <= config.coordinate_tolerance_meters and address_score > 0:
        method = "hybrid"
        confidence = max(address_score, coord_score)
        overall = address_score * HYBRID_ADDRESS_WEIGHT + coord_score * HYBRID_COORDINATE_WEIGHT
    elif address_score >= 1.0:
        if address_plausible:
            method, confidence, overall = "address_exact", address_score, address_score
        else:
            method, confidence, overall = "address_exact_suspicious", SUSPICIOUS_CONFIDENCE, SUSPICIOUS_CONFIDENCE
    elif address_score > 0 and address_score >= config.address_fuzzy_threshold:
        if not address_plausible:
            return None
        method, confidence, overall = "address_fuzzy", address_score, address_score
    elif distance <= config.coordinate_tolerance_meters and coord_score >= COORDINATE_ONLY_MIN_SIMILARITY:
        method, confidence, overall = "coordinates", coord_score, coord_score
    else:
        return None

    if overall < config.min_confidence_score:
        return None
    match.matching_method = method
    match.confidence = confidence
    match.overall_score = overall
    return match


def find_matches(
    target: SourceRecord,
    candidates: Sequence[SourceRecord],
    config: MergeConfig,
    index: Optional["CandidateIndex"] = None,
) -> List[MatchCandidate]:
    """Return accepted candidates best-first.

    Ties on overall score fall back to the shorter distance, then the
    candidate's position in the pool, so results never depend on thread timing.
    """
    if index is not None:
        positioned: Iterable[Tuple[int, SourceRecord]] = index.candidates_for(target)
    else:
        positioned = enumerate(candidates)

    matches: List[MatchCandidate] = []
    for position, candidate in positioned:
        match = evaluate_candidate(target, candidate, config, position)
        if match is not None:
            matches.append(match)
    matches.sort(key=MatchCandidate.sort_key)
    return matches


def find_best_match(
    target: SourceRecord,
    candidates: Sequence[SourceRecord],
    config: MergeConfig,
    index: Optional["CandidateIndex"] = None,
) -> Optional[MatchCandidate]:
    matches = find_matches(target, candidates, config, index=index)
    if not matches:
        return None
    best = matches[0]
    if best.overall_score < config.min_confidence_score:
        return None
    return best


def build_matching_report(target: SourceRecord, matches: Sequence[MatchCandidate], config: MergeConfig) -> Dict[str, Any]:
    """Describe how a target was matched, for debugging a single listing."""

    def describe(match: MatchCandidate) -> Dict[str, Any]:
        return {
            "candidate_source": match.candidate.source,
            "candidate_id": match.candidate.source_id,
            "candidate_address": match.candidate.address,
            "matching_method": match.matching_method,
            "confidence": match.confidence,
            "overall_score": match.overall_score,
            "distance_meters": match.distance_meters,
            "scores": dict(match.scores),
        }

    best = None
    if matches:
        best = {
            "candidate_source": matches[0].candidate.source,
            "candidate_id": matches[0].candidate.source_id,
            "confidence": matches[0].confidence,
            "method": matches[0].matching_method,
        }
    return {
        "target": {
            "source": target.source,
            "source_id": target.source_id,
            "address": target.address,
            "normalized_address": normalize_address(target.address),
            "components": extract_address_components(target.address),
            "coordinates": {
                "lat": target.lat,
                "lon": target.lon,
                "valid": validate_coordinates(target.lat, target.lon),
            },
        },
        "config_used": config.to_dict(),
        "total_candidates": len(matches),
        "matches": [describe(match) for match in matches],
        "best_match": best,
    }


def geo_cell(lat: float, lon: float) -> Tuple[int, int]:
    return math.floor(lat / CELL_DEGREES), math.floor(lon / CELL_DEGREES)


def neighbors(cell_lat: int, cell_lng: int, ring_lat: int = 1, ring_lng: int = 1) -> List[Tuple[int, int]]:
    """Return the (2*ring+1)^2 neighbourhood of geo cells."""
    return [
        (cell_lat + d_lat, cell_lng + d_lng)
        for d_lat in range(-ring_lat, ring_lat + 1)
        for d_lng in range(-ring_lng, ring_lng + 1)
    ]


class CandidateIndex:
    """Blocking index over one candidate pool.

    A candidate is scored only if it shares a nearby geo cell, the exact
    normalized address, or the house number with the target. Positions are the
    candidate's index in the original pool so ordering matches a full scan.
    """

    def __init__(self, pool: Sequence[SourceRecord], radius_meters: float):
        self.pool = list(pool)
        self.radius_meters = max(float(radius_meters), EXACT_COORDINATE_METERS)
        self._cells: Dict[Tuple[int, int], List[int]] = defaultdict(list)
        self._addresses: Dict[str, List[int]] = defaultdict(list)
        self._numbers: Dict[str, List[int]] = defaultdict(list)
        for position, record in enumerate(self.pool):
            if validate_coordinates(record.lat, record.lon):
                self._cells[geo_cell(float(record.lat), float(record.lon))].append(position)
            address = _normalized(record.address)
            if address:
                self._addresses[address].append(position)
                number = extract_address_components(address)["street_number"]
                if number:
                    self._numbers[number].append(position)

    @classmethod
    def for_config(cls, pool: Sequence[SourceRecord], config: MergeConfig) -> "CandidateIndex":
        # Fuzzy address matches are accepted up to the sanity distance.
        radius = max(config.coordinate_tolerance_meters, EXACT_COORDINATE_METERS)
        if config.enable_fuzzy_matching:
            radius = max(radius, ADDRESS_SANITY_METERS)
        return cls(pool, radius)

    def _rings(self, lat: float) -> Tuple[int, int]:
        ring_lat = max(1, math.ceil(self.radius_meters / CELL_METERS))
        lon_cell_meters = CELL_METERS * max(math.cos(math.radians(lat)), 0.01)
        ring_lng = max(1, math.ceil(self.radius_meters / lon_cell_meters))
        return ring_lat, ring_lng

    def candidates_for(self, target: SourceRecord) -> List[Tuple[int, SourceRecord]]:
        positions = set()
        if validate_coordinates(target.lat, target.lon):
            lat, lon = float(target.lat), float(target.lon)
            ring_lat, ring_lng = self._rings(lat)
            for cell in neighbors(*geo_cell(lat, lon), ring_lat=ring_lat, ring_lng=ring_lng):
                positions.update(self._cells.get(cell, ()))
        address = _normalized(target.address)
        if address:
            positions.update(self._addresses.get(address, ()))
            number = extract_address_components(address)["street_number"]
            if number:
                positions.update(self._numbers.get(number, ()))
        return [(position, self.pool[position]) for position in sorted(positions)]
