"""Tests for the tiered match evaluator and the blocking index."""

import pytest

from pipelines.matching import (
    CandidateIndex,
    build_matching_report,
    evaluate_candidate,
    find_best_match,
    find_matches,
    geo_cell,
    neighbors,
)
from pipelines.merge_config import MergeConfig


class TestEvaluateCandidate:
    """Each tier of the match decision, in order of precedence."""

    def test_exact_address_without_coordinates(self, make_record, config):
        target = make_record("zillow", address="123 Main Street", lat=None, lon=None)
        candidate = make_record("redfin", address="123 main st", lat=None, lon=None)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "address_exact"
        assert match.confidence == 1.0
        assert match.overall_score == 1.0
        assert match.distance_meters is None

    def test_coordinates_within_ten_meters_win(self, make_record, config, meter_lat):
        """Seven meters apart is an exact coordinate match whatever the address."""
        target = make_record("zillow", address="1 Totally Different Rd", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="987 Elsewhere Ave", lat=40.0 + 7 * meter_lat, lon=-75.0)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "coordinates_exact"
        assert match.confidence == 0.95
        assert match.distance_meters == pytest.approx(7, abs=0.1)

    def test_diagonal_offset_of_seven_meters(self, make_record, config):
        target = make_record("zillow", address="5 North Rd", lat=40.0, lon=-74.0)
        candidate = make_record("realtor", street="77 South Ave", latitude=40.00005, longitude=-74.00005)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "coordinates_exact"
        assert match.confidence == 0.95
        assert 6 < match.distance_meters < 8

    def test_hybrid_within_tolerance(self, make_record, config, meter_lat):
        target = make_record("zillow", address="123 Main Street", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="123 Main St", lat=40.0 + 30 * meter_lat, lon=-75.0)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "hybrid"
        assert match.confidence == 1.0
        assert match.overall_score == pytest.approx(0.6 * 1.0 + 0.4 * 0.7, abs=1e-3)

    def test_exact_address_far_apart_is_suspicious(self, make_record, config, meter_lat):
        target = make_record("zillow", address="123 Main Street", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="123 Main St", lat=40.0 + 1000 * meter_lat, lon=-75.0)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "address_exact_suspicious"
        assert match.confidence == 0.7
        assert match.overall_score == 0.7

    def test_fuzzy_address(self, make_record, config):
        target = make_record("zillow", address="1234 Oak Avenue", lat=None, lon=None)
        candidate = make_record("redfin", address="1234 Oak Avenu", lat=None, lon=None)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "address_fuzzy"
        assert match.confidence == pytest.approx(1 - 2 / 14)

    def test_fuzzy_address_far_apart_is_rejected(self, make_record, config, meter_lat):
        target = make_record("zillow", address="1234 Oak Avenue", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="1234 Oak Avenu", lat=40.0 + 1000 * meter_lat, lon=-75.0)

        assert evaluate_candidate(target, candidate, config) is None

    def test_fuzzy_disabled(self, make_record):
        config = MergeConfig(enable_fuzzy_matching=False)
        target = make_record("zillow", address="1234 Oak Avenue", lat=None, lon=None)
        candidate = make_record("redfin", address="1234 Oak Avenu", lat=None, lon=None)

        assert evaluate_candidate(target, candidate, config) is None

    def test_coordinates_only(self, make_record, config, meter_lat):
        target = make_record("zillow", address="1 A St", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="999 Zebra Blvd", lat=40.0 + 15 * meter_lat, lon=-75.0)

        match = evaluate_candidate(target, candidate, config)

        assert match.matching_method == "coordinates"
        assert match.overall_score == pytest.approx(0.85, abs=1e-3)

    def test_coordinates_only_needs_high_similarity(self, make_record, config, meter_lat):
        target = make_record("zillow", address="1 A St", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="999 Zebra Blvd", lat=40.0 + 40 * meter_lat, lon=-75.0)

        assert evaluate_candidate(target, candidate, config) is None

    def test_min_confidence_filters_matches(self, make_record, meter_lat):
        config = MergeConfig(min_confidence_score=0.9)
        target = make_record("zillow", address="123 Main Street", lat=40.0, lon=-75.0)
        candidate = make_record("redfin", address="123 Main St", lat=40.0 + 1000 * meter_lat, lon=-75.0)

        assert evaluate_candidate(target, candidate, config) is None

    def test_candidate_without_address_or_coordinates(self, make_record, config):
        target = make_record("zillow")
        candidate = make_record("redfin", address="", lat=None, lon=None)

        assert evaluate_candidate(target, candidate, config) is None

    def test_zero_coordinates_are_usable(self, make_record, config):
        target = make_record("zillow", address="1 A St", lat=0.0, lon=0.0)
        candidate = make_record("redfin", address="2 B St", lat=0.0, lon=0.0)

        assert evaluate_candidate(target, candidate, config).matching_method == "coordinates_exact"


class TestFindMatches:
    def test_ordering_is_score_then_position(self, make_record, config):
        target = make_record("zillow", address="1234 Oak Avenue", lat=None, lon=None)
        pool = [
            make_record("redfin", redfin_id="fuzzy", address="1234 Oak Avenu", lat=None, lon=None),
            make_record("redfin", redfin_id="first", address="1234 Oak Ave", lat=None, lon=None),
            make_record("redfin", redfin_id="second", address="1234 Oak Avenue", lat=None, lon=None),
        ]

        matches = find_matches(target, pool, config)

        assert [match.position for match in matches] == [1, 2, 0]
        assert find_best_match(target, pool, config).candidate.source_id == "first"

    def test_no_match(self, make_record, config):
        target = make_record("zillow", address="1 A St", lat=None, lon=None)
        pool = [make_record("redfin", address="999 Zebra Blvd", lat=None, lon=None)]

        assert find_matches(target, pool, config) == []
        assert find_best_match(target, pool, config) is None

    def test_matching_report(self, make_record, config):
        target = make_record("zillow", address="123 Main Street Apt 4")
        pool = [make_record("redfin", address="123 Main St Unit 4")]

        report = build_matching_report(target, find_matches(target, pool, config), config)

        assert report["target"]["normalized_address"] == "123 main st unit 4"
        assert report["target"]["components"]["unit"] == "4"
        assert report["target"]["coordinates"]["valid"] is True
        assert report["total_candidates"] == 1
        assert report["best_match"]["method"] == "coordinates_exact"
        assert report["config_used"]["coordinate_tolerance_meters"] == 50.0


class TestCandidateIndex:
    def test_neighbors(self):
        cells = neighbors(10, 20)
        assert len(cells) == 9
        assert (9, 19) in cells and (11, 21) in cells
        assert len(neighbors(0, 0, ring_lat=2, ring_lng=3)) == 5 * 7

    def test_geo_cell_floors_negative_longitudes(self):
        assert geo_cell(40.0005, -75.0005) == (40000, -75001)

    def test_best_match_agrees_with_full_scan(self, make_record, config, meter_lat):
        pool = [
            make_record(
                "redfin",
                redfin_id=f"r-{i}",
                address=f"{100 + i} Elm Street",
                lat=40.0 + i * 0.0005,
                lon=-75.0,
            )
            for i in range(12)
        ]
        pool.append(make_record("redfin", redfin_id="r-far", address="104 Elm St", lat=41.0, lon=-75.0))
        index = CandidateIndex.for_config(pool, config)

        for i in range(12):
            target = make_record(
                "zillow",
                address=f"{100 + i} Elm St",
                lat=40.0 + i * 0.0005 + 5 * meter_lat,
                lon=-75.0,
            )
            full = find_best_match(target, pool, config)
            blocked = find_best_match(target, pool, config, index=index)
            assert blocked.candidate.source_id == full.candidate.source_id
            assert blocked.matching_method == full.matching_method

    def test_exact_address_reachable_without_coordinates(self, make_record, config):
        pool = [make_record("redfin", redfin_id="r-x", address="55 Birch Lane", lat=None, lon=None)]
        index = CandidateIndex.for_config(pool, config)
        target = make_record("zillow", address="55 Birch Ln", lat=40.0, lon=-75.0)

        positions = [position for position, _ in index.candidates_for(target)]

        assert positions == [0]
