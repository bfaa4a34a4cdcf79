"""Tests for statistics and conflict reporting."""

from datetime import date

from listing_schema import MergedListing
from tools.reporting import (
    format_statistics_table,
    run_recommendations,
    statistics_window,
    summarize_conflicts,
    summarize_sources,
    summarize_statistics,
)


def listing(address, zip5, conflicts):
    return MergedListing(
        address=address,
        zip5=zip5,
        data_conflicts={name: {"resolution_method": "average"} for name in conflicts},
        conflict_count=len(conflicts),
        has_price_conflicts="price" in conflicts,
        has_size_conflicts=bool({"sqft", "bedrooms", "bathrooms", "lot_size"} & set(conflicts)),
    )


STATS = [
    {"run_date": "2026-10-18", "total_processed": 100, "total_merged": 60, "conflicts_detected": 4,
     "processing_time_seconds": 1.5},
    {"run_date": "2026-10-19", "total_processed": 50, "total_merged": 30, "conflicts_detected": 1,
     "processing_time_seconds": 0.5},
]


class TestConflictSummary:
    def test_counts(self):
        listings = [
            listing("1 a st", "16146", ["price", "sqft"]),
            listing("2 b st", "16146", ["price"]),
            listing("3 c st", "16146", []),
            listing("4 d st", "16148", ["bedrooms"]),
        ]

        summary = summarize_conflicts(listings, "16146")

        assert summary.total_listings == 3
        assert summary.listings_with_conflicts == 2
        assert summary.price_conflicts == 2
        assert summary.size_conflicts == 1
        assert summary.avg_conflicts_per_listing == 1.0
        assert list(summary.conflict_types.items()) == [("price", 2), ("sqft", 1)]
        assert summary.share(2) == 2 / 3

    def test_empty(self):
        summary = summarize_conflicts([])
        assert summary.total_listings == 0
        assert summary.share(1) == 0.0


class TestStatistics:
    def test_window(self):
        assert statistics_window(7, date(2026, 10, 19)) == ("2026-10-12", "2026-10-19")

    def test_summary(self):
        totals = summarize_statistics(STATS)
        assert totals["runs"] == 2
        assert totals["total_processed"] == 150
        assert totals["total_merged"] == 90
        assert totals["total_conflicts"] == 5
        assert totals["merge_rate"] == 0.6

    def test_empty_summary(self):
        assert summarize_statistics([])["merge_rate"] is None
        assert format_statistics_table([]) == "No merge statistics found."

    def test_table_newest_first(self):
        table = format_statistics_table(STATS)
        lines = table.splitlines()
        assert "Processed" in lines[0]
        assert lines[1].strip().startswith("2026-10-19")


class TestSourcesAndTips:
    def test_summarize_sources(self, make_record):
        pools = {
            "zillow": [make_record("zillow"), make_record("zillow", address="9 Pine Rd")],
            "redfin": [make_record("redfin", address="123 main street")],
        }

        summary = summarize_sources(pools)

        assert summary["counts"] == {"zillow": 2, "redfin": 1, "realtor": 0}
        assert summary["total"] == 3
        assert summary["estimated_unique_addresses"] == 2

    def test_recommendations(self):
        tips = run_recommendations({"errors": 2, "no_matches": 5, "total_merged": 3, "conflicts_detected": 1})
        assert len(tips) == 3
        assert run_recommendations({"errors": 0, "no_matches": 0, "total_merged": 3}) == []
