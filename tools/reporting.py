"""
Merge reporting utilities.

Summaries behind the runner's --stats, --conflicts and --dry-run views: recent
run statistics, the conflict ledger across merged listings, and source pool
sizes before a merge.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from listing_schema import SOURCES, MergedListing, SourceRecord, clean_zip5
from pipelines.merge_config import MergeConfig
from pipelines.normalizer import normalize_address

logger = logging.getLogger(__name__)

STATISTICS_TABLE_COLUMNS = [
    "run_date",
    "total_processed",
    "total_merged",
    "exact_matches",
    "fuzzy_matches",
    "coordinate_matches",
    "conflicts_detected",
    "processing_time_seconds",
]
STATISTICS_HEADERS = {
    "run_date": "Date",
    "total_processed": "Processed",
    "total_merged": "Merged",
    "exact_matches": "Exact",
    "fuzzy_matches": "Fuzzy",
    "coordinate_matches": "Coord",
    "conflicts_detected": "Conflicts",
    "processing_time_seconds": "Time(s)",
}


@dataclass
class ConflictSummary:
    total_listings: int = 0
    listings_with_conflicts: int = 0
    price_conflicts: int = 0
    size_conflicts: int = 0
    avg_conflicts_per_listing: float = 0.0
    conflict_types: Dict[str, int] = field(default_factory=dict)

    def share(self, count: int) -> float:
        if self.total_listings <= 0:
            return 0.0
        return count / self.total_listings


def summarize_conflicts(listings: Iterable[MergedListing], zip5: Optional[str] = None) -> ConflictSummary:
    rows = [listing for listing in listings if not zip5 or listing.zip5 == clean_zip5(zip5)]
    summary = ConflictSummary(total_listings=len(rows))
    if not rows:
        return summary
    counts = np.array([listing.conflict_count for listing in rows], dtype=float)
    summary.listings_with_conflicts = int((counts > 0).sum())
    summary.price_conflicts = sum(1 for listing in rows if listing.has_price_conflicts)
    summary.size_conflicts = sum(1 for listing in rows if listing.has_size_conflicts)
    summary.avg_conflicts_per_listing = float(counts.mean())
    types: Counter = Counter()
    for listing in rows:
        types.update((listing.data_conflicts or {}).keys())
    summary.conflict_types = dict(sorted(types.items(), key=lambda item: (-item[1], item[0])))
    return summary


def statistics_window(days: int, today: Optional[date] = None) -> tuple:
    end = today or datetime.now(timezone.utc).date()
    start = end - timedelta(days=days)
    return start.isoformat(), end.isoformat()


def statistics_frame(rows: Sequence[Mapping[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(rows))
    if df.empty:
        return pd.DataFrame(columns=STATISTICS_TABLE_COLUMNS)
    for column in STATISTICS_TABLE_COLUMNS:
        if column not in df.columns:
            df[column] = 0
    df = df[STATISTICS_TABLE_COLUMNS].copy()
    numeric = [column for column in STATISTICS_TABLE_COLUMNS if column != "run_date"]
    df[numeric] = df[numeric].apply(pd.to_numeric, errors="coerce").fillna(0)
    return df.sort_values("run_date", ascending=False).reset_index(drop=True)


def summarize_statistics(rows: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    df = statistics_frame(rows)
    processed = int(df["total_processed"].sum()) if not df.empty else 0
    merged = int(df["total_merged"].sum()) if not df.empty else 0
    return {
        "runs": int(len(df)),
        "total_processed": processed,
        "total_merged": merged,
        "total_conflicts": int(df["conflicts_detected"].sum()) if not df.empty else 0,
        "total_processing_time_seconds": float(df["processing_time_seconds"].sum()) if not df.empty else 0.0,
        "merge_rate": (merged / processed) if processed > 0 else None,
    }


def summarize_sources(pools: Mapping[str, Sequence[SourceRecord]]) -> Dict[str, Any]:
    """Pool sizes and the number of distinct normalized addresses, for dry runs."""
    counts = {source: len(pools.get(source, [])) for source in SOURCES}
    addresses = set()
    for source in SOURCES:
        for record in pools.get(source, []):
            key = normalize_address(record.address)
            if key:
                addresses.add(key)
    return {
        "counts": counts,
        "total": sum(counts.values()),
        "estimated_unique_addresses": len(addresses),
    }


def format_statistics_table(rows: Sequence[Mapping[str, Any]]) -> str:
    df = statistics_frame(rows)
    if df.empty:
        return "No merge statistics found."
    display = df.rename(columns=STATISTICS_HEADERS)
    for column in display.columns[1:-1]:
        display[column] = display[column].astype(int)
    return display.to_string(index=False)


def print_section(title: str, lines: Iterable[str]) -> None:
    print(f"\n{title}")
    print("-" * len(title))
    for line in lines:
        print(line)


def print_statistics(rows: Sequence[Mapping[str, Any]], days: int) -> None:
    print_section(f"Recent merge statistics (last {days} days)", [format_statistics_table(rows)])
    if not rows:
        return
    totals = summarize_statistics(rows)
    merge_rate = totals["merge_rate"]
    print_section(
        "Summary",
        [
            f"Total processed: {totals['total_processed']:,}",
            f"Total merged: {totals['total_merged']:,}",
            f"Total conflicts: {totals['total_conflicts']:,}",
            f"Total processing time: {totals['total_processing_time_seconds']:.1f} seconds",
            f"Average merge rate: {merge_rate:.1%}" if merge_rate is not None else "Average merge rate: n/a",
        ],
    )


def print_conflicts(summary: ConflictSummary, zip5: Optional[str] = None) -> None:
    title = f"Conflict analysis for zip code {zip5}" if zip5 else "Conflict analysis"
    print_section(
        title,
        [
            f"Total listings: {summary.total_listings:,}",
            f"Listings with conflicts: {summary.listings_with_conflicts:,} "
            f"({summary.share(summary.listings_with_conflicts):.1%})",
            f"Price conflicts: {summary.price_conflicts:,}",
            f"Size conflicts: {summary.size_conflicts:,}",
            f"Average conflicts per listing: {summary.avg_conflicts_per_listing:.2f}",
        ],
    )
    if not summary.conflict_types:
        print_section("Conflict types", ["No conflicts detected."])
        return
    print_section(
        "Conflict types",
        [f"  {name}: {count} ({summary.share(count):.1%})" for name, count in summary.conflict_types.items()],
    )


def print_dry_run(summary: Mapping[str, Any], config: MergeConfig, zip5: Optional[str] = None) -> None:
    title = f"Dry run for zip code {zip5}" if zip5 else "Dry run"
    lines = [f"{source} listings: {count:,}" for source, count in summary["counts"].items()]
    lines.append(f"Total source listings: {summary['total']:,}")
    lines.append(f"Estimated unique addresses: {summary['estimated_unique_addresses']:,}")
    print_section(title, lines)
    print_section(
        "Configuration to be used",
        [
            f"Coordinate tolerance: {config.coordinate_tolerance_meters:g}m",
            f"Fuzzy matching: {'enabled' if config.enable_fuzzy_matching else 'disabled'}",
            f"Fuzzy threshold: {config.address_fuzzy_threshold}",
            f"Price conflict threshold: {config.price_conflict_threshold:.1%}",
            f"Min confidence score: {config.min_confidence_score}",
            f"Conflict detection: {'enabled' if config.conflict_detection_enabled else 'disabled'}",
            f"Blocking index: {'enabled' if config.use_blocking_index else 'disabled'}",
        ],
    )


def run_recommendations(results: Mapping[str, Any]) -> List[str]:
    tips: List[str] = []
    if results.get("errors", 0) > 0:
        tips.append(f"{results['errors']} errors occurred during processing; check the log for details.")
    if results.get("no_matches", 0) > results.get("total_merged", 0):
        tips.append(
            "Many listings found no cross-source match; consider adjusting the fuzzy threshold "
            "or coordinate tolerance."
        )
    if results.get("conflicts_detected", 0) > 0:
        tips.append(
            f"{results['conflicts_detected']} data conflicts were resolved by averaging; "
            "run with --conflicts for details."
        )
    return tips
