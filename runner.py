import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipelines.change_detector import DEFAULT_CHANGE_REASON
from pipelines.merge_config import load_config, write_default_config
from pipelines.merge_listings import process_all_listings
from pipelines.storage import ParquetListingStore
from tools.reporting import (
    print_conflicts,
    print_dry_run,
    print_statistics,
    run_recommendations,
    statistics_window,
    summarize_conflicts,
    summarize_sources,
)


DEFAULT_DATA_DIR = Path("data")
DEFAULT_CONFIG_PATH = Path("merge_config.json")
DEFAULT_STATS_DAYS = 7


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def load_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge property listings from zillow, redfin and realtor sources.")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DEFAULT_DATA_DIR,
        help="Directory holding sources/<source>_listing.{parquet,csv} and merged outputs.",
    )
    parser.add_argument("--region", "--zip", dest="region", help="Process only listings for this zip code.")
    parser.add_argument("--config", type=Path, help="JSON merge configuration file.")
    parser.add_argument("--workers", type=positive_int, default=1, help="Number of concurrent merge workers.")
    parser.add_argument("--change-reason", default=DEFAULT_CHANGE_REASON, help="Reason stamped on updated listings.")
    parser.add_argument("--stats", action="store_true", help="Show recent merge statistics only.")
    parser.add_argument("--days", type=int, default=DEFAULT_STATS_DAYS, help="Days of statistics for --stats.")
    parser.add_argument("--conflicts", action="store_true", help="Show conflict analysis only.")
    parser.add_argument("--init-config", action="store_true", help="Write a default configuration file and exit.")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be processed without writing.")
    parser.add_argument("--publish", help="Comma-separated listing ids to publish.")
    parser.add_argument("--unpublish", help="Comma-separated listing ids to unpublish.")
    parser.add_argument("--coordinate-tolerance", type=float, help="Override coordinate_tolerance_meters.")
    parser.add_argument("--fuzzy-threshold", type=float, help="Override address_fuzzy_threshold.")
    parser.add_argument("--disable-fuzzy", action="store_true", help="Disable fuzzy address matching.")
    parser.add_argument("--use-blocking-index", action="store_true", help="Score only nearby candidates.")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.coordinate_tolerance is not None:
        overrides["coordinate_tolerance_meters"] = args.coordinate_tolerance
    if args.fuzzy_threshold is not None:
        overrides["address_fuzzy_threshold"] = args.fuzzy_threshold
    if args.disable_fuzzy:
        overrides["enable_fuzzy_matching"] = False
    if args.use_blocking_index:
        overrides["use_blocking_index"] = True
    return overrides


def split_ids(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def main(argv: Optional[List[str]] = None) -> int:
    args = load_arguments(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s - %(levelname)s - %(message)s")

    if args.init_config:
        path = write_default_config(args.config or DEFAULT_CONFIG_PATH)
        print(path.read_text(encoding="utf-8"))
        return 0

    config = load_config(args.config, overrides=config_overrides(args))
    store = ParquetListingStore(args.data_dir)

    if args.stats:
        start, end = statistics_window(args.days)
        print_statistics(store.get_statistics(start, end), args.days)
        return 0

    if args.conflicts:
        print_conflicts(summarize_conflicts(store.get_merged_listings(), args.region), args.region)
        return 0

    if args.dry_run:
        print_dry_run(summarize_sources(store.load_source_records(args.region)), config, args.region)
        return 0

    if args.publish or args.unpublish:
        if args.publish:
            store.update_publication_status(split_ids(args.publish), True)
        if args.unpublish:
            store.update_publication_status(split_ids(args.unpublish), False)
        store.commit()
        return 0

    results = process_all_listings(
        store,
        config,
        region=args.region,
        workers=args.workers,
        change_reason=args.change_reason,
        show_progress=not args.no_progress,
    )
    summary = results.to_dict()
    print(json.dumps(summary, indent=2, sort_keys=True))
    for tip in run_recommendations(summary):
        logging.warning(tip)
    return 1 if results.errors and not results.total_merged else 0


if __name__ == "__main__":
    sys.exit(main())
