"""Batch orchestration: claim addresses, match, merge and upsert every listing."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from tqdm import tqdm

from listing_schema import SOURCES, MergedListing, SourceRecord
from pipelines.change_detector import DEFAULT_CHANGE_REASON, UpsertResult, upsert_merged_listing
from pipelines.events import MergeEventLog
from pipelines.matching import CandidateIndex, MatchCandidate, find_best_match
from pipelines.merge_config import MergeConfig
from pipelines.merger import merge_property_data
from pipelines.normalizer import normalize_address
from pipelines.storage import ListingStore, StorageError

logger = logging.getLogger(__name__)

EXACT_METHODS = {"address_exact", "address_exact_suspicious"}
FUZZY_METHODS = {"address_fuzzy"}
COORDINATE_METHODS = {"coordinates", "coordinates_exact"}


@dataclass
class MergeRunResults:
    run_date: str
    total_processed: int = 0
    total_merged: int = 0
    exact_matches: int = 0
    fuzzy_matches: int = 0
    coordinate_matches: int = 0
    no_matches: int = 0
    conflicts_detected: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    duplicate_keys: int = 0
    skipped: int = 0
    errors: int = 0
    matches_by_method: Counter = field(default_factory=Counter)
    processing_time_seconds: float = 0.0
    avg_confidence_score: Optional[float] = None
    avg_quality_score: Optional[float] = None
    stopped: bool = False

    def to_statistics_row(self, region: Optional[str] = None) -> Dict[str, Any]:
        return {
            "run_date": self.run_date,
            "region": region,
            "total_processed": self.total_processed,
            "total_merged": self.total_merged,
            "exact_matches": self.exact_matches,
            "fuzzy_matches": self.fuzzy_matches,
            "coordinate_matches": self.coordinate_matches,
            "no_matches": self.no_matches,
            "conflicts_detected": self.conflicts_detected,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "duplicate_keys": self.duplicate_keys,
            "errors": self.errors,
            "matches_by_method": dict(self.matches_by_method),
            "processing_time_seconds": self.processing_time_seconds,
            "avg_confidence_score": self.avg_confidence_score,
            "avg_quality_score": self.avg_quality_score,
        }

    def to_dict(self) -> Dict[str, Any]:
        summary = self.to_statistics_row()
        summary.pop("region")
        summary["skipped"] = self.skipped
        summary["stopped"] = self.stopped
        return summary


@dataclass
class ClusterOutcome:
    position: int
    target: SourceRecord
    merged: MergedListing
    matches: Dict[str, Optional[MatchCandidate]]


class AddressClaims:
    """Set of normalized addresses already owned by a cluster in this run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: Set[str] = set()

    def claim(self, address: str) -> bool:
        with self._lock:
            if address in self._claimed:
                return False
            self._claimed.add(address)
            return True

class KeyedLocks:
    """One lock per key so at most one writer touches a merged address at a time.

    Within one run each address is upserted once. Runs that share a store
    (for example per-region runs in parallel threads) pass the same
    ``KeyedLocks`` so their find-then-insert sequences do not interleave.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def build_indexes(
    pools: Mapping[str, Sequence[SourceRecord]],
    config: MergeConfig,
) -> Optional[Dict[str, CandidateIndex]]:
    if not config.use_blocking_index:
        return None
    return {source: CandidateIndex.for_config(pools.get(source, []), config) for source in SOURCES}


def find_comprehensive_matches(
    target: SourceRecord,
    pools: Mapping[str, Sequence[SourceRecord]],
    config: MergeConfig,
    indexes: Optional[Mapping[str, CandidateIndex]] = None,
) -> Tuple[Dict[str, Optional[SourceRecord]], Dict[str, Optional[MatchCandidate]]]:
    """Best record from every source for one target; the target fills its own slot."""
    sources: Dict[str, Optional[SourceRecord]] = {}
    matches: Dict[str, Optional[MatchCandidate]] = {}
    for source in SOURCES:
        if source == target.source:
            sources[source] = target
            matches[source] = None
            continue
        pool = pools.get(source, [])
        index = indexes.get(source) if indexes else None
        best = find_best_match(target, pool, config, index=index) if pool else None
        sources[source] = best.candidate if best is not None else None
        matches[source] = best
    return sources, matches


def _ordered_targets(pools: Mapping[str, Sequence[SourceRecord]]) -> List[SourceRecord]:
    targets: List[SourceRecord] = []
    for source in SOURCES:
        targets.extend(pools.get(source, []))
    return targets


def _build_cluster(
    position: int,
    target: SourceRecord,
    pools: Mapping[str, Sequence[SourceRecord]],
    config: MergeConfig,
    indexes: Optional[Mapping[str, CandidateIndex]],
) -> ClusterOutcome:
    sources, matches = find_comprehensive_matches(target, pools, config, indexes)
    merged = merge_property_data(sources, config, matches)
    return ClusterOutcome(position=position, target=target, merged=merged, matches=matches)


def _run_tasks(
    tasks: Sequence[Tuple[int, Callable[[], Any]]],
    workers: int,
    stop_event: Optional[threading.Event],
    on_error: Callable[[int, Exception], None],
    show_progress: bool,
    desc: str,
) -> Tuple[Dict[int, Any], bool]:
    """Run (key, callable) tasks, returning results keyed by task key.

    No new task is started once ``stop_event`` is set.
    """
    results: Dict[int, Any] = {}
    stopped = False
    progress_bar = tqdm(total=len(tasks), unit="listing", desc=desc) if show_progress and tasks else None

    def stop_requested() -> bool:
        return stop_event is not None and stop_event.is_set()

    if workers <= 1:
        for key, task in tasks:
            if stop_requested():
                stopped = True
                break
            try:
                results[key] = task()
            except Exception as exc:  # pylint: disable=broad-except
                on_error(key, exc)
            if progress_bar:
                progress_bar.update(1)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_key = {}
            for key, task in tasks:
                if stop_requested():
                    stopped = True
                    break
                future_to_key[executor.submit(task)] = key
            for future in as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results[key] = future.result()
                except Exception as exc:  # pylint: disable=broad-except
                    on_error(key, exc)
                if progress_bar:
                    progress_bar.update(1)

    if progress_bar:
        progress_bar.close()
    return results, stopped


def _record_cluster(outcome: ClusterOutcome, results: MergeRunResults, events: MergeEventLog) -> None:
    merged = outcome.merged
    matched = {source: match for source, match in outcome.matches.items() if match is not None}
    for source, match in matched.items():
        events.emit(
            "match",
            merged.address,
            source=source,
            candidate_id=match.candidate.source_id,
            method=match.matching_method,
            confidence=round(match.confidence, 3),
            distance=None if match.distance_meters is None else round(match.distance_meters, 1),
        )
    if not matched:
        results.no_matches += 1
        events.emit("no_match", merged.address, source=outcome.target.source, source_id=outcome.target.source_id)
    for field_name, entry in merged.data_conflicts.items():
        events.emit("conflict", merged.address, field=field_name, resolved_value=entry.get("resolved_value"))
    events.emit("merge", merged.address, sources=",".join(merged.sources), quality=merged.quality_score)


def _record_upsert(outcome: UpsertResult, results: MergeRunResults, events: MergeEventLog) -> None:
    merged = outcome.record
    results.total_merged += 1
    results.conflicts_detected += merged.conflict_count
    method = merged.matching_method or "none"
    results.matches_by_method[method] += 1
    if method in EXACT_METHODS:
        results.exact_matches += 1
    elif method in FUZZY_METHODS:
        results.fuzzy_matches += 1
    elif method in COORDINATE_METHODS:
        results.coordinate_matches += 1

    if outcome.action == "inserted":
        results.inserted += 1
        events.emit("inserted", merged.address, listing_id=merged.listing_id)
    elif outcome.action == "updated":
        results.updated += 1
        changed = ",".join(outcome.changes.changed_fields) if outcome.changes else ""
        events.emit("updated", merged.address, listing_id=merged.listing_id, changed_fields=changed)
    else:
        results.unchanged += 1
        events.emit("unchanged", merged.address, listing_id=merged.listing_id)


def process_all_listings(
    store: ListingStore,
    config: MergeConfig,
    region: Optional[str] = None,
    workers: int = 1,
    events: Optional[MergeEventLog] = None,
    run_date: Optional[str] = None,
    change_reason: str = DEFAULT_CHANGE_REASON,
    stop_event: Optional[threading.Event] = None,
    show_progress: bool = False,
    locks: Optional[KeyedLocks] = None,
) -> MergeRunResults:
    """Merge every listing in the store's source pools and persist the results.

    Records are visited in source order (zillow, redfin, realtor). Each
    normalized address is claimed once; the claiming record's cluster is
    matched and merged, possibly concurrently, then upserted. Clusters that
    resolve to a merged address already produced earlier in the run are
    skipped, so the first one in pool order wins and repeated runs converge.
    Failures of individual records are counted, not raised.
    """
    started = time.monotonic()
    events = events if events is not None else MergeEventLog()
    results = MergeRunResults(run_date=run_date or _today())

    logger.info("Starting merge process%s", f" for zip code {region}" if region else " for all listings")
    pools = store.load_source_records(region)
    logger.info(
        "Loaded %s", ", ".join(f"{len(pools.get(source, []))} {source}" for source in SOURCES)
    )
    indexes = build_indexes(pools, config)

    claims = AddressClaims()
    targets: List[Tuple[int, SourceRecord]] = []
    for position, record in enumerate(_ordered_targets(pools)):
        results.total_processed += 1
        key = normalize_address(record.address)
        if not key:
            results.skipped += 1
            logger.warning("Skipping %s listing %s without a usable address.", record.source, record.source_id)
            continue
        if claims.claim(key):
            targets.append((position, record))

    by_position = dict(targets)

    def on_cluster_error(position: int, exc: Exception) -> None:
        record = by_position[position]
        results.errors += 1
        logger.error("Error processing listing %s: %s", record.address, exc)
        events.emit("error", normalize_address(record.address), stage="merge", error=str(exc))

    cluster_tasks = [
        (position, (lambda p=position, r=record: _build_cluster(p, r, pools, config, indexes)))
        for position, record in targets
    ]
    clusters, stopped = _run_tasks(
        cluster_tasks, workers, stop_event, on_cluster_error, show_progress, "Matching listings"
    )
    results.stopped = stopped

    seen_keys: Set[str] = set()
    upsert_targets: List[ClusterOutcome] = []
    for position in sorted(clusters):
        outcome = clusters[position]
        key = outcome.merged.address
        if key in seen_keys:
            results.duplicate_keys += 1
            events.emit(
                "duplicate_key",
                key,
                source=outcome.target.source,
                source_id=outcome.target.source_id,
            )
            continue
        seen_keys.add(key)
        _record_cluster(outcome, results, events)
        upsert_targets.append(outcome)

    locks = locks if locks is not None else KeyedLocks()
    upserts_by_position = {outcome.position: outcome for outcome in upsert_targets}

    def upsert(outcome: ClusterOutcome) -> UpsertResult:
        with locks.lock_for(outcome.merged.address):
            return upsert_merged_listing(store, outcome.merged, change_reason)

    def on_upsert_error(position: int, exc: Exception) -> None:
        outcome = upserts_by_position[position]
        results.errors += 1
        logger.error("Error upserting merged listing %s: %s", outcome.merged.address, exc)
        events.emit("error", outcome.merged.address, stage="upsert", error=str(exc))

    upsert_tasks = (
        []
        if stopped
        else [(outcome.position, (lambda o=outcome: upsert(o))) for outcome in upsert_targets]
    )
    upserted, upserts_stopped = _run_tasks(
        upsert_tasks, workers, stop_event, on_upsert_error, show_progress, "Upserting listings"
    )
    results.stopped = results.stopped or upserts_stopped
    for position in sorted(upserted):
        _record_upsert(upserted[position], results, events)

    merged_records = [upserted[position].record for position in upserted]
    confidences = [record.confidence_score for record in merged_records if record.confidence_score is not None]
    qualities = [record.quality_score for record in merged_records if record.quality_score is not None]
    results.avg_confidence_score = round(sum(confidences) / len(confidences), 4) if confidences else None
    results.avg_quality_score = round(sum(qualities) / len(qualities), 4) if qualities else None
    results.processing_time_seconds = round(time.monotonic() - started, 3)

    save_merge_statistics(store, results, region)
    store.commit()
    logger.info(
        "Merge process completed: processed=%s merged=%s inserted=%s updated=%s unchanged=%s errors=%s",
        results.total_processed,
        results.total_merged,
        results.inserted,
        results.updated,
        results.unchanged,
        results.errors,
    )
    return results


def save_merge_statistics(store: ListingStore, results: MergeRunResults, region: Optional[str] = None) -> bool:
    try:
        store.upsert_statistics(results.to_statistics_row(region))
    except StorageError as exc:
        logger.warning("Error saving merge statistics: %s", exc)
        return False
    return True
