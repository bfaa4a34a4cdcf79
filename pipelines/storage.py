"""Storage port for source pools, merged listings and run statistics."""

from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import numpy as np
import pandas as pd

from listing_schema import (
    JSON_COLUMNS,
    MERGED_COLUMNS,
    SOURCES,
    STATISTICS_COLUMNS,
    MergedListing,
    SourceRecord,
    clean_zip5,
)

logger = logging.getLogger(__name__)

MERGED_FILENAME = "merged_listing.parquet"
STATISTICS_FILENAME = "merge_statistics.parquet"
STATISTICS_JSON_COLUMNS = ["matches_by_method"]


class StorageError(RuntimeError):
    """Raised when the backing store cannot read or persist data."""


class ListingStore(Protocol):
    """What the merge run needs from a backing store.

    ``InMemoryListingStore`` and ``ParquetListingStore`` implement it; any
    object with these methods can be passed to ``process_all_listings``.
    """

    def load_source_records(self, region: Optional[str] = None) -> Dict[str, List[SourceRecord]]: ...

    def find_merged_by_address(self, address: str) -> Optional[MergedListing]: ...

    def insert_merged(self, record: MergedListing) -> None: ...

    def update_merged(self, listing_id: str, record: MergedListing) -> None: ...

    def touch_merged(self, listing_id: str, timestamp: str) -> None: ...

    def upsert_statistics(self, row: Mapping[str, Any]) -> None: ...

    def get_statistics(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict[str, Any]]: ...

    def get_merged_listings(self, filters: Optional[Mapping[str, Any]] = None) -> List[MergedListing]: ...

    def update_publication_status(self, listing_ids: Sequence[str], published: bool, now: Optional[str] = None) -> int: ...

    def commit(self) -> None: ...


def to_python(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    if isinstance(value, np.ndarray):
        return [to_python(item) for item in value.tolist()]
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        if np.isnan(value):
            return None
        return float(value)
    if value is pd.NA or value is pd.NaT or (isinstance(value, float) and np.isnan(value)):
        return None
    return value


class InMemoryListingStore:
    """Dictionary-backed store; also the base for file-backed stores.

    Every method takes the store lock, so concurrent upserts of different
    addresses are safe. Records are copied on the way in and out.
    """

    def __init__(self, sources: Optional[Mapping[str, Iterable[Mapping[str, Any]]]] = None):
        self._lock = threading.RLock()
        self._source_rows: Dict[str, List[Dict[str, Any]]] = {source: [] for source in SOURCES}
        self._merged: Dict[str, Dict[str, Any]] = {}
        self._by_address: Dict[str, str] = {}
        self._statistics: Dict[str, Dict[str, Any]] = {}
        for source, rows in (sources or {}).items():
            self.add_source_rows(source, rows)

    def add_source_rows(self, source: str, rows: Iterable[Mapping[str, Any]]) -> None:
        if source not in SOURCES:
            raise ValueError(f"Unknown listing source: {source}")
        with self._lock:
            self._source_rows[source].extend(dict(row) for row in rows)

    def _rows_for(self, source: str) -> List[Dict[str, Any]]:
        return self._source_rows.get(source, [])

    def load_source_records(self, region: Optional[str] = None) -> Dict[str, List[SourceRecord]]:
        pools: Dict[str, List[SourceRecord]] = {}
        with self._lock:
            for source in SOURCES:
                records = [SourceRecord.from_row(source, row) for row in self._rows_for(source)]
                if region:
                    records = [record for record in records if record.zip5 == clean_zip5(region)]
                pools[source] = records
        return pools

    def find_merged_by_address(self, address: str) -> Optional[MergedListing]:
        with self._lock:
            listing_id = self._by_address.get(address)
            if listing_id is None:
                return None
            return MergedListing.from_record(copy.deepcopy(self._merged[listing_id]))

    def get_merged(self, listing_id: str) -> Optional[MergedListing]:
        with self._lock:
            record = self._merged.get(listing_id)
            return MergedListing.from_record(copy.deepcopy(record)) if record is not None else None

    def insert_merged(self, record: MergedListing) -> None:
        with self._lock:
            if not record.listing_id:
                raise StorageError(f"Cannot insert merged listing without id: {record.address}")
            if record.address in self._by_address or record.listing_id in self._merged:
                raise StorageError(f"Merged listing already exists for address: {record.address}")
            self._merged[record.listing_id] = copy.deepcopy(record.to_record())
            self._by_address[record.address] = record.listing_id

    def update_merged(self, listing_id: str, record: MergedListing) -> None:
        with self._lock:
            previous = self._merged.get(listing_id)
            if previous is None:
                raise StorageError(f"Merged listing {listing_id} not found for update")
            if previous["address"] != record.address:
                self._by_address.pop(previous["address"], None)
                self._by_address[record.address] = listing_id
            self._merged[listing_id] = copy.deepcopy(record.to_record())

    def touch_merged(self, listing_id: str, timestamp: str) -> None:
        with self._lock:
            if listing_id not in self._merged:
                raise StorageError(f"Merged listing {listing_id} not found")
            self._merged[listing_id]["last_merged_at"] = timestamp

    def upsert_statistics(self, row: Mapping[str, Any]) -> None:
        run_date = row.get("run_date")
        if not run_date:
            raise StorageError("Statistics row requires a run_date")
        with self._lock:
            self._statistics[str(run_date)] = copy.deepcopy(dict(row))

    def get_statistics(self, start: Optional[str] = None, end: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(row) for row in self._statistics.values()]
        if start:
            rows = [row for row in rows if str(row["run_date"]) >= start]
        if end:
            rows = [row for row in rows if str(row["run_date"]) <= end]
        return sorted(rows, key=lambda row: str(row["run_date"]), reverse=True)

    def get_merged_listings(self, filters: Optional[Mapping[str, Any]] = None) -> List[MergedListing]:
        """Query merged listings, best quality first.

        Supported filters: zip5, published, min_quality_score,
        min_confidence_score, source_count (minimum), has_conflicts, limit.
        """
        filters = dict(filters or {})
        with self._lock:
            records = [MergedListing.from_record(copy.deepcopy(row)) for row in self._merged.values()]

        if filters.get("zip5"):
            records = [r for r in records if r.zip5 == clean_zip5(filters["zip5"])]
        if filters.get("published") is not None:
            records = [r for r in records if bool(r.published) == bool(filters["published"])]
        if filters.get("min_quality_score") is not None:
            records = [r for r in records if (r.quality_score or 0) >= filters["min_quality_score"]]
        if filters.get("min_confidence_score") is not None:
            records = [r for r in records if (r.confidence_score or 0) >= filters["min_confidence_score"]]
        if filters.get("source_count") is not None:
            records = [r for r in records if r.source_count >= filters["source_count"]]
        if filters.get("has_conflicts") is not None:
            wanted = bool(filters["has_conflicts"])
            records = [r for r in records if (r.conflict_count > 0) == wanted]

        records.sort(key=lambda r: (-(r.quality_score or 0), r.address))
        limit = filters.get("limit")
        if limit:
            records = records[: int(limit)]
        return records

    def update_publication_status(self, listing_ids: Sequence[str], published: bool, now: Optional[str] = None) -> int:
        now = now or datetime.now(timezone.utc).isoformat()
        updated = 0
        with self._lock:
            for listing_id in listing_ids:
                record = self._merged.get(listing_id)
                if record is None:
                    logger.warning("Merged listing %s not found; publication status unchanged.", listing_id)
                    continue
                record["published"] = bool(published)
                record["published_at"] = now if published else None
                record["updated_at"] = now
                updated += 1
        logger.info("Updated publication status for %s listings", updated)
        return updated

    def commit(self) -> None:
        """Nothing to flush for the in-memory store."""


class ParquetListingStore(InMemoryListingStore):
    """Store backed by files under ``data_dir``.

    Source pools are read from ``sources/<source>_listing.parquet`` (or
    ``.csv``). Merged listings and run statistics live in their own Parquet
    files and are rewritten on ``commit``.
    """

    def __init__(self, data_dir: Path):
        super().__init__()
        self.data_dir = Path(data_dir)
        self.sources_dir = self.data_dir / "sources"
        self.merged_path = self.data_dir / MERGED_FILENAME
        self.statistics_path = self.data_dir / STATISTICS_FILENAME
        self._sources_loaded = False
        self._load_merged()
        self._load_statistics()

    def _source_path(self, source: str) -> Optional[Path]:
        for suffix in (".parquet", ".csv"):
            candidate = self.sources_dir / f"{source}_listing{suffix}"
            if candidate.exists():
                return candidate
        return None

    def _read_source(self, source: str) -> List[Dict[str, Any]]:
        path = self._source_path(source)
        if path is None:
            logger.warning("No %s source file under %s; treating pool as empty.", source, self.sources_dir)
            return []
        try:
            if path.suffix == ".csv":
                df = pd.read_csv(path, dtype=str).fillna("")
            else:
                df = pd.read_parquet(path)
        except Exception as exc:  # pylint: disable=broad-except
            raise StorageError(f"Failed to read source file {path}: {exc}") from exc
        logger.info("Loaded %s %s listings from %s", len(df), source, path)
        return [{key: to_python(value) for key, value in row.items()} for row in df.to_dict(orient="records")]

    def _rows_for(self, source: str) -> List[Dict[str, Any]]:
        if not self._sources_loaded:
            for name in SOURCES:
                self._source_rows[name].extend(self._read_source(name))
            self._sources_loaded = True
        return self._source_rows.get(source, [])

    @staticmethod
    def _decode(record: Dict[str, Any], json_columns: Sequence[str]) -> Dict[str, Any]:
        decoded = {key: to_python(value) for key, value in record.items()}
        for column in json_columns:
            raw = decoded.get(column)
            if isinstance(raw, str):
                decoded[column] = json.loads(raw) if raw else None
        return decoded

    @staticmethod
    def _encode(record: Mapping[str, Any], json_columns: Sequence[str]) -> Dict[str, Any]:
        encoded = dict(record)
        for column in json_columns:
            encoded[column] = json.dumps(encoded.get(column), sort_keys=True, default=str)
        return encoded

    def _read_parquet(self, path: Path) -> Optional[pd.DataFrame]:
        if not path.exists():
            return None
        try:
            return pd.read_parquet(path)
        except Exception as exc:  # pylint: disable=broad-except
            raise StorageError(f"Failed to read parquet file {path}: {exc}") from exc

    def _load_merged(self) -> None:
        df = self._read_parquet(self.merged_path)
        if df is None:
            return
        for row in df.to_dict(orient="records"):
            record = self._decode(row, JSON_COLUMNS)
            for column in JSON_COLUMNS:
                if record.get(column) is None:
                    record[column] = [] if column == "data_sources" else {}
            listing = MergedListing.from_record(record)
            self._merged[listing.listing_id] = listing.to_record()
            self._by_address[listing.address] = listing.listing_id
        logger.info("Loaded %s merged listings from %s", len(self._merged), self.merged_path)

    def _load_statistics(self) -> None:
        df = self._read_parquet(self.statistics_path)
        if df is None:
            return
        for row in df.to_dict(orient="records"):
            record = self._decode(row, STATISTICS_JSON_COLUMNS)
            self._statistics[str(record["run_date"])] = record

    def _write_parquet(self, df: pd.DataFrame, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            df.to_parquet(path, index=False, compression="zstd")
        except Exception as exc:  # pylint: disable=broad-except
            raise StorageError(
                f"Failed to write parquet file {path}: {exc}\n"
                "Ensure that a compatible pyarrow installation is available."
            ) from exc

    def commit(self) -> None:
        with self._lock:
            merged_rows = [self._encode(row, JSON_COLUMNS) for row in self._merged.values()]
            stats_rows = [self._encode(row, STATISTICS_JSON_COLUMNS) for row in self._statistics.values()]
        merged_df = pd.DataFrame(merged_rows, columns=MERGED_COLUMNS)
        self._write_parquet(merged_df, self.merged_path)
        if stats_rows:
            stats_df = pd.DataFrame(stats_rows)
            ordered = [column for column in STATISTICS_COLUMNS if column in stats_df.columns]
            extra = [column for column in stats_df.columns if column not in ordered]
            self._write_parquet(stats_df[ordered + extra], self.statistics_path)
        logger.info("Committed %s merged listings to %s", len(merged_rows), self.merged_path)
