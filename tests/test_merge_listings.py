"""End-to-end tests for the merge orchestrator."""

import threading

import pytest

import pipelines.merge_listings as merge_listings
from pipelines.events import MergeEventLog
from pipelines.merge_config import MergeConfig
from pipelines.merge_listings import KeyedLocks, find_comprehensive_matches, process_all_listings
from pipelines.storage import InMemoryListingStore

from factories import METER_LAT, realtor_row, redfin_row, zillow_row


def neighbourhood(count=20):
    """Properties 0.01 degrees apart, each listed on one to three portals."""
    data = {"zillow": [], "redfin": [], "realtor": []}
    for i in range(count):
        lat = 40.0 + i * 0.01
        number = 100 + i
        data["zillow"].append(
            zillow_row(zillow_id=f"z-{i}", address=f"{number} Main Street", lat=lat, price=300000 + i * 1000)
        )
        if i % 2 == 0:
            data["redfin"].append(
                redfin_row(
                    redfin_id=f"r-{i}",
                    address=f"{number} Main St",
                    lat=lat + 20 * METER_LAT,
                    price=300000 + i * 1000 + (40000 if i % 4 == 0 else 0),
                )
            )
        if i % 3 == 0:
            data["realtor"].append(
                realtor_row(realtor_id=f"m-{i}", street=f"{number} Main St", latitude=lat, list_price=300000 + i * 1000)
            )
    data["realtor"].append(realtor_row(realtor_id="m-lone", street="1 Lonely Lane", latitude=45.0))
    return data


def snapshot(store):
    return sorted(
        (r.address, r.price, r.source_count, r.matching_method, r.conflict_count, tuple(r.sources))
        for r in store.get_merged_listings()
    )


@pytest.fixture
def three_portal_store(rows):
    """One property on all three portals with a price conflict, plus a lone listing."""
    return InMemoryListingStore(
        {
            "zillow": [rows["zillow"](price=500000), rows["zillow"](zillow_id="z-2", address="9 Pine Rd", lat=40.5)],
            "redfin": [rows["redfin"](price=560000)],
            "realtor": [rows["realtor"](list_price=520000)],
        }
    )


class TestProcessAllListings:
    def test_three_portals_merge_into_one_listing(self, three_portal_store, config):
        events = MergeEventLog()

        results = process_all_listings(three_portal_store, config, events=events, run_date="2026-10-01")

        assert results.total_processed == 4
        assert results.total_merged == 2
        assert results.inserted == 2
        assert results.coordinate_matches == 1
        assert results.no_matches == 1
        assert results.conflicts_detected == 1
        assert results.errors == 0
        assert dict(results.matches_by_method) == {"coordinates_exact": 1, "single_source": 1}

        merged = three_portal_store.find_merged_by_address("123 main st")
        assert merged.source_count == 3
        assert merged.has_price_conflicts is True
        assert merged.price == 526667

        assert events.count("conflict") == 1
        assert events.count("match") == 2
        assert events.count("no_match") == 1
        assert events.count("inserted") == 2

    def test_statistics_row_is_saved(self, three_portal_store, config):
        results = process_all_listings(three_portal_store, config, run_date="2026-10-01")

        row = three_portal_store.get_statistics()[0]
        assert row["run_date"] == "2026-10-01"
        assert row["total_merged"] == 2
        assert row["avg_confidence_score"] == 0.95
        assert row["avg_quality_score"] == results.avg_quality_score
        assert results.avg_quality_score == pytest.approx((0.92 + 0.72) / 2)

    def test_second_run_changes_nothing(self, three_portal_store, config):
        process_all_listings(three_portal_store, config)
        before = snapshot(three_portal_store)

        results = process_all_listings(three_portal_store, config)

        assert (results.inserted, results.updated, results.unchanged) == (0, 0, 2)
        assert snapshot(three_portal_store) == before

    def test_source_change_updates_listing(self, rows, config):
        store = InMemoryListingStore({"zillow": [rows["zillow"]()], "redfin": [rows["redfin"]()]})
        process_all_listings(store, config)

        store._source_rows["redfin"][0]["price"] = 540000
        results = process_all_listings(store, config, change_reason="nightly refresh")

        assert results.updated == 1
        merged = store.find_merged_by_address("123 main st")
        assert merged.price == 520000
        assert merged.changed_fields["price"]["old"] == 500000
        assert merged.last_change_reason == "nightly refresh"

    def test_region_filter(self, three_portal_store, config):
        results = process_all_listings(three_portal_store, config, region="99999")

        assert results.total_processed == 0
        assert three_portal_store.get_merged_listings() == []

    def test_clusters_resolving_to_same_address_are_counted(self, rows, config):
        store = InMemoryListingStore(
            {
                "zillow": [rows["zillow"](address="10 Oak St")],
                "redfin": [rows["redfin"](address="12 Pine Rd", lat=40.0 + 3 * METER_LAT)],
            }
        )
        events = MergeEventLog()

        results = process_all_listings(store, config, events=events)

        assert results.total_merged == 1
        assert results.duplicate_keys == 1
        assert events.count("duplicate_key") == 1
        assert store.find_merged_by_address("10 oak st").source_count == 2

    def test_listing_without_address_is_skipped(self, rows, config):
        store = InMemoryListingStore({"zillow": [rows["zillow"](address="  ")]})

        results = process_all_listings(store, config)

        assert results.skipped == 1
        assert results.total_merged == 0

    def test_record_failure_is_counted_not_raised(self, rows, config, monkeypatch):
        original = merge_listings.merge_property_data

        def flaky_merge(sources, merge_config, matches=None):
            if sources["zillow"] is not None and sources["zillow"].source_id == "z-bad":
                raise RuntimeError("corrupt record")
            return original(sources, merge_config, matches)

        monkeypatch.setattr(merge_listings, "merge_property_data", flaky_merge)
        store = InMemoryListingStore(
            {"zillow": [rows["zillow"](), rows["zillow"](zillow_id="z-bad", address="5 Elm St", lat=41.0)]}
        )
        events = MergeEventLog()

        results = process_all_listings(store, config, events=events)

        assert results.errors == 1
        assert results.total_merged == 1
        assert events.events("error")[0].fields["error"] == "corrupt record"

    def test_stop_before_start(self, three_portal_store, config):
        stop = threading.Event()
        stop.set()

        results = process_all_listings(three_portal_store, config, stop_event=stop)

        assert results.stopped is True
        assert results.total_merged == 0
        assert three_portal_store.get_merged_listings() == []


class TestDeterminism:
    def test_workers_match_sequential_run(self, config):
        sequential = InMemoryListingStore(neighbourhood())
        concurrent = InMemoryListingStore(neighbourhood())

        first = process_all_listings(sequential, config, workers=1)
        second = process_all_listings(concurrent, config, workers=4)

        assert snapshot(sequential) == snapshot(concurrent)
        assert first.to_dict().keys() == second.to_dict().keys()
        assert first.matches_by_method == second.matches_by_method
        assert (first.total_merged, first.conflicts_detected) == (second.total_merged, second.conflicts_detected)

    def test_blocking_index_matches_full_scan(self):
        full = InMemoryListingStore(neighbourhood())
        blocked = InMemoryListingStore(neighbourhood())

        process_all_listings(full, MergeConfig())
        process_all_listings(blocked, MergeConfig(use_blocking_index=True))

        assert snapshot(full) == snapshot(blocked)

    def test_comprehensive_matches_fill_target_slot(self, make_record, config):
        target = make_record("redfin")
        pools = {"zillow": [make_record("zillow")], "redfin": [target], "realtor": []}

        sources, matches = find_comprehensive_matches(target, pools, config)

        assert sources["redfin"] is target
        assert matches["redfin"] is None
        assert sources["zillow"].source_id == "z-1"
        assert sources["realtor"] is None


class DictListingStore:
    """Bare store with just the methods a merge run calls."""

    def __init__(self, pools):
        self.pools = pools
        self.merged = {}
        self.statistics = []
        self.commits = 0

    def load_source_records(self, region=None):
        return {source: list(records) for source, records in self.pools.items()}

    def find_merged_by_address(self, address):
        return self.merged.get(address)

    def insert_merged(self, record):
        self.merged[record.address] = record

    def update_merged(self, listing_id, record):
        self.merged[record.address] = record

    def touch_merged(self, listing_id, timestamp):
        for record in self.merged.values():
            if record.listing_id == listing_id:
                record.last_merged_at = timestamp

    def upsert_statistics(self, row):
        self.statistics.append(dict(row))

    def get_statistics(self, start=None, end=None):
        return list(self.statistics)

    def get_merged_listings(self, filters=None):
        return list(self.merged.values())

    def update_publication_status(self, listing_ids, published, now=None):
        return 0

    def commit(self):
        self.commits += 1


class TestListingStorePort:
    def test_any_store_with_the_port_methods_works(self, make_record, config):
        store = DictListingStore(
            {
                "zillow": [make_record("zillow")],
                "redfin": [make_record("redfin", price=540000)],
                "realtor": [],
            }
        )

        results = process_all_listings(store, config, run_date="2026-10-01")

        assert not isinstance(store, InMemoryListingStore)
        assert results.inserted == 1
        assert store.merged["123 main st"].source_count == 2
        assert store.statistics[0]["run_date"] == "2026-10-01"
        assert store.commits == 1


class TestKeyedLocks:
    def test_same_key_shares_one_lock(self):
        locks = KeyedLocks()

        assert locks.lock_for("1 a st") is locks.lock_for("1 a st")
        assert locks.lock_for("1 a st") is not locks.lock_for("2 b st")

    def test_parallel_runs_sharing_locks_insert_each_address_once(self, config):
        store = InMemoryListingStore(neighbourhood())
        locks = KeyedLocks()
        barrier = threading.Barrier(2)
        outcomes = []

        def run():
            barrier.wait()
            outcomes.append(process_all_listings(store, config, workers=4, locks=locks))

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        merged = len(store.get_merged_listings())
        assert [outcome.errors for outcome in outcomes] == [0, 0]
        assert sum(outcome.inserted for outcome in outcomes) == merged
        assert sum(outcome.unchanged for outcome in outcomes) == merged
