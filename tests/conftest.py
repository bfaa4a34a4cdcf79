"""Shared fixtures: provider row factories, default config and an in-memory store."""

from typing import Any, Callable, Dict

import pytest

from factories import METER_LAT, ROW_FACTORIES
from listing_schema import SourceRecord
from pipelines.merge_config import MergeConfig
from pipelines.storage import InMemoryListingStore


@pytest.fixture
def rows() -> Dict[str, Callable[..., Dict[str, Any]]]:
    return ROW_FACTORIES


@pytest.fixture
def make_record() -> Callable[..., SourceRecord]:
    def make(source: str, **overrides: Any) -> SourceRecord:
        return SourceRecord.from_row(source, ROW_FACTORIES[source](**overrides))

    return make


@pytest.fixture
def config() -> MergeConfig:
    return MergeConfig()


@pytest.fixture
def store() -> InMemoryListingStore:
    return InMemoryListingStore()


@pytest.fixture
def meter_lat() -> float:
    return METER_LAT
