"""Shared fixtures: a temp-file store and an in-memory upstream."""

import copy

import pytest

from mirror.config import DatabaseConfig, InstanceConfig, MirrorConfig, QueryConfig, ServerConfig, SyncConfig
from mirror.database import Store
from mirror.models import ENTITY_TYPES
from mirror.utils import id_sort_key, parse_timestamp


class FakeSource:
    """Dict-backed stand-in for one upstream instance."""

    def __init__(self):
        self.data = {etype: {} for etype in ENTITY_TYPES}
        self.fail = None
        self.page_calls = []
        self.changed_calls = []

    def add(self, entity_type, id, updated_at="2025-01-01T00:00:00Z", **fields):
        item = {"id": str(id), "created_at": updated_at, "updated_at": updated_at, **fields}
        self.data[entity_type][str(id)] = item
        return item

    def remove(self, entity_type, entity_id):
        self.data[entity_type].pop(str(entity_id), None)

    def _items(self, entity_type):
        return [
            copy.deepcopy(self.data[entity_type][key])
            for key in sorted(self.data[entity_type], key=id_sort_key)
        ]

    def _changed(self, entity_type, since):
        cutoff = parse_timestamp(since)
        return [i for i in self._items(entity_type) if parse_timestamp(i["updated_at"]) > cutoff]

    def find_page(self, entity_type, page, per_page, updated_since=None):
        if self.fail is not None:
            raise self.fail
        self.page_calls.append((entity_type, page, updated_since))
        items = self._items(entity_type) if updated_since is None else self._changed(entity_type, updated_since)
        start = (page - 1) * per_page
        return len(items), items[start:start + per_page]

    def find_by_ids(self, entity_type, ids):
        return [copy.deepcopy(self.data[entity_type][i]) for i in ids if i in self.data[entity_type]]

    def find_ids(self, entity_type, page, per_page):
        if self.fail is not None:
            raise self.fail
        ids = sorted(self.data[entity_type], key=id_sort_key)
        start = (page - 1) * per_page
        return len(ids), ids[start:start + per_page]

    def count_changed_since(self, entity_type, since):
        if self.fail is not None:
            raise self.fail
        self.changed_calls.append((entity_type, since))
        return len(self._changed(entity_type, since))


@pytest.fixture
def store(tmp_path):
    store = Store(tmp_path / "mirror.db").open()
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def sync_settings():
    # Small pages so pagination paths run
    return SyncConfig(page_size=2, id_page_size=3)


@pytest.fixture
def test_config(tmp_path, sync_settings):
    return MirrorConfig(
        database=DatabaseConfig(path=tmp_path / "mirror.db"),
        server=ServerConfig(),
        sync=sync_settings,
        query=QueryConfig(default_per_page=10, max_per_page=50),
        instances=[InstanceConfig(id="main", url="http://stash.local:9999", name="Main")],
    )


@pytest.fixture
def make_source():
    return FakeSource
