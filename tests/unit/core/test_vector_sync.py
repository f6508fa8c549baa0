"""Tests for the vector sync engine: stable ids, hash skips and deletes."""

import asyncio

import pytest

from mcp_codebase_index.core.exceptions import ConfigError, VectorStoreError
from mcp_codebase_index.core.models import ContentUnit, EmbeddingVector
from mcp_codebase_index.core.sync import VectorSyncEngine, unit_id
from mcp_codebase_index.parsers.python import PythonExtractor

SOURCE = "def a():\n    return 1\n\n\ndef b():\n    return 2\n"


def _embed(units, provider="fake", dims=4):
    return [(unit, EmbeddingVector(values=[0.5] * dims, provider=provider)) for unit in units]


@pytest.fixture
def sync(vector_store, state_store):
    return VectorSyncEngine(vector_store, state_store, timeout_seconds=2)


@pytest.fixture
def library(make_library, source_tree):
    return make_library(source_tree)


class TestUnitId:
    def test_deterministic(self):
        assert unit_id("lib", "a.py", 0) == unit_id("lib", "a.py", 0)

    def test_distinct_per_coordinate(self):
        ids = {
            unit_id("lib", "a.py", 0),
            unit_id("lib", "a.py", 1),
            unit_id("lib", "b.py", 0),
            unit_id("other", "a.py", 0),
        }
        assert len(ids) == 4


class TestPlanAndUpsert:
    """Idempotent re-indexing."""

    @pytest.mark.asyncio
    async def test_second_run_skips_unchanged_units(self, sync, library, vector_store):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        first = sync.plan_file(library, "mod.py", units)
        assert len(first.to_embed) == 2
        await sync.apply_upserts(library, _embed(first.to_embed))

        again = PythonExtractor().extract(SOURCE, "mod.py")
        second = sync.plan_file(library, "mod.py", again)
        assert second.to_embed == []
        assert second.skipped == 2
        assert second.is_noop

    @pytest.mark.asyncio
    async def test_reupsert_overwrites_instead_of_duplicating(self, sync, library, vector_store):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        await sync.apply_upserts(library, _embed(units))
        await sync.apply_upserts(library, _embed(units))

        points = vector_store.points(library.collection_name)
        assert len(points) == 2
        assert set(points) == {unit_id(library.id, "mod.py", u.position) for u in units}

    @pytest.mark.asyncio
    async def test_changed_unit_is_replanned(self, sync, library):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        await sync.apply_upserts(library, _embed(units))

        edited = PythonExtractor().extract(SOURCE.replace("return 2", "return 3"), "mod.py")
        plan = sync.plan_file(library, "mod.py", edited)
        assert [u.member for u in plan.to_embed] == ["b"]
        assert plan.skipped == 1

    @pytest.mark.asyncio
    async def test_removed_units_become_stale(self, sync, library, vector_store):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        await sync.apply_upserts(library, _embed(units))

        shorter = PythonExtractor().extract("def a():\n    return 1\n", "mod.py")
        plan = sync.plan_file(library, "mod.py", shorter)
        assert plan.stale_ids == [unit_id(library.id, "mod.py", 1)]

        await sync.delete_ids(library, plan.stale_ids)
        assert len(vector_store.points(library.collection_name)) == 1
        assert sync.state_store.count_units(library.id) == 1

    @pytest.mark.asyncio
    async def test_metadata_recorded_on_points(self, sync, library, vector_store):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        await sync.apply_upserts(library, _embed(units, provider="primary"))
        point = vector_store.points(library.collection_name)[unit_id(library.id, "mod.py", 0)]
        assert point.metadata["file_path"] == "mod.py"
        assert point.metadata["member"] == "a"
        assert point.metadata["provider"] == "primary"
        assert point.metadata["content_hash"] == units[0].content_hash

    @pytest.mark.asyncio
    async def test_mixed_dimensions_rejected(self, sync, library, vector_store):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        pairs = _embed(units[:1], dims=4) + _embed(units[1:], dims=8)
        with pytest.raises(ConfigError):
            await sync.apply_upserts(library, pairs)
        assert vector_store.collections == {}

    @pytest.mark.asyncio
    async def test_records_not_written_when_store_fails(self, sync, library, vector_store):
        units = PythonExtractor().extract(SOURCE, "mod.py")
        vector_store.fail_upserts = True
        with pytest.raises(VectorStoreError):
            await sync.apply_upserts(library, _embed(units))
        assert sync.state_store.count_units(library.id) == 0

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, state_store, library, vector_store):
        async def slow_upsert(collection, points):
            await asyncio.sleep(1)
            return len(points)

        vector_store.upsert = slow_upsert
        engine = VectorSyncEngine(vector_store, state_store, timeout_seconds=0.05)
        units = [ContentUnit.create("a.py", "x = 1", start_line=1, end_line=1)]
        with pytest.raises(VectorStoreError, match="timed out"):
            await engine.apply_upserts(library, _embed(units))


class TestDeletes:
    @pytest.mark.asyncio
    async def test_apply_deletes_removes_file_vectors(self, sync, library, vector_store):
        await sync.apply_upserts(library, _embed(PythonExtractor().extract(SOURCE, "a.py")))
        await sync.apply_upserts(library, _embed(PythonExtractor().extract(SOURCE, "b.py")))

        deleted = await sync.apply_deletes(library, ["a.py"])

        assert deleted == 2
        assert sync.known_files(library) == {"b.py"}
        remaining = vector_store.points(library.collection_name).values()
        assert all(p.metadata["file_path"] == "b.py" for p in remaining)

    @pytest.mark.asyncio
    async def test_delete_unknown_file_is_noop(self, sync, library):
        assert await sync.apply_deletes(library, ["missing.py"]) == 0

    @pytest.mark.asyncio
    async def test_reset_library(self, sync, library, vector_store):
        await sync.apply_upserts(library, _embed(PythonExtractor().extract(SOURCE, "a.py")))
        await sync.reset_library(library)
        assert library.collection_name not in vector_store.collections
        assert sync.known_files(library) == set()
