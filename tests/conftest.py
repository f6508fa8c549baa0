"""Shared fixtures: in-memory fakes for the embedding provider and vector store."""

import asyncio
import hashlib
import math

import pytest

from mcp_codebase_index.config.settings import (
    ConcurrencySettings,
    IndexerSettings,
    WatchConfig,
)
from mcp_codebase_index.core.change_queue import ChangeQueue
from mcp_codebase_index.core.embeddings import EmbeddingClient
from mcp_codebase_index.core.exceptions import (
    CollectionNotFoundError,
    DimensionMismatchError,
    EmbeddingError,
    SearchError,
)
from mcp_codebase_index.core.models import (
    CollectionStatus,
    Library,
    SearchHit,
    VectorCollection,
    new_id,
)
from mcp_codebase_index.core.state_store import StateDatabase, StateStore
from mcp_codebase_index.core.vector_store import VectorStoreClient


def fake_vector(text: str, dimensions: int) -> list[float]:
    """Deterministic unit vector derived from the text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    raw = [digest[i % len(digest)] / 255.0 + 0.01 for i in range(dimensions)]
    norm = math.sqrt(sum(v * v for v in raw))
    return [v / norm for v in raw]


class FakeEmbeddingClient(EmbeddingClient):
    """Embedding client with scripted failures and call recording."""

    def __init__(
        self,
        name: str = "fake",
        dimensions: int = 8,
        fail_times: int = 0,
        always_fail: bool = False,
        delay: float = 0.0,
        max_input_size: int = 8192,
        preferred_batch_size: int = 32,
    ) -> None:
        super().__init__(
            name,
            max_input_size=max_input_size,
            preferred_batch_size=preferred_batch_size,
            dimensions=dimensions,
        )
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.delay = delay
        self.calls: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.always_fail:
                raise EmbeddingError(f"{self.name} unavailable")
            if self.fail_times > 0:
                self.fail_times -= 1
                raise EmbeddingError(f"{self.name} transient failure")
            return [fake_vector(text, self._dimensions) for text in texts]
        finally:
            self.in_flight -= 1

    @property
    def embedded_texts(self) -> list[str]:
        return [text for call in self.calls for text in call]


class InMemoryVectorStore(VectorStoreClient):
    """Dict-backed vector store with cosine search."""

    def __init__(self) -> None:
        self.collections: dict[str, dict] = {}
        self.created: list[tuple[str, int]] = []
        self.fail_upserts = False

    async def ensure_collection(self, name, dimensions, provider=None):
        existing = self.collections.get(name)
        if existing is not None:
            if existing["dimensions"] != dimensions:
                raise DimensionMismatchError(
                    f"Collection '{name}' has {existing['dimensions']} dimensions, got {dimensions}"
                )
        else:
            self.collections[name] = {"dimensions": dimensions, "points": {}, "provider": provider}
            self.created.append((name, dimensions))
        return await self.collection_info(name)

    async def collection_exists(self, name):
        return name in self.collections

    async def collection_info(self, name):
        existing = self.collections.get(name)
        if existing is None:
            return None
        return VectorCollection(
            name=name,
            dimensions=existing["dimensions"],
            provider=existing["provider"],
            status=CollectionStatus.READY,
            document_count=len(existing["points"]),
        )

    async def upsert(self, collection, points):
        if self.fail_upserts:
            from mcp_codebase_index.core.exceptions import VectorStoreError

            raise VectorStoreError("store offline")
        if collection not in self.collections:
            raise CollectionNotFoundError(collection)
        for point in points:
            self.collections[collection]["points"][point.id] = point
        return len(points)

    async def delete(self, collection, ids):
        existing = self.collections.get(collection)
        if existing is None:
            return 0
        for point_id in ids:
            existing["points"].pop(point_id, None)
        return len(ids)

    async def delete_collection(self, name):
        return self.collections.pop(name, None) is not None

    async def search(self, collection, query_vector, limit=10, threshold=0.0):
        existing = self.collections.get(collection)
        if existing is None:
            raise SearchError(f"Collection '{collection}' not found")
        hits = []
        for point in existing["points"].values():
            dot = sum(a * b for a, b in zip(point.vector, query_vector, strict=True))
            if dot >= threshold:
                hits.append(SearchHit(id=point.id, score=dot, metadata=dict(point.metadata)))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    def points(self, collection: str) -> dict:
        return self.collections.get(collection, {}).get("points", {})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_concurrency():
    """Concurrency settings without backoff delays."""
    return ConcurrencySettings(
        max_concurrent_embedding_requests=2,
        max_concurrent_file_batches=2,
        embedding_batch_size_optimal=4,
        retry_delay_ms=0,
        max_retry_delay_ms=0,
        network_timeout_ms=2000,
    )


@pytest.fixture
def settings(tmp_path, fast_concurrency):
    """Indexer settings rooted in a temporary data directory."""
    return IndexerSettings(
        data_dir=tmp_path / "data",
        auto_tune=False,
        concurrency=fast_concurrency,
        queue_poll_interval_ms=0,
        watch_restart_delay_seconds=0,
        watch_health_check_seconds=0.05,
        vector_store_timeout_ms=2000,
    )


@pytest.fixture
def state_db(tmp_path):
    return StateDatabase(tmp_path / "state.db")


@pytest.fixture
def state_store(state_db):
    return StateStore(state_db)


@pytest.fixture
def queue(state_db):
    return ChangeQueue(state_db)


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def fake_client():
    return FakeEmbeddingClient()


@pytest.fixture
def source_tree(tmp_path):
    """A small library root with Python and C# files."""
    root = tmp_path / "src_root"
    root.mkdir()
    (root / "app.py").write_text(
        "def greet(name):\n    return f'hello {name}'\n\n\n"
        "class Store:\n    def get(self, key):\n        return key\n"
    )
    (root / "Service.cs").write_text(
        "namespace Demo\n{\n    public class Service\n    {\n"
        "        public int Add(int a, int b)\n        {\n            return a + b;\n        }\n"
        "    }\n}\n"
    )
    return root


@pytest.fixture
def make_library(state_store):
    """Factory persisting a library for a root directory."""

    def _make(root, watch_config: WatchConfig | None = None, name: str = "demo") -> Library:
        library_id = new_id()
        library = Library(
            id=library_id,
            name=name,
            root_path=str(root.resolve()),
            collection_name=f"library_{library_id}",
            watch_config=watch_config or WatchConfig(include_patterns=["*.py", "*.cs"]),
        )
        return state_store.add_library(library)

    return _make


@pytest.fixture
def client_factory():
    """Build additional fake embedding clients inside a test."""
    return FakeEmbeddingClient
