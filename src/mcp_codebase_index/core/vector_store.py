"""Vector store clients: the abstract contract and the LanceDB implementation.

LanceDB keeps one table per collection. Rows are keyed by the stable unit
id; an upsert deletes any existing rows with the same ids before appending,
so re-embedding a unit overwrites its previous vector.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import lancedb
import orjson
import pyarrow as pa
from loguru import logger

from .exceptions import (
    CollectionNotFoundError,
    DimensionMismatchError,
    SearchError,
    VectorStoreError,
    VectorStoreInitializationError,
)
from .models import CollectionStatus, SearchHit, VectorCollection, VectorPoint

# Maximum number of ids per SQL IN clause.
# DataFusion's recursive descent parser stack-overflows on thousands of OR clauses;
# bounded IN batches keep the parse tree shallow.
DELETE_BATCH_LIMIT = 500

# Metadata keys stored as first-class columns; anything else goes to extra_json
_METADATA_COLUMNS = (
    "library_id",
    "file_path",
    "namespace",
    "container",
    "member",
    "language",
    "start_line",
    "end_line",
    "content_hash",
    "content",
    "provider",
)


class VectorStoreClient(ABC):
    """Capability interface for one vector database."""

    @abstractmethod
    async def ensure_collection(
        self, name: str, dimensions: int, provider: str | None = None
    ) -> VectorCollection:
        """Create the collection if missing and return its verified metadata.

        Raises:
            DimensionMismatchError: If it exists with a different dimensionality
        """
        ...

    @abstractmethod
    async def collection_exists(self, name: str) -> bool: ...

    @abstractmethod
    async def collection_info(self, name: str) -> VectorCollection | None: ...

    @abstractmethod
    async def upsert(self, collection: str, points: list[VectorPoint]) -> int: ...

    @abstractmethod
    async def delete(self, collection: str, ids: list[str]) -> int: ...

    @abstractmethod
    async def delete_collection(self, name: str) -> bool: ...

    @abstractmethod
    async def search(
        self,
        collection: str,
        query_vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
    ) -> list[SearchHit]: ...

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None


def _create_collection_schema(vector_dim: int) -> pa.Schema:
    """Create collection schema with a fixed vector dimension."""
    return pa.schema(
        [
            pa.field("id", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), vector_dim)),
            pa.field("library_id", pa.string()),
            pa.field("file_path", pa.string()),
            pa.field("namespace", pa.string()),
            pa.field("container", pa.string()),
            pa.field("member", pa.string()),
            pa.field("language", pa.string()),
            pa.field("start_line", pa.int32()),
            pa.field("end_line", pa.int32()),
            pa.field("content_hash", pa.string()),
            pa.field("content", pa.string()),
            pa.field("provider", pa.string()),
            pa.field("extra_json", pa.string()),
            pa.field("embedded_at", pa.string()),
        ]
    )


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class LanceDBVectorStore(VectorStoreClient):
    """LanceDB-backed vector store, one table per collection.

    Blocking LanceDB calls run in worker threads so the caller's timeouts
    can interrupt the wait.

    Example:
        store = LanceDBVectorStore(data_dir / "lance")
        await store.initialize()
        await store.ensure_collection("lib_abc", 384)
        await store.upsert("lib_abc", [VectorPoint(id="u1", vector=[...])])
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._db = None
        self._tables: dict[str, Any] = {}
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Connect to LanceDB (idempotent).

        Raises:
            VectorStoreInitializationError: If the connection fails
        """
        async with self._init_lock:
            if self._db is not None:
                return
            try:
                self.db_path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Connecting to LanceDB at: {self.db_path}")
                self._db = await asyncio.to_thread(lancedb.connect, str(self.db_path))
            except Exception as e:
                logger.error(f"Failed to initialize vector store: {e}")
                raise VectorStoreInitializationError(
                    f"Vector store initialization failed: {e}"
                ) from e

    async def _require_db(self):
        if self._db is None:
            await self.initialize()
        return self._db

    def _table_names(self) -> list[str]:
        # list_tables() returns a response object with .tables on newer releases
        response = self._db.list_tables()
        return list(response.tables if hasattr(response, "tables") else response)

    async def _open_table(self, name: str):
        if name in self._tables:
            return self._tables[name]
        db = await self._require_db()
        names = await asyncio.to_thread(self._table_names)
        if name not in names:
            return None
        table = await asyncio.to_thread(db.open_table, name)
        self._tables[name] = table
        return table

    @staticmethod
    def _table_dimensions(table) -> int | None:
        vector_field = table.schema.field("vector")
        return getattr(vector_field.type, "list_size", None)

    async def collection_exists(self, name: str) -> bool:
        try:
            return await self._open_table(name) is not None
        except VectorStoreError:
            raise
        except Exception as e:
            raise VectorStoreError(f"Failed to check collection {name}: {e}") from e

    async def collection_info(self, name: str) -> VectorCollection | None:
        try:
            table = await self._open_table(name)
            if table is None:
                return None
            count = await asyncio.to_thread(table.count_rows)
            providers = (table.schema.metadata or {}).get(b"provider")
            return VectorCollection(
                name=name,
                dimensions=self._table_dimensions(table) or 0,
                provider=providers.decode() if providers else None,
                status=CollectionStatus.READY,
                document_count=count,
            )
        except VectorStoreError:
            raise
        except Exception as e:
            raise VectorStoreError(f"Failed to read collection {name}: {e}") from e

    async def ensure_collection(
        self, name: str, dimensions: int, provider: str | None = None
    ) -> VectorCollection:
        info = await self.collection_info(name)
        if info is not None:
            if info.dimensions != dimensions:
                raise DimensionMismatchError(
                    f"Collection '{name}' stores {info.dimensions}-dimensional vectors "
                    f"but the embedding provider produces {dimensions}",
                    context={
                        "collection": name,
                        "collection_dimensions": info.dimensions,
                        "provider_dimensions": dimensions,
                    },
                )
            return info

        db = await self._require_db()
        schema = _create_collection_schema(dimensions)
        if provider:
            schema = schema.with_metadata({"provider": provider})
        try:
            table = await asyncio.to_thread(db.create_table, name, schema=schema)
        except Exception as e:
            logger.error(f"Failed to create collection {name}: {e}")
            raise VectorStoreError(f"Failed to create collection {name}: {e}") from e
        self._tables[name] = table
        logger.info(f"Created collection '{name}' with {dimensions} dimensions")

        # Only trust the collection after a verification round-trip
        verified = await self.collection_info(name)
        if verified is None:
            raise VectorStoreError(f"Collection {name} not visible after creation")
        return verified

    async def upsert(self, collection: str, points: list[VectorPoint]) -> int:
        if not points:
            return 0
        table = await self._open_table(collection)
        if table is None:
            raise CollectionNotFoundError(f"Collection not found: {collection}")

        dims = self._table_dimensions(table)
        embedded_at = datetime.now(UTC).isoformat()
        rows: dict[str, dict] = {}
        for point in points:
            if dims is not None and len(point.vector) != dims:
                raise DimensionMismatchError(
                    f"Vector for {point.id} has {len(point.vector)} dimensions, "
                    f"collection '{collection}' expects {dims}"
                )
            # Last write wins for an id repeated within one batch
            rows[point.id] = self._point_to_row(point, embedded_at)

        try:
            await asyncio.to_thread(self._merge_rows, table, list(rows.values()))
        except Exception as e:
            logger.error(f"Failed to upsert {len(rows)} vectors into {collection}: {e}")
            raise VectorStoreError(f"Failed to upsert vectors: {e}") from e

        logger.debug(f"Upserted {len(rows)} vectors into {collection}")
        return len(rows)

    async def delete(self, collection: str, ids: list[str]) -> int:
        if not ids:
            return 0
        table = await self._open_table(collection)
        if table is None:
            return 0
        try:
            await asyncio.to_thread(self._delete_ids, table, ids)
        except Exception as e:
            logger.error(f"Failed to delete vectors from {collection}: {e}")
            raise VectorStoreError(f"Failed to delete vectors: {e}") from e
        return len(ids)

    @staticmethod
    def _merge_rows(table, rows: list[dict]) -> None:
        # Matched ids are updated in place, new ids inserted, in one write
        (
            table.merge_insert("id")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(rows)
        )

    @staticmethod
    def _delete_ids(table, ids: list[str]) -> None:
        for i in range(0, len(ids), DELETE_BATCH_LIMIT):
            batch = ids[i : i + DELETE_BATCH_LIMIT]
            table.delete(f"id IN ({', '.join(_quote(i) for i in batch)})")

    async def delete_collection(self, name: str) -> bool:
        db = await self._require_db()
        self._tables.pop(name, None)
        try:
            names = await asyncio.to_thread(self._table_names)
            if name not in names:
                return False
            await asyncio.to_thread(db.drop_table, name)
        except Exception as e:
            raise VectorStoreError(f"Failed to drop collection {name}: {e}") from e
        logger.info(f"Dropped collection '{name}'")
        return True

    async def search(
        self,
        collection: str,
        query_vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
    ) -> list[SearchHit]:
        table = await self._open_table(collection)
        if table is None:
            raise SearchError(
                f"Collection '{collection}' not found. Index the library before searching."
            )

        dims = self._table_dimensions(table)
        if dims is not None and len(query_vector) != dims:
            raise SearchError(
                f"Invalid query vector dimension: expected {dims}, got {len(query_vector)}"
            )

        try:
            query = table.search(query_vector).metric("cosine").limit(limit)
            results = await asyncio.to_thread(query.to_list)
        except Exception as e:
            logger.error(f"Vector search failed: {e}")
            raise SearchError(f"Vector search failed: {e}") from e

        hits = []
        for result in results:
            # Cosine distance ranges from 0 (identical) to 2 (opposite)
            distance = result.get("_distance", 0.0)
            similarity = max(0.0, 1.0 - (distance / 2.0))
            if similarity < threshold:
                continue
            hits.append(
                SearchHit(
                    id=result["id"],
                    score=similarity,
                    metadata=self._row_to_metadata(result),
                )
            )

        logger.debug(f"Vector search returned {len(hits)} results (limit: {limit})")
        return hits

    async def close(self) -> None:
        self._tables.clear()
        self._db = None

    async def __aenter__(self) -> "LanceDBVectorStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def _point_to_row(point: VectorPoint, embedded_at: str) -> dict[str, Any]:
        meta = point.metadata
        extra = {k: v for k, v in meta.items() if k not in _METADATA_COLUMNS}
        return {
            "id": point.id,
            "vector": [float(v) for v in point.vector],
            "library_id": meta.get("library_id", ""),
            "file_path": meta.get("file_path", ""),
            "namespace": meta.get("namespace") or "",
            "container": meta.get("container") or "",
            "member": meta.get("member") or "",
            "language": meta.get("language", ""),
            "start_line": int(meta.get("start_line", 0)),
            "end_line": int(meta.get("end_line", 0)),
            "content_hash": meta.get("content_hash", ""),
            "content": meta.get("content", ""),
            "provider": meta.get("provider", ""),
            "extra_json": orjson.dumps(extra).decode(),
            "embedded_at": embedded_at,
        }

    @staticmethod
    def _row_to_metadata(row: dict[str, Any]) -> dict[str, Any]:
        metadata = {key: row.get(key) for key in _METADATA_COLUMNS}
        metadata["embedded_at"] = row.get("embedded_at")
        extra = row.get("extra_json")
        if extra:
            metadata.update(orjson.loads(extra))
        return metadata
