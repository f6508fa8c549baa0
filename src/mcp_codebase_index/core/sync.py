"""Vector sync engine: reconciles the vector store with extracted units.

Unit ids are derived from (library, file, position) only, so re-indexing a
file overwrites the same points instead of accumulating duplicates. The
unit records in the state store remember the content hash behind every
stored vector; units whose hash is unchanged are not embedded again.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger

from .exceptions import ConfigError, DimensionMismatchError, VectorStoreError
from .models import ContentUnit, EmbeddingVector, Library, VectorPoint
from .state_store import StateStore
from .vector_store import VectorStoreClient

T = TypeVar("T")

# Namespace for deterministic unit ids
UNIT_ID_NAMESPACE = uuid.UUID("6f0c8a4e-2b7d-5e1a-9c3f-4d8b1e2a7c90")


def unit_id(library_id: str, file_path: str, position: int) -> str:
    """Stable id of the unit at ``position`` in ``file_path``."""
    return str(uuid.uuid5(UNIT_ID_NAMESPACE, f"{library_id}:{file_path}:{position}"))


@dataclass
class FilePlan:
    """What has to happen to bring one file's vectors up to date."""

    file_path: str
    to_embed: list[ContentUnit] = field(default_factory=list)
    skipped: int = 0
    stale_ids: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_embed and not self.stale_ids


class VectorSyncEngine:
    """Applies upserts and deletes for one library at a time."""

    def __init__(
        self,
        store: VectorStoreClient,
        state_store: StateStore,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except TimeoutError as e:
            raise VectorStoreError(
                f"Vector store {operation} timed out after {self.timeout_seconds:.1f}s"
            ) from e

    def plan_file(
        self, library: Library, file_path: str, units: Sequence[ContentUnit]
    ) -> FilePlan:
        """Compare extracted units against recorded hashes."""
        records = self.state_store.get_unit_records(library.id, file_path)
        plan = FilePlan(file_path=file_path)

        for unit in units:
            recorded = records.get(unit_id(library.id, file_path, unit.position))
            if recorded is not None and recorded[1] == unit.content_hash:
                plan.skipped += 1
            else:
                plan.to_embed.append(unit)

        # Positions past the new unit count belong to units that disappeared
        plan.stale_ids = [
            uid for uid, (position, _) in records.items() if position >= len(units)
        ]
        return plan

    async def apply_upserts(
        self,
        library: Library,
        pairs: Sequence[tuple[ContentUnit, EmbeddingVector]],
    ) -> int:
        """Upsert embedded units and record their hashes.

        Raises:
            ConfigError: If the vectors disagree on dimensionality or do not
                match the existing collection
            VectorStoreError: If the store fails or times out
        """
        if not pairs:
            return 0

        dimensions = {vector.dimensions for _, vector in pairs}
        if len(dimensions) > 1:
            raise ConfigError(
                f"Embedding providers returned mixed dimensionalities {sorted(dimensions)} "
                f"for library {library.name}",
                context={"library_id": library.id},
            )
        dims = dimensions.pop()
        provider = pairs[0][1].provider

        try:
            await self._bounded(
                "ensure_collection",
                self.store.ensure_collection(library.collection_name, dims, provider),
            )
        except DimensionMismatchError as e:
            logger.error(f"Library {library.name}: {e}")
            raise

        points = []
        records = []
        for unit, vector in pairs:
            uid = unit_id(library.id, unit.file_path, unit.position)
            points.append(
                VectorPoint(
                    id=uid,
                    vector=vector.values,
                    metadata=self._metadata(library, unit, vector),
                )
            )
            records.append((uid, unit.file_path, unit.position, unit.content_hash))

        count = await self._bounded(
            "upsert", self.store.upsert(library.collection_name, points)
        )
        # Record only after the store accepted the vectors
        self.state_store.record_units(library.id, records)
        return count

    async def delete_ids(self, library: Library, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        await self._bounded("delete", self.store.delete(library.collection_name, ids))
        self.state_store.delete_unit_records(library.id, ids)
        return len(ids)

    async def apply_deletes(self, library: Library, file_paths: Iterable[str]) -> int:
        """Remove every recorded vector of the given files."""
        deleted = 0
        for file_path in file_paths:
            records = self.state_store.get_unit_records(library.id, file_path)
            deleted += await self.delete_ids(library, records.keys())
            if records:
                logger.debug(f"Deleted {len(records)} vectors for {file_path}")
        return deleted

    async def reset_library(self, library: Library) -> None:
        """Drop the collection and forget every recorded unit."""
        await self._bounded(
            "delete_collection", self.store.delete_collection(library.collection_name)
        )
        self.state_store.clear_unit_records(library.id)
        logger.info(f"Reset vectors for library {library.name}")

    def known_files(self, library: Library) -> set[str]:
        return self.state_store.list_recorded_files(library.id)

    @staticmethod
    def _metadata(
        library: Library, unit: ContentUnit, vector: EmbeddingVector
    ) -> dict[str, Any]:
        return {
            "library_id": library.id,
            "file_path": unit.file_path,
            "namespace": unit.namespace,
            "container": unit.container,
            "member": unit.member,
            "language": unit.language,
            "start_line": unit.start_line,
            "end_line": unit.end_line,
            "content_hash": unit.content_hash,
            "content": unit.text,
            "provider": vector.provider,
            "position": unit.position,
        }
