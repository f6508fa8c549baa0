"""Embedding batcher: bounded, retrying, fallback-aware embedding of units.

Units are cut into batches lazily so that the dynamic batch size learned
from recent calls applies to the next batch. Calls in flight are bounded by
a semaphore shared by every run using this batcher; each call is retried
with exponential backoff, then tried once more against the selector's
alternate before its units are reported as failed. Every input unit appears
exactly once in the output.
"""

import asyncio
import time
from collections.abc import Sequence

from loguru import logger

from ..config.settings import ConcurrencySettings
from .embeddings import EmbeddingClient
from .exceptions import EmbeddingError, EmbeddingTimeoutError
from .models import ContentUnit, EmbeddingVector, EmbedOutcome
from .provider_selector import ProviderSelector


def truncate_text(text: str, max_input_size: int) -> str:
    """Keep the first ``max_input_size`` characters."""
    if len(text) <= max_input_size:
        return text
    return text[:max_input_size]


class EmbeddingBatcher:
    """Concurrency core of the indexing pipeline."""

    def __init__(
        self,
        selector: ProviderSelector,
        settings: ConcurrencySettings | None = None,
    ) -> None:
        self.selector = selector
        self.settings = settings or ConcurrencySettings()
        self._call_slots = asyncio.Semaphore(self.settings.max_concurrent_embedding_requests)
        self._batch_size = self.settings.embedding_batch_size_optimal
        self._calls_in_flight = 0
        self._batches: dict[asyncio.Task, list[ContentUnit]] = {}
        self._stats = {
            "calls": 0,
            "failures": 0,
            "timeouts": 0,
            "fallback_batches": 0,
            "failed_units": 0,
            "truncated_units": 0,
        }

    @property
    def current_batch_size(self) -> int:
        return self._batch_size

    def get_stats(self) -> dict[str, int]:
        return {**self._stats, "batch_size": self._batch_size}

    async def embed_units(self, units: Sequence[ContentUnit]) -> list[EmbedOutcome]:
        """Embed units; failures come back as per-unit error outcomes."""
        if not units:
            return []

        outcomes: list[EmbedOutcome] = []
        max_outstanding = self.settings.max_concurrent_embedding_requests
        in_flight: set[asyncio.Task] = set()
        cursor = 0

        try:
            while cursor < len(units) or in_flight:
                while cursor < len(units) and len(in_flight) < max_outstanding:
                    size = self._next_batch_size()
                    batch = list(units[cursor : cursor + size])
                    cursor += len(batch)
                    task = asyncio.create_task(self._embed_batch(batch))
                    self._batches[task] = batch
                    in_flight.add(task)

                done, in_flight = await asyncio.wait(
                    in_flight, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    outcomes.extend(self._collect(task))
        finally:
            # Cancellation of the caller: let in-flight calls finish
            if in_flight:
                await asyncio.wait(in_flight)
                for task in in_flight:
                    outcomes.extend(self._collect(task))

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        if failed:
            logger.warning(f"{failed}/{len(units)} units failed to embed")
        return outcomes

    def _collect(self, task: asyncio.Task) -> list[EmbedOutcome]:
        """Outcomes of one batch task; a crashed task fails its whole batch."""
        batch = self._batches.pop(task, [])
        if task.cancelled():
            return [EmbedOutcome(unit=unit, error="embedding cancelled") for unit in batch]
        error = task.exception()
        if error is None:
            return task.result()
        self._stats["failed_units"] += len(batch)
        logger.opt(exception=error).error(
            f"Embedding batch of {len(batch)} units crashed: {error}"
        )
        message = str(error) or type(error).__name__
        return [EmbedOutcome(unit=unit, error=message) for unit in batch]

    def _next_batch_size(self) -> int:
        size = self._batch_size
        client = self.selector.select()
        return max(1, min(size, client.preferred_batch_size))

    async def _embed_batch(self, batch: list[ContentUnit]) -> list[EmbedOutcome]:
        client = self.selector.select()
        last_error: Exception | None = None

        for attempt in range(1, self.settings.max_retry_attempts + 1):
            try:
                vectors = await self._call(client, batch)
            except EmbeddingError as e:
                last_error = e
                self.selector.report_failure(client)
                self._on_batch_failure()
                if attempt < self.settings.max_retry_attempts:
                    delay = self.settings.retry_delay_seconds(attempt)
                    logger.debug(
                        f"Embedding batch of {len(batch)} failed on {client.name} "
                        f"(attempt {attempt}/{self.settings.max_retry_attempts}): {e}; "
                        f"retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                continue

            self.selector.report_success(client)
            self._on_batch_success()
            return self._success(batch, vectors, client)

        if self.settings.enable_failure_fallback:
            alternate = self.selector.alternate(client)
            if alternate is not None:
                logger.info(
                    f"Retrying batch of {len(batch)} on fallback provider {alternate.name}"
                )
                self._stats["fallback_batches"] += 1
                try:
                    vectors = await self._call(alternate, batch)
                except EmbeddingError as e:
                    last_error = e
                    self.selector.report_failure(alternate)
                else:
                    self.selector.report_success(alternate)
                    return self._success(batch, vectors, alternate)

        message = str(last_error) if last_error else "embedding failed"
        self._stats["failed_units"] += len(batch)
        logger.error(f"Embedding batch of {len(batch)} units failed: {message}")
        return [EmbedOutcome(unit=unit, error=message) for unit in batch]

    async def _call(
        self, client: EmbeddingClient, batch: list[ContentUnit]
    ) -> list[list[float]]:
        texts = []
        for unit in batch:
            text = truncate_text(unit.text, client.max_input_size)
            if len(text) < len(unit.text):
                self._stats["truncated_units"] += 1
                logger.debug(
                    f"Truncated {unit.display_name} in {unit.file_path} "
                    f"from {len(unit.text)} to {client.max_input_size} characters"
                )
            texts.append(text)

        timeout = self.settings.network_timeout_ms / 1000.0
        async with self._call_slots:
            self._calls_in_flight += 1
            self._stats["calls"] += 1
            if self.settings.enable_concurrency_logging:
                logger.debug(
                    f"Embedding call started on {client.name}: {len(texts)} texts, "
                    f"{self._calls_in_flight} in flight"
                )
            started = time.perf_counter()
            try:
                vectors = await asyncio.wait_for(client.embed(texts), timeout=timeout)
            except TimeoutError as e:
                self._stats["timeouts"] += 1
                self._stats["failures"] += 1
                raise EmbeddingTimeoutError(
                    f"Embedding call to {client.name} timed out after {timeout:.1f}s"
                ) from e
            except EmbeddingError:
                self._stats["failures"] += 1
                raise
            except Exception as e:
                self._stats["failures"] += 1
                raise EmbeddingError(f"Embedding call to {client.name} failed: {e}") from e
            finally:
                self._calls_in_flight -= 1

        try:
            _check_vectors(vectors, len(texts))
        except EmbeddingError as e:
            self._stats["failures"] += 1
            raise EmbeddingError(f"{client.name} returned unusable vectors: {e}") from e
        if self.settings.enable_concurrency_logging:
            logger.debug(
                f"Embedding call on {client.name} finished in "
                f"{time.perf_counter() - started:.2f}s"
            )
        return vectors

    def _success(
        self,
        batch: list[ContentUnit],
        vectors: list[list[float]],
        client: EmbeddingClient,
    ) -> list[EmbedOutcome]:
        return [
            EmbedOutcome(
                unit=unit, vector=EmbeddingVector(values=list(values), provider=client.name)
            )
            for unit, values in zip(batch, vectors, strict=True)
        ]

    def _on_batch_failure(self) -> None:
        if not self.settings.enable_dynamic_batch_sizing:
            return
        shrunk = max(self.settings.min_batch_size, self._batch_size // 2)
        if shrunk != self._batch_size:
            logger.debug(f"Shrinking embedding batch size {self._batch_size} -> {shrunk}")
        self._batch_size = shrunk

    def _on_batch_success(self) -> None:
        if not self.settings.enable_dynamic_batch_sizing:
            return
        if self._batch_size < self.settings.embedding_batch_size_optimal:
            self._batch_size += 1


def _check_vectors(vectors, expected: int) -> None:
    """Require ``expected`` non-empty numeric vectors of one shared length."""
    if not isinstance(vectors, list | tuple):
        raise EmbeddingError(f"expected a list of vectors, got {type(vectors).__name__}")
    if len(vectors) != expected:
        raise EmbeddingError(f"{len(vectors)} vectors for {expected} texts")
    width = None
    for index, vector in enumerate(vectors):
        if not isinstance(vector, list | tuple) or not vector:
            raise EmbeddingError(f"vector {index} is empty or not a sequence")
        if not all(
            isinstance(value, int | float) and not isinstance(value, bool)
            for value in vector
        ):
            raise EmbeddingError(f"vector {index} contains non-numeric values")
        if width is None:
            width = len(vector)
        elif len(vector) != width:
            raise EmbeddingError(
                f"vector {index} has {len(vector)} dimensions, expected {width}"
            )
