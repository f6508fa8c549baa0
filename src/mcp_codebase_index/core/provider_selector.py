"""Primary/fallback selection among configured embedding clients."""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from .embeddings import EmbeddingClient


@dataclass
class _ClientHealth:
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0


class ProviderSelector:
    """Consecutive-failure breaker over an ordered list of clients.

    The first client is primary. It is selected while its consecutive
    failures stay below ``failure_threshold``. Reaching the threshold opens
    a cooldown window during which the next healthy client is selected;
    once the window elapses the primary is tried again. A successful trial
    closes the window, a failed one opens a new one.

    This is a best-effort breaker; callers still handle embedding failures.
    """

    def __init__(
        self,
        clients: Sequence[EmbeddingClient],
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not clients:
            raise ValueError("ProviderSelector needs at least one client")
        self.clients = list(clients)
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._health = {id(client): _ClientHealth() for client in self.clients}
        self._cooldown_until: float | None = None

    @property
    def primary(self) -> EmbeddingClient:
        return self.clients[0]

    def select(self) -> EmbeddingClient:
        """Return the client the next batch should use."""
        if not self._is_tripped(self.primary):
            return self.primary

        if self._cooldown_until is not None and self._clock() < self._cooldown_until:
            alternate = self.alternate(self.primary)
            if alternate is not None:
                return alternate

        logger.debug(f"Probing primary embedding provider {self.primary.name}")
        return self.primary

    def alternate(self, client: EmbeddingClient) -> EmbeddingClient | None:
        """Best other client: first one below threshold, else least failed."""
        others = [c for c in self.clients if c is not client]
        if not others:
            return None
        for other in others:
            if not self._is_tripped(other):
                return other
        return min(others, key=lambda c: self._health[id(c)].consecutive_failures)

    def report_failure(self, client: EmbeddingClient) -> None:
        health = self._health[id(client)]
        health.consecutive_failures += 1
        health.total_failures += 1

        if client is self.primary and health.consecutive_failures >= self.failure_threshold:
            self._cooldown_until = self._clock() + self.cooldown_seconds
            logger.warning(
                f"Embedding provider {client.name} failed "
                f"{health.consecutive_failures} times in a row; "
                f"failing over for {self.cooldown_seconds:.0f}s"
            )

    def report_success(self, client: EmbeddingClient) -> None:
        health = self._health[id(client)]
        if client is self.primary and self._is_tripped(client):
            logger.info(f"Embedding provider {client.name} recovered")
        health.consecutive_failures = 0
        health.total_successes += 1
        if client is self.primary:
            self._cooldown_until = None

    def is_failed_over(self) -> bool:
        return self.select() is not self.primary

    def health_snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "name": client.name,
                "primary": client is self.primary,
                "consecutive_failures": self._health[id(client)].consecutive_failures,
                "total_failures": self._health[id(client)].total_failures,
                "total_successes": self._health[id(client)].total_successes,
                "dimensions": client.dimensions,
            }
            for client in self.clients
        ]

    def _is_tripped(self, client: EmbeddingClient) -> bool:
        return self._health[id(client)].consecutive_failures >= self.failure_threshold
