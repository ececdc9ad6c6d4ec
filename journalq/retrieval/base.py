"""
Retrieval Store Interface.

Defines the contract the execution engine needs from a journal store:
vector similarity search, owner-scoped structured queries, and a plain
listing of recent entries. Also defines the optional query recorder used
for fire-and-forget analytics.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from journalq.agents.models import RetrievedRecord, TimeRange

logger = logging.getLogger(__name__)


class RetrievalStore(ABC):
    """
    Abstract base class for journal stores.

    Implementations:
    - SupabaseJournalStore: PostgREST RPCs over pgvector (httpx)
    - InMemoryJournalStore: numpy cosine similarity (LITE MODE, tests)
    """

    def __init__(self):
        self.available = False
        self._store_name = "base"

    @property
    def name(self) -> str:
        return self._store_name

    @abstractmethod
    async def vector_search(
        self,
        vector: list[float],
        threshold: float,
        limit: int,
        owner_id: str,
        time_range: TimeRange | None = None,
    ) -> list[RetrievedRecord]:
        """
        Find the owner's entries most similar to vector.

        Args:
            vector: Query embedding.
            threshold: Minimum similarity (0-1).
            limit: Maximum records.
            owner_id: Owner whose entries are searched.
            time_range: Optional [start, end) filter on created_at.

        Returns:
            Records sorted by descending relevance.
        """
        pass

    @abstractmethod
    async def structured_query(self, text: str, owner_id: str) -> list[dict[str, Any]]:
        """
        Execute validated, owner-scoped query text.

        Implementations must refuse text without the `user_id = auth.uid()` scope.

        Returns:
            Result rows.
        """
        pass

    @abstractmethod
    async def list_recent(self, owner_id: str, limit: int) -> list[RetrievedRecord]:
        """The owner's most recent entries, newest first, no filtering."""
        pass

    async def close(self) -> None:
        """Cleanup resources. Override if needed."""
        pass

    def get_info(self) -> dict[str, Any]:
        return {"store": self._store_name, "available": self.available}


class QueryRecorder(ABC):
    """Receives one analytics record per executed plan. Must be idempotent."""

    @abstractmethod
    async def record_query(
        self,
        owner_id: str,
        cache_key: str,
        text: str,
        method: str,
        record_count: int,
        elapsed_ms: int,
    ) -> None:
        pass
