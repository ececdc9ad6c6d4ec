"""
In-Memory Journal Store.

Numpy cosine similarity over entries held in process. Used in LITE MODE
(no Supabase configured) and by the test suite.

Structured queries get a best-effort evaluation: the owner scope, the
created_at bounds and ILIKE terms of the rendered text are honored, and
COUNT(*) queries without GROUP BY return a single aggregate row.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np

from journalq.agents.models import RetrievedRecord, TimeRange, _parse_iso
from journalq.agents.sql_guard import OWNER_SCOPE
from journalq.exceptions import EmbeddingUnavailable, StructuredQueryRejected

from .base import QueryRecorder, RetrievalStore

logger = logging.getLogger(__name__)

LOWER_BOUND = re.compile(r"created_at\s*>=\s*'([^']+)'::timestamptz", re.IGNORECASE)
UPPER_BOUND = re.compile(r"created_at\s*<\s*'([^']+)'::timestamptz", re.IGNORECASE)
ILIKE_TERM = re.compile(r"ILIKE\s*'%([^']*)%'", re.IGNORECASE)
COUNT_AGGREGATE = re.compile(r"\bCOUNT\(\*\)", re.IGNORECASE)
GROUP_BY = re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE)
LIMIT = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)


class InMemoryJournalStore(RetrievalStore, QueryRecorder):
    """Journal entries in a list, searched with numpy."""

    def __init__(self, entries: list[dict[str, Any]] | None = None):
        super().__init__()
        self._store_name = "memory"
        self._entries: list[dict[str, Any]] = []
        self.recorded: dict[tuple[str, str], dict[str, Any]] = {}
        for entry in entries or []:
            self.add_entry(**entry)
        self.available = True

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryJournalStore":
        """Load entries from a JSON list. A missing file gives an empty store."""
        if not path.exists():
            logger.info(f"Store: {path} not found, starting empty")
            return cls()
        data = json.loads(path.read_text())
        logger.info(f"Store: loaded {len(data)} journal entries from {path}")
        return cls(data)

    def add_entry(
        self,
        id: str,
        user_id: str,
        content: str,
        created_at: datetime | str,
        embedding: list[float] | None = None,
        sentiment: float | None = None,
        master_themes: list[str] | None = None,
        emotions: dict[str, float] | None = None,
        entities: dict[str, list[str]] | None = None,
    ) -> None:
        """Add one entry. Entries without a usable created_at are skipped."""
        when = _parse_iso(created_at)
        if when is None:
            logger.warning(f"Store: skipping entry {id} with no usable created_at ({created_at!r})")
            return
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self._entries.append({
            "id": str(id),
            "user_id": str(user_id),
            "content": content,
            "created_at": when,
            "embedding": np.asarray(embedding, dtype=np.float32) if embedding is not None else None,
            "sentiment": sentiment,
            "master_themes": list(master_themes or []),
            "emotions": dict(emotions or {}),
            "entities": dict(entities or {}),
        })

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def unindexed_count(self) -> int:
        return sum(1 for e in self._entries if e["embedding"] is None)

    async def index_embeddings(self, embedder) -> dict[str, int]:
        """Embed entries loaded without a vector.

        Stops at the first EmbeddingUnavailable; other failures skip the entry.
        """
        indexed = errors = 0
        for entry in self._entries:
            if entry["embedding"] is not None:
                continue
            try:
                vector = await embedder.embed(entry["content"])
            except EmbeddingUnavailable as e:
                logger.info(f"Store: embedding skipped ({e})")
                break
            except Exception as e:
                logger.warning(f"Store: could not embed entry {entry['id']}: {e}")
                errors += 1
                continue
            entry["embedding"] = np.asarray(vector, dtype=np.float32)
            indexed += 1
        return {"indexed": indexed, "errors": errors}

    def _owned(self, owner_id: str) -> list[dict[str, Any]]:
        return [e for e in self._entries if e["user_id"] == owner_id]

    async def vector_search(
        self,
        vector: list[float],
        threshold: float,
        limit: int,
        owner_id: str,
        time_range: TimeRange | None = None,
    ) -> list[RetrievedRecord]:
        candidates = [
            e for e in self._owned(owner_id)
            if e["embedding"] is not None
            and (time_range is None or (e["created_at"] and time_range.contains(e["created_at"])))
        ]
        if not candidates:
            return []

        query = np.asarray(vector, dtype=np.float32)
        matrix = np.stack([e["embedding"] for e in candidates])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = np.divide(matrix @ query, norms, out=np.zeros(len(candidates), dtype=np.float32), where=norms > 0)

        order = np.argsort(-scores, kind="stable")
        records = []
        for i in order:
            score = float(scores[i])
            if score < threshold:
                break
            entry = candidates[i]
            records.append(RetrievedRecord(
                id=entry["id"],
                content=entry["content"],
                relevance=round(score, 4),
                created_at=entry["created_at"],
                kind="semantic",
            ))
            if len(records) >= limit:
                break
        return records

    async def structured_query(self, text: str, owner_id: str) -> list[dict[str, Any]]:
        if not OWNER_SCOPE.search(text or ""):
            raise StructuredQueryRejected(["missing owner scope"])

        rows = self._owned(owner_id)
        if m := LOWER_BOUND.search(text):
            start = _parse_iso(m.group(1))
            rows = [e for e in rows if e["created_at"] and e["created_at"] >= start]
        if m := UPPER_BOUND.search(text):
            end = _parse_iso(m.group(1))
            rows = [e for e in rows if e["created_at"] and e["created_at"] < end]
        if terms := [t.lower() for t in ILIKE_TERM.findall(text)]:
            rows = [
                e for e in rows
                if any(t in e["content"].lower() or t in e["master_themes"] for t in terms)
            ]
        rows.sort(key=lambda e: e["created_at"], reverse=True)

        if COUNT_AGGREGATE.search(text) and not GROUP_BY.search(text):
            dates = [e["created_at"] for e in rows]
            return [{
                "entry_count": len(rows),
                "first_entry": min(dates).isoformat() if dates else None,
                "last_entry": max(dates).isoformat() if dates else None,
            }]

        if m := LIMIT.search(text):
            rows = rows[:int(m.group(1))]
        return [
            {
                "id": e["id"],
                "created_at": e["created_at"].isoformat(),
                "content": e["content"],
                "sentiment": e["sentiment"],
                "master_themes": e["master_themes"],
            }
            for e in rows
        ]

    async def list_recent(self, owner_id: str, limit: int) -> list[RetrievedRecord]:
        rows = sorted(self._owned(owner_id), key=lambda e: e["created_at"], reverse=True)
        return [
            RetrievedRecord(id=e["id"], content=e["content"], relevance=0.0, created_at=e["created_at"])
            for e in rows[:limit]
        ]

    async def record_query(
        self,
        owner_id: str,
        cache_key: str,
        text: str,
        method: str,
        record_count: int,
        elapsed_ms: int,
    ) -> None:
        self.recorded[(owner_id, cache_key)] = {
            "text": text,
            "method": method,
            "record_count": record_count,
            "elapsed_ms": elapsed_ms,
        }

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["entries"] = len(self._entries)
        return info
