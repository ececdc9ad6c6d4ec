"""
Supabase Journal Store.

Talks to PostgREST over httpx:
- vector search via the match_journal_entries / match_journal_entries_with_date RPCs
- structured queries via the execute_dynamic_query RPC
- recent entries via a plain table read
- query analytics via the log_api_usage RPC

Structured query text is scoped with `user_id = auth.uid()`; the owner's
validated UUID is substituted for auth.uid() right before execution since
the service role has no session of its own.
"""

import logging
import re
from datetime import timedelta
from typing import Any
from uuid import UUID

import httpx

from journalq.agents.models import RetrievedRecord, TimeRange, _parse_iso
from journalq.agents.sql_guard import OWNER_SCOPE
from journalq.exceptions import StoreQueryFailed, StructuredQueryRejected
from journalq.utils.resilience import CircuitBreaker, retry_with_backoff

from .base import QueryRecorder, RetrievalStore

logger = logging.getLogger(__name__)

AUTH_UID = re.compile(r"\bauth\.uid\(\)", re.IGNORECASE)

JOURNAL_TABLE = "Journal Entries"
CONTENT_COLUMNS = ("refined text", "transcription text")
_ONE_MICROSECOND = timedelta(microseconds=1)


def owner_literal(owner_id: str) -> str:
    """Validated, quoted UUID literal for an owner id.

    Raises:
        StructuredQueryRejected: owner_id is not a UUID.
    """
    try:
        return f"'{UUID(str(owner_id))}'::uuid"
    except (ValueError, TypeError, AttributeError):
        raise StructuredQueryRejected([f"owner id is not a UUID: {owner_id!r}"]) from None


def scope_to_owner(text: str, owner_id: str) -> str:
    """Replace auth.uid() with the owner's literal, refusing unscoped text."""
    if not OWNER_SCOPE.search(text or ""):
        raise StructuredQueryRejected(["missing owner scope"])
    return AUTH_UID.sub(owner_literal(owner_id), text)


def _record_from_match(row: dict[str, Any]) -> RetrievedRecord:
    return RetrievedRecord(
        id=str(row["id"]) if row.get("id") is not None else None,
        content=row.get("content") or "",
        relevance=float(row.get("similarity") or 0.0),
        created_at=_parse_iso(row.get("created_at")),
        kind="semantic",
    )


def _record_from_entry(row: dict[str, Any]) -> RetrievedRecord:
    content = next((row[c] for c in CONTENT_COLUMNS if row.get(c)), "")
    return RetrievedRecord(
        id=str(row["id"]) if row.get("id") is not None else None,
        content=content,
        relevance=0.0,
        created_at=_parse_iso(row.get("created_at")),
        kind="semantic",
    )


class SupabaseJournalStore(RetrievalStore, QueryRecorder):
    """Journal store backed by Supabase (Postgres + pgvector)."""

    def __init__(self, url: str, service_key: str, timeout: int = 30, user_timezone: str = "UTC"):
        super().__init__()
        self._store_name = "supabase"
        self._client: httpx.AsyncClient | None = None
        self._breaker = CircuitBreaker(name="supabase")
        self._user_timezone = user_timezone

        if not url or not service_key:
            logger.info("Store: Supabase not configured - using in-memory store (LITE MODE)")
            return

        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            timeout=timeout,
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
        )
        self.available = True
        logger.info(f"Store: Supabase connected ({url})")

    async def _rpc(self, function: str, payload: dict[str, Any]) -> Any:
        if not self._client:
            raise StoreQueryFailed("Supabase store not configured")
        if not self._breaker.is_available():
            raise StoreQueryFailed("Supabase circuit open")

        async def call():
            response = await self._client.post(f"/rpc/{function}", json=payload)
            response.raise_for_status()
            # void functions reply with an empty body
            return response.json() if response.content else None

        try:
            data = await retry_with_backoff(call, retryable_exceptions=(httpx.TransportError,))
        except httpx.HTTPError as e:
            self._breaker.record_failure()
            raise StoreQueryFailed(f"{function} failed: {e}") from e
        self._breaker.record_success()
        return data

    async def vector_search(
        self,
        vector: list[float],
        threshold: float,
        limit: int,
        owner_id: str,
        time_range: TimeRange | None = None,
    ) -> list[RetrievedRecord]:
        payload = {
            "query_embedding": vector,
            "match_threshold": threshold,
            "match_count": limit,
            "user_id_filter": owner_id,
        }
        function = "match_journal_entries"
        if time_range:
            function = "match_journal_entries_with_date"
            payload["start_date"] = time_range.start.isoformat()
            # RPC compares with <=; shave the exclusive end
            payload["end_date"] = (time_range.end - _ONE_MICROSECOND).isoformat()

        rows = await self._rpc(function, payload) or []
        records = [_record_from_match(r) for r in rows]
        records.sort(key=lambda r: r.relevance, reverse=True)
        return records[:limit]

    async def structured_query(self, text: str, owner_id: str) -> list[dict[str, Any]]:
        scoped = scope_to_owner(text, owner_id)
        result = await self._rpc(
            "execute_dynamic_query",
            {"query_text": scoped, "user_timezone": self._user_timezone},
        )
        if isinstance(result, dict):
            if not result.get("success", False):
                raise StoreQueryFailed(result.get("error") or "structured query failed")
            return list(result.get("data") or [])
        return list(result or [])

    async def list_recent(self, owner_id: str, limit: int) -> list[RetrievedRecord]:
        if not self._client:
            raise StoreQueryFailed("Supabase store not configured")
        if not self._breaker.is_available():
            raise StoreQueryFailed("Supabase circuit open")
        try:
            owner = UUID(str(owner_id))
        except (ValueError, TypeError):
            raise StoreQueryFailed(f"owner id is not a UUID: {owner_id!r}") from None

        columns = ",".join(["id", "created_at"] + [f'"{c}"' for c in CONTENT_COLUMNS])
        try:
            response = await self._client.get(
                f"/{JOURNAL_TABLE}",
                params={
                    "select": columns,
                    "user_id": f"eq.{owner}",
                    "order": "created_at.desc",
                    "limit": str(limit),
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._breaker.record_failure()
            raise StoreQueryFailed(f"list_recent failed: {e}") from e
        self._breaker.record_success()
        return [_record_from_entry(r) for r in response.json()]

    async def record_query(
        self,
        owner_id: str,
        cache_key: str,
        text: str,
        method: str,
        record_count: int,
        elapsed_ms: int,
    ) -> None:
        await self._rpc("log_api_usage", {
            "p_user_id": owner_id,
            "p_function_name": "journal-query",
            "p_endpoint": f"{method}:{cache_key}",
            "p_request_method": "POST",
            "p_status_code": 200,
            "p_response_time_ms": elapsed_ms,
            "p_response_payload_size": record_count,
        })

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["circuit"] = self._breaker.get_state()
        return info
