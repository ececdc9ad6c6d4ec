"""Journal retrieval stores."""

from .base import QueryRecorder, RetrievalStore
from .memory_store import InMemoryJournalStore
from .supabase_store import SupabaseJournalStore

__all__ = [
    "QueryRecorder",
    "RetrievalStore",
    "InMemoryJournalStore",
    "SupabaseJournalStore",
]
