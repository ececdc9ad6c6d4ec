"""Pytest configuration and shared fixtures."""

import pytest
import re
import sys
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from pathlib import Path
from typing import Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from journalq.agents.models import Question, RetrievedRecord  # noqa: E402
from journalq.embeddings import EmbeddingService  # noqa: E402
from journalq.llm.base import BaseLLMClient, LLMConfig, LLMResponse  # noqa: E402
from journalq.retrieval.memory_store import InMemoryJournalStore  # noqa: E402

OWNER = "3f1c2b7a-5d4e-4a8b-9c0d-1e2f3a4b5c6d"
OTHER_OWNER = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"

# Wednesday; the week starts Monday 2026-03-16
NOW = datetime(2026, 3, 18, 15, 0, tzinfo=timezone.utc)

DIMENSIONS = 64
WORD = re.compile(r"[a-z']+")


def embed_text(text: str) -> list[float]:
    """Deterministic bag-of-words hashing vector, L2-normalized."""
    vector = [0.0] * DIMENSIONS
    for word in WORD.findall(text.lower()):
        bucket = int(sha256(word.encode()).hexdigest(), 16) % DIMENSIONS
        vector[bucket] += 1.0
    norm = sum(v * v for v in vector) ** 0.5
    return [v / norm for v in vector] if norm else vector


class HashEmbedder(EmbeddingService):
    """Embedding service backed by embed_text; counts calls."""

    def __init__(self):
        super().__init__("hash-bow", DIMENSIONS)
        self._provider_name = "hash"
        self.available = True
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        return embed_text(text)


class ScriptedLLM(BaseLLMClient):
    """Returns canned text and keeps every prompt it was given."""

    def __init__(self, text: str = "", success: bool = True, error: Optional[str] = None):
        super().__init__(LLMConfig(provider="scripted", model="scripted-1"))
        self._provider_name = "scripted"
        self.available = True
        self.text = text
        self.success = success
        self.error = error
        self.calls: list[dict] = []

    async def generate(self, prompt, system_prompt=None, max_tokens=None) -> LLMResponse:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "max_tokens": max_tokens})
        return LLMResponse(
            success=self.success,
            text=self.text if self.success else "",
            error=self.error,
            provider=self._provider_name,
            model=self.config.model,
        )


GOOD_PAYLOAD = (
    '{"statusSummary": "Your sleep improved this week", '
    '"answerText": "You slept better on most nights this week."}'
)

ENTRIES = [
    ("e1", OWNER, "Slept badly again, woke up at 3am worried about the deadline at work.", 1, -0.4,
     ["sleep", "work"], {"anxiety": 0.8}),
    ("e2", OWNER, "Great sleep last night, felt rested and calm after meditation.", 2, 0.7,
     ["sleep", "meditation"], {"calm": 0.9, "joy": 0.5}),
    ("e3", OWNER, "Long day at work, my boss praised the presentation and I felt proud.", 5, 0.6,
     ["work"], {"pride": 0.8}),
    ("e4", OWNER, "Called mom, we talked about the family trip. Felt happy.", 12, 0.8,
     ["relationships"], {"joy": 0.7}),
    ("e5", OWNER, "Anxious about money and could not sleep well.", 40, -0.5,
     ["sleep", "mood"], {"anxiety": 0.9}),
    ("x1", OTHER_OWNER, "Slept badly, worried about work and the deadline.", 1, -0.3,
     ["sleep", "work"], {"anxiety": 0.6}),
]


def make_entries(with_embeddings: bool = True) -> list[dict]:
    return [
        {
            "id": entry_id,
            "user_id": owner,
            "content": content,
            "created_at": (NOW - timedelta(days=days_ago)).isoformat(),
            "embedding": embed_text(content) if with_embeddings else None,
            "sentiment": sentiment,
            "master_themes": themes,
            "emotions": emotions,
        }
        for entry_id, owner, content, days_ago, sentiment, themes, emotions in ENTRIES
    ]


def make_record(record_id: str = "e1", content: str = "slept well", relevance: float = 0.8) -> RetrievedRecord:
    return RetrievedRecord(id=record_id, content=content, relevance=relevance, created_at=NOW)


def make_question(text: str, **kwargs) -> Question:
    kwargs.setdefault("owner_id", OWNER)
    kwargs.setdefault("now", NOW)
    return Question(text=text, **kwargs)


@pytest.fixture
def journal_store() -> InMemoryJournalStore:
    """Store with five entries for OWNER and one for OTHER_OWNER."""
    return InMemoryJournalStore(make_entries())


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder()


@pytest.fixture
def scripted_llm() -> ScriptedLLM:
    return ScriptedLLM(GOOD_PAYLOAD)


@pytest.fixture
def failing_llm() -> ScriptedLLM:
    return ScriptedLLM(success=False, error="provider unavailable")
