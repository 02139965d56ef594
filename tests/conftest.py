"""Shared test fixtures."""

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from continuity.models.core import Interaction, RelationshipCategory, RelationshipResult, SemanticPayload
from continuity.services.memory_store import MemoryStore
from continuity.services.similarity import CircuitBreaker, SimilarityEngine
from continuity.utils.bedrock_embed import BedrockEmbedError
from continuity.utils.config import CircuitBreakerConfig, MemoryConfig, PatternConfig, RetrievalConfig, SimilarityConfig
from continuity.utils.text_utils import tokenize

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class HashingEmbedder:
    """Deterministic bag-of-words embedder standing in for Bedrock."""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        vector = [0.0] * self.dimension
        for token in tokenize(text, 3):
            vector[int(hashlib.md5(token.encode('utf-8')).hexdigest(), 16) % self.dimension] += 1.0
        return vector


class FailingEmbedder:
    """Embedder whose every call raises the given error."""

    def __init__(self, error: Exception = None):
        self.error = error or BedrockEmbedError('service unavailable')
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        raise self.error


class SlowEmbedder:
    """Embedder that never answers within a short timeout."""

    def __init__(self, delay: float = 1.0):
        self.delay = delay
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        await asyncio.sleep(self.delay)
        return [1.0, 0.0]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def similarity_config() -> SimilarityConfig:
    return SimilarityConfig()


@pytest.fixture
def lexical_engine(similarity_config, clock) -> SimilarityEngine:
    """Similarity engine without a provider: always lexical."""
    breaker = CircuitBreaker.from_config(CircuitBreakerConfig(), clock=clock)
    return SimilarityEngine(None, similarity_config, breaker)


@pytest.fixture
def memory_config() -> MemoryConfig:
    return MemoryConfig(retention_window=1000, retention_batch_size=10, max_index_entries=1000, store_timeout_seconds=1.0)


@pytest.fixture
def pattern_config() -> PatternConfig:
    return PatternConfig()


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig()


@pytest.fixture
def store(memory_config) -> MemoryStore:
    return MemoryStore(memory_config)


@pytest.fixture
def make_interaction():
    """Factory for interactions with strictly increasing timestamps."""
    counter = {'n': 0}

    def _make(input_text: str,
              response: str = '',
              session_id: str = 's1',
              category: RelationshipCategory = RelationshipCategory.WEAK_SHIFT,
              previous: Optional[Interaction] = None,
              topics: Optional[List[str]] = None,
              resume_from_id: Optional[str] = None,
              related_ids: tuple = (),
              created_at: Optional[datetime] = None,
              interaction_id: Optional[str] = None) -> Interaction:
        counter['n'] += 1
        relationship = RelationshipResult(category=category,
                                          confidence=0.8,
                                          similarity=0.5,
                                          transition='Looking at…',
                                          resume_from_id=resume_from_id,
                                          related_ids=related_ids)
        kwargs = {}
        if interaction_id:
            kwargs['id'] = interaction_id
        return Interaction(input=input_text,
                           response=response,
                           relationship=relationship,
                           session_id=session_id,
                           created_at=created_at or BASE_TIME + timedelta(minutes=counter['n']),
                           turn_index=counter['n'],
                           semantics=SemanticPayload(topics=list(topics or [])),
                           previous_interaction_id=previous.id if previous else None,
                           **kwargs)

    return _make
