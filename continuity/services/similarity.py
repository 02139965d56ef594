"""
Similarity Engine: embedding-based relatedness with a lexical fallback behind a circuit breaker.
"""

import asyncio
import hashlib
import inspect
import math
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..utils.bedrock_embed import BedrockEmbedError, EmbeddingQuotaError
from ..utils.config import CircuitBreakerConfig, SimilarityConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import tokenize

logger = get_logger(__name__)


class SimilarityStrategy(Enum):
    """How a similarity score is computed for one call."""
    VECTOR = 'vector'
    LEXICAL = 'lexical'


def lexical_similarity(text_a: Optional[str], text_b: Optional[str], min_token_length: int = 3) -> float:
    """Jaccard similarity of the lower-cased token sets of two texts.

    Args:
        text_a: First text
        text_b: Second text
        min_token_length: Tokens shorter than this are ignored

    Returns:
        Intersection over union in [0, 1]; 0 when both token sets are empty
    """
    tokens_a = set(tokenize(text_a, min_token_length))
    tokens_b = set(tokenize(text_b, min_token_length))
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def cosine_similarity(vector_a: Optional[Sequence[float]], vector_b: Optional[Sequence[float]]) -> float:
    """Cosine similarity clamped to [0, 1].

    Missing vectors, mismatched dimensions and zero vectors score 0.
    """
    if not vector_a or not vector_b:
        return 0.0
    if len(vector_a) != len(vector_b):
        logger.warning(f'Embedding dimensions mismatch: {len(vector_a)} vs {len(vector_b)}')
        return 0.0

    dot = sum(a * b for a, b in zip(vector_a, vector_b))
    norm_a = math.sqrt(sum(a * a for a in vector_a))
    norm_b = math.sqrt(sum(b * b for b in vector_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def cache_key(text: str) -> str:
    """Content hash over the first 100 normalized characters plus normalized length."""
    normalized = ' '.join(text.strip().lower().split())
    digest = hashlib.sha256(normalized[:100].encode('utf-8')).hexdigest()
    return f'{len(normalized)}-{digest}'


class CircuitBreaker:
    """Failure-counting guard that disables the embedding provider for a cooldown period."""

    def __init__(self, threshold: int = 3, cooldown_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @classmethod
    def from_config(cls, breaker_config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic) -> 'CircuitBreaker':
        return cls(threshold=breaker_config.threshold, cooldown_seconds=breaker_config.cooldown_seconds, clock=clock)

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    def allow_request(self) -> bool:
        """Whether the provider may be called now; resets the breaker once the cooldown has elapsed."""
        if self._opened_at is None:
            return True
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            logger.info('Embedding circuit breaker cooldown elapsed, probing provider again')
            self.reset()
            return True
        return False

    def record_success(self) -> None:
        self.reset()

    def record_failure(self) -> bool:
        """Count one failure.

        Returns:
            True if this failure opened the breaker
        """
        self._failure_count += 1
        if self._opened_at is None and self._failure_count >= self.threshold:
            self._opened_at = self._clock()
            return True
        return False

    def reset(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def snapshot(self) -> Dict[str, Any]:
        return {'open': self.is_open, 'failure_count': self._failure_count, 'threshold': self.threshold}


class SimilarityEngine:
    """Computes 0-1 relatedness between texts.

    The vector strategy embeds both texts through the provider and compares them
    with cosine similarity. When no provider is configured, the breaker is open,
    or an embedding call fails or times out, the engine answers with the lexical
    (Jaccard) strategy instead. Provider failures never reach the caller.
    """

    def __init__(self,
                 provider: Optional[Any] = None,
                 similarity_config: Optional[SimilarityConfig] = None,
                 breaker: Optional[CircuitBreaker] = None):
        """
        Initialize the similarity engine.

        Args:
            provider: Object with an ``embed(text)`` method (sync or async); None for lexical-only mode
            similarity_config: Thresholds, cache size and timeout; uses global config if None
            breaker: Circuit breaker instance; built from global config if None
        """
        self.provider = provider
        self.config = similarity_config or config.similarity
        self.breaker = breaker or CircuitBreaker.from_config(config.circuit_breaker)
        self._cache: 'OrderedDict[str, List[float]]' = OrderedDict()
        self._stats = {'cache_hits': 0, 'cache_misses': 0, 'provider_calls': 0, 'provider_failures': 0, 'fallbacks': 0}
        self.last_strategy: Optional[SimilarityStrategy] = None

    # -- strategy dispatch --------------------------------------------------

    def select_strategy(self) -> SimilarityStrategy:
        if self.provider is not None and self.breaker.allow_request():
            return SimilarityStrategy.VECTOR
        return SimilarityStrategy.LEXICAL

    async def similarity(self, text_a: Optional[str], text_b: Optional[str]) -> float:
        """Relatedness of two texts in [0, 1]. Empty text scores 0."""
        if not text_a or not text_a.strip() or not text_b or not text_b.strip():
            return 0.0

        strategy = self.select_strategy()
        if strategy is SimilarityStrategy.VECTOR:
            score = await self._vector_similarity(text_a, text_b)
            if score is not None:
                self.last_strategy = SimilarityStrategy.VECTOR
                return score
            self._stats['fallbacks'] += 1

        self.last_strategy = SimilarityStrategy.LEXICAL
        return lexical_similarity(text_a, text_b, self.config.min_token_length)

    async def _vector_similarity(self, text_a: str, text_b: str) -> Optional[float]:
        # Sequential on purpose: a failure on the first text stops the second provider call
        vector_a = await self._embed_guarded(text_a)
        if vector_a is None:
            return None
        vector_b = await self._embed_guarded(text_b)
        if vector_b is None:
            return None
        return cosine_similarity(vector_a, vector_b)

    # -- embeddings -----------------------------------------------------------

    async def embed(self, text: Optional[str]) -> Optional[List[float]]:
        """Embedding for text, or None when the provider is unavailable."""
        if not text or not text.strip() or self.provider is None:
            return None
        if not self.breaker.allow_request():
            return None
        return await self._embed_guarded(text)

    def cached_embedding(self, text: Optional[str]) -> Optional[List[float]]:
        """Embedding from the cache only; never calls the provider."""
        if not text or not text.strip():
            return None
        return self._cache.get(cache_key(text))

    async def _embed_guarded(self, text: str) -> Optional[List[float]]:
        key = cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._stats['cache_hits'] += 1
            return cached
        self._stats['cache_misses'] += 1

        # An earlier failure in this same call may have opened the breaker
        if self.breaker.is_open:
            return None

        self._stats['provider_calls'] += 1
        try:
            vector = await asyncio.wait_for(self._call_provider(text), timeout=self.config.embed_timeout_seconds)
        except asyncio.TimeoutError:
            self._record_failure(f'timed out after {self.config.embed_timeout_seconds}s', quota=False)
            return None
        except EmbeddingQuotaError as e:
            self._record_failure(str(e), quota=True)
            return None
        except BedrockEmbedError as e:
            self._record_failure(str(e), quota=False)
            return None
        except Exception as e:
            self._record_failure(f'unexpected {type(e).__name__}: {e}', quota=False)
            return None

        self.breaker.record_success()
        self._store(key, vector)
        return vector

    async def _call_provider(self, text: str) -> List[float]:
        embed = self.provider.embed
        if inspect.iscoroutinefunction(embed):
            return await embed(text)
        # boto3 is blocking; keep it off the event loop
        return await asyncio.to_thread(embed, text)

    def _record_failure(self, reason: str, quota: bool) -> None:
        self._stats['provider_failures'] += 1
        was_open = self.breaker.is_open
        opened = self.breaker.record_failure()

        if quota:
            # Quota exhaustion is an expected degraded mode, not a fault
            logger.debug(f'Embedding quota unavailable, using lexical similarity: {reason}')
        elif not was_open:
            logger.warning(f'Embedding call failed, falling back to lexical similarity: {reason}')

        if opened:
            logger.warning(f'Embedding circuit breaker opened after {self.breaker.failure_count} consecutive failures, '
                           f'retrying in {self.breaker.cooldown_seconds:.0f}s')

    def _store(self, key: str, vector: List[float]) -> None:
        if self.config.cache_size <= 0:
            return
        while len(self._cache) >= self.config.cache_size:
            # FIFO: drop the oldest insertion
            self._cache.popitem(last=False)
        self._cache[key] = vector

    # -- introspection --------------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'cache_size': len(self._cache),
            'max_cache_size': self.config.cache_size,
            'breaker': self.breaker.snapshot(),
            'last_strategy': self.last_strategy.value if self.last_strategy else None,
        }
