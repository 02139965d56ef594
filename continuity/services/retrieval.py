"""
Retrieval Orchestrator: fuses recency, topic, semantic and relationship signals into one ranked list.
"""

import asyncio
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..models.core import Interaction, RelationshipResult
from ..utils.config import RetrievalConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import TOPIC_MIN_LENGTH, content_tokens
from ..utils.timestamp_utils import to_epoch
from .memory_store import MemoryStore
from .similarity import SimilarityEngine, cosine_similarity

logger = get_logger(__name__)

RELATIONSHIP_SEED_TURNS = 3


@dataclass
class RetrievalWeights:
    """Per-signal weights for score fusion."""
    time: float = 0.3
    topic: float = 0.3
    semantic: float = 0.3
    relationship: float = 0.1

    @classmethod
    def from_config(cls, retrieval_config: RetrievalConfig) -> 'RetrievalWeights':
        return cls(time=retrieval_config.time_weight,
                   topic=retrieval_config.topic_weight,
                   semantic=retrieval_config.semantic_weight,
                   relationship=retrieval_config.relationship_weight)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class ScoredInteraction:
    """A retrieved interaction with its fused score and per-signal contributions."""
    interaction: Interaction
    score: float = 0.0
    signals: Dict[str, float] = field(default_factory=dict)


Strategy = Callable[[str, int, Optional[RelationshipResult]], Awaitable[Optional[List[Interaction]]]]


def fuse(ranked_lists: Dict[str, List[Interaction]], weights: Dict[str, float], limit: int) -> List[ScoredInteraction]:
    """Weighted reciprocal-position fusion.

    Each list contributes ``(1 - rank / len(list)) * weight`` to every interaction
    it contains. Interactions are ordered by total score, ties most recent first.

    Args:
        ranked_lists: Strategy name to its ranked interactions
        weights: Strategy name to weight
        limit: Maximum results

    Returns:
        Scored interactions, best first
    """
    scored: Dict[str, ScoredInteraction] = {}
    for name, interactions in ranked_lists.items():
        weight = weights.get(name, 0.0)
        size = len(interactions)
        for rank, interaction in enumerate(interactions):
            contribution = (1 - rank / size) * weight
            entry = scored.setdefault(interaction.id, ScoredInteraction(interaction=interaction))
            entry.score += contribution
            entry.signals[name] = entry.signals.get(name, 0.0) + contribution

    ranked = sorted(scored.values(), key=lambda s: (s.score, to_epoch(s.interaction.created_at)), reverse=True)
    return ranked[:limit]


class RetrievalOrchestrator:
    """Runs the retrieval strategies concurrently against the memory store and fuses their rankings.

    A strategy is left out of the fusion when its weight is zero, when its
    prerequisite is missing (no embeddings, no relationship links, no usable
    query tokens) or when it raises; the omission is logged and the remaining
    strategies still produce a result.
    """

    def __init__(self,
                 store: MemoryStore,
                 similarity_engine: Optional[SimilarityEngine] = None,
                 retrieval_config: Optional[RetrievalConfig] = None):
        self.store = store
        self.engine = similarity_engine
        self.config = retrieval_config or config.retrieval
        self.strategies: Dict[str, Strategy] = {
            'time': self._by_time,
            'topic': self._by_topic,
            'semantic': self._by_semantic,
            'relationship': self._by_relationship,
        }

    async def retrieve(self,
                       query: str,
                       weights: Optional[RetrievalWeights] = None,
                       limit: Optional[int] = None,
                       relationship: Optional[RelationshipResult] = None) -> List[Interaction]:
        """Most relevant past interactions for ``query``, best first."""
        scored = await self.retrieve_scored(query, weights, limit, relationship)
        return [entry.interaction for entry in scored]

    async def retrieve_scored(self,
                              query: str,
                              weights: Optional[RetrievalWeights] = None,
                              limit: Optional[int] = None,
                              relationship: Optional[RelationshipResult] = None) -> List[ScoredInteraction]:
        """Fused retrieval with the per-signal score breakdown.

        Args:
            query: Text to retrieve context for
            weights: Signal weights; configured defaults if None
            limit: Maximum results; configured default if None
            relationship: Classification of the current turn, seeds the relationship signal

        Returns:
            Scored interactions, best first
        """
        weights = weights or RetrievalWeights.from_config(self.config)
        limit = self.config.limit if limit is None else limit
        if limit <= 0:
            return []

        weight_map = weights.as_dict()
        active: List[Tuple[str, Strategy]] = []
        for name, strategy in self.strategies.items():
            if weight_map.get(name, 0.0) > 0:
                active.append((name, strategy))
            else:
                logger.debug(f'Retrieval strategy {name} has zero weight, skipping')

        results = await asyncio.gather(*(strategy(query, limit, relationship) for _, strategy in active),
                                       return_exceptions=True)

        ranked_lists: Dict[str, List[Interaction]] = {}
        for (name, _), result in zip(active, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(f'Retrieval strategy {name} failed and was omitted: {result}')
                continue
            if result is None:
                logger.debug(f'Retrieval strategy {name} unavailable for this query, omitted')
                continue
            ranked_lists[name] = list(result)[:limit]

        fused = fuse(ranked_lists, weight_map, limit)
        logger.debug(f'Retrieved {len(fused)} interactions using {", ".join(ranked_lists) or "no"} strategies')
        return fused

    # -- strategies ----------------------------------------------------------------
    # Each returns a ranked list, or None when its prerequisite is missing.

    async def _by_time(self, query: str, limit: int, relationship: Optional[RelationshipResult]) -> List[Interaction]:
        return await self.store.query_by_time(limit)

    async def _by_topic(self, query: str, limit: int,
                        relationship: Optional[RelationshipResult]) -> Optional[List[Interaction]]:
        tokens = list(dict.fromkeys(content_tokens(query, min_length=TOPIC_MIN_LENGTH)))
        if not tokens:
            return None

        matches: Counter = Counter()
        found: Dict[str, Interaction] = {}
        for token in tokens:
            for interaction in await self.store.query_by_topic(token, limit):
                matches[interaction.id] += 1
                found[interaction.id] = interaction

        ranked = sorted(found.values(), key=lambda i: (matches[i.id], to_epoch(i.created_at)), reverse=True)
        return ranked[:limit]

    async def _by_semantic(self, query: str, limit: int,
                           relationship: Optional[RelationshipResult]) -> Optional[List[Interaction]]:
        if self.engine is None or not self.store.has_embeddings():
            return None
        query_embedding = await self.engine.embed(query)
        if query_embedding is None:
            return None

        candidates = await self.store.query_embedded()
        scored = [(cosine_similarity(query_embedding, c.semantics.embedding), c) for c in candidates]
        # candidates arrive newest first and sorted() is stable, so equal scores keep recency order
        ranked = sorted((pair for pair in scored if pair[0] > 0), key=lambda pair: pair[0], reverse=True)
        return [interaction for _, interaction in ranked[:limit]]

    async def _by_relationship(self, query: str, limit: int,
                               relationship: Optional[RelationshipResult]) -> Optional[List[Interaction]]:
        if not self.store.has_links():
            return None

        seeds: List[str] = []
        if relationship is not None:
            if relationship.resume_from_id:
                seeds.append(relationship.resume_from_id)
            seeds.extend(i for i in relationship.related_ids if i not in seeds)
        if not seeds:
            seeds = [i.id for i in await self.store.query_by_time(RELATIONSHIP_SEED_TURNS)]

        strength: Counter = Counter()
        for seed in seeds:
            # A seed named by the classification is itself the strongest match
            if relationship is not None and seed in (relationship.resume_from_id, *relationship.related_ids):
                strength[seed] += 2
            for neighbor in self.store.linked_ids(seed):
                strength[neighbor] += 1

        found = []
        for interaction_id in strength:
            interaction = await self.store.get(interaction_id)
            if interaction is not None:
                found.append(interaction)
        ranked = sorted(found, key=lambda i: (strength[i.id], to_epoch(i.created_at)), reverse=True)
        return ranked[:limit]
