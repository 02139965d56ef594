"""
Pattern Detector: recurring themes, contradictions and causal chains over a history window.
"""

import hashlib
import time
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models.core import Interaction, PatternMatch, PatternSet, RecurringTheme, RelationshipCategory
from ..utils.config import PatternConfig, SimilarityConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import content_tokens, extract_topics, is_question
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

QUESTION_ANSWER = 'question-answer'
TOPIC_PROGRESSION = 'topic-progression'
QUESTION_ANSWER_CONFIDENCE = 0.7
MIN_STRUCTURE_TURNS = 3


def window_hash(history: Sequence[Interaction]) -> str:
    """Deterministic hash over the ordered interaction ids of a window."""
    digest = hashlib.sha256()
    for interaction in history:
        digest.update(interaction.id.encode('utf-8'))
        digest.update(b'\x1f')
    return digest.hexdigest()


def _jaccard(left: set, right: set) -> float:
    union = left | right
    return len(left & right) / len(union) if union else 0.0


class PatternDetector:
    """Derives a PatternSet from a history window and caches it by window hash."""

    def __init__(self,
                 pattern_config: Optional[PatternConfig] = None,
                 similarity_config: Optional[SimilarityConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = pattern_config or config.patterns
        self.question_cues = (similarity_config or config.similarity).clarification_cues
        self._clock = clock
        self._cache: Dict[str, Tuple[float, PatternSet]] = {}

    async def detect_patterns(self, history_window: Sequence[Interaction]) -> PatternSet:
        """Patterns for the window, served from cache while the entry is fresh.

        Args:
            history_window: Interactions in chronological order

        Returns:
            PatternSet for exactly this window
        """
        key = window_hash(history_window)
        now = self._clock()
        self._prune(now)

        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f'Pattern cache hit for window {key[:12]}')
            return cached[1]

        patterns = self.compute_patterns(history_window)
        patterns.window_hash = key
        # Entries expire a fixed time after insertion, reads do not extend them
        self._cache[key] = (now + self.config.cache_ttl_seconds, patterns)
        logger.debug(f'Computed patterns for {len(history_window)} interactions: {len(patterns.recurring_themes)} themes, '
                     f'{len(patterns.contradictions)} contradictions, {len(patterns.causal_chains)} chains')
        return patterns

    def _prune(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]

    def invalidate(self) -> None:
        self._cache.clear()

    def cache_size(self) -> int:
        return len(self._cache)

    # -- computation ------------------------------------------------------------

    def compute_patterns(self, history: Sequence[Interaction]) -> PatternSet:
        return PatternSet(recurring_themes=self._recurring_themes(history),
                          contradictions=[i.id for i in history if i.category == RelationshipCategory.CONTRADICTION],
                          causal_chains=self._causal_chains(history),
                          computed_at=utc_now())

    def _recurring_themes(self, history: Sequence[Interaction]) -> List[RecurringTheme]:
        counts: Counter = Counter()
        contributors: Dict[str, List[str]] = {}
        for interaction in history:
            for token in content_tokens(f'{interaction.input} {interaction.response}'):
                counts[token] += 1
                ids = contributors.setdefault(token, [])
                if interaction.id not in ids:
                    ids.append(interaction.id)

        # most_common keeps first-seen order among equal counts
        return [
            RecurringTheme(token=token, count=count, interaction_ids=contributors[token])
            for token, count in counts.most_common() if count >= self.config.min_occurrences
        ][:self.config.max_themes]

    @staticmethod
    def _causal_chains(history: Sequence[Interaction]) -> List[List[str]]:
        """Maximal paths along previous-interaction links inside the window."""
        in_window = {interaction.id for interaction in history}
        successors: Dict[str, List[str]] = {}
        roots = []
        for interaction in history:
            previous = interaction.previous_interaction_id
            if previous and previous in in_window and previous != interaction.id:
                successors.setdefault(previous, []).append(interaction.id)
            else:
                roots.append(interaction.id)

        chains = []
        for root in roots:
            stack = [[root]]
            while stack:
                path = stack.pop()
                following = [n for n in successors.get(path[-1], []) if n not in path]
                if not following:
                    if len(path) >= 2:
                        chains.append(path)
                    continue
                # Reversed so the earliest branch is completed first
                for next_id in reversed(following):
                    stack.append(path + [next_id])
        return chains

    # -- structural matching ------------------------------------------------------

    def match_structure(self, input_text: str, history: Sequence[Interaction]) -> Optional[PatternMatch]:
        """Pattern mined from the latest turns that the new input continues, if any.

        Args:
            input_text: The new user input
            history: Interactions in chronological order

        Returns:
            PatternMatch, or None when fewer than three turns exist or nothing matches
        """
        window = list(history)[-self.config.window:]
        if len(window) < MIN_STRUCTURE_TURNS:
            return None

        questions = sum(1 for turn in window if is_question(turn.input, self.question_cues))
        statements = len(window) - questions
        if questions > statements * 0.5 and is_question(input_text, self.question_cues):
            return PatternMatch(pattern=QUESTION_ANSWER, confidence=QUESTION_ANSWER_CONFIDENCE)

        topics = [set(extract_topics(turn.text)) for turn in window]
        progression = sum(_jaccard(topics[i - 1], topics[i]) for i in range(1, len(topics))) / (len(topics) - 1)
        if progression > 0.5 and set(extract_topics(input_text)) & topics[-1]:
            return PatternMatch(pattern=TOPIC_PROGRESSION, confidence=round(progression, 4))

        return None
