"""
Relationship Classifier: assigns one of nine relationship categories to a new turn.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from ..models.core import ClassificationContext, Interaction, RelationshipCategory, RelationshipResult
from ..utils.config import SimilarityConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import contains_cue
from .pattern_detection import PatternDetector
from .similarity import SimilarityEngine

logger = get_logger(__name__)

RESUMPTION_HISTORY_SPAN = 20
MIN_RESUMPTION_TEXT_LENGTH = 10

TRANSITIONS: Dict[RelationshipCategory, Tuple[str, ...]] = {
    RelationshipCategory.DIRECT_CONTINUATION: (
        "Exactly – let's go deeper on that…",
        'Perfect follow-up…',
        'Building on that…',
        'Let me expand on that…',
    ),
    RelationshipCategory.STRONG_RELATEDNESS: (
        'That connects perfectly…',
        'This fits right in…',
        'Related to what we were discussing…',
        'That ties in nicely…',
    ),
    RelationshipCategory.MODERATE_RELATEDNESS: (
        'Building on our earlier point…',
        'Related angle here…',
        'This connects to what we covered…',
        'Similar theme…',
    ),
    RelationshipCategory.PATTERN_REINFORCEMENT: (
        'Another instance of this pattern…',
        'See the chain growing…',
        'This follows the same pattern…',
        'The pattern continues…',
    ),
    RelationshipCategory.CLARIFICATION: (
        "Good – let's focus precisely on…",
        'Clarifying that part…',
        'Zooming in on…',
        "Let's drill down into…",
    ),
    RelationshipCategory.WEAK_SHIFT: (
        'Ok, switching topics…',
        'Moving to your new selection…',
        "Let's shift focus to…",
        'Switching to…',
    ),
    RelationshipCategory.RESUMPTION: (
        'Going back to where we left off…',
        'Picking up the earlier thread…',
        'Resuming our discussion about…',
        'Returning to…',
    ),
    RelationshipCategory.CONTRADICTION: (
        "Interesting challenge – let's examine that…",
        "Good point – let's reconsider…",
        "That's a valid concern…",
        "Let's address that directly…",
    ),
    RelationshipCategory.FIRST_INTERACTION: (
        'Starting fresh with this…',
        "Let's begin with…",
        'Looking at…',
        'Examining…',
    ),
}


class TransitionSelector:
    """Picks a transition label per category without repeating the last few it handed out."""

    def __init__(self, max_recent: int = 10):
        self._recent: Deque[str] = deque(maxlen=max_recent)

    def select(self,
               category: RelationshipCategory,
               topic: Optional[str] = None,
               previous_topic: Optional[str] = None) -> str:
        phrases = TRANSITIONS.get(RelationshipCategory(category), TRANSITIONS[RelationshipCategory.WEAK_SHIFT])
        fresh = [phrase for phrase in phrases if phrase not in self._recent]
        selected = (fresh or list(phrases))[0]
        self._recent.append(selected)

        if topic and previous_topic:
            if category == RelationshipCategory.WEAK_SHIFT:
                return f'Switching to {topic}…'
            if category in (RelationshipCategory.STRONG_RELATEDNESS, RelationshipCategory.MODERATE_RELATEDNESS):
                return f'{selected} {topic} relates to {previous_topic}…'
        return selected

    def clear(self) -> None:
        self._recent.clear()


@dataclass
class Verdict:
    """Outcome of a rule that fired."""
    category: RelationshipCategory
    confidence: float
    similarity: float
    pattern: Optional[str] = None
    resume_from_id: Optional[str] = None


class _Evaluation:
    """Per-call scratch state; similarity scores are computed at most once."""

    def __init__(self, engine: SimilarityEngine, input_text: str, context: ClassificationContext):
        self.engine = engine
        self.input_text = input_text
        self.context = context
        self._current: Optional[float] = None
        self._recent: Optional[List[Tuple[Interaction, float]]] = None

    async def current_similarity(self) -> float:
        if self._current is None:
            sentence = self.context.current_sentence
            self._current = await self.engine.similarity(sentence, self.input_text) if sentence else 0.0
        return self._current

    async def recent_scores(self) -> List[Tuple[Interaction, float]]:
        if self._recent is None:
            turns = list(self.context.recent_turns)
            scores = await asyncio.gather(*(self.engine.similarity(turn.text, self.input_text) for turn in turns))
            self._recent = list(zip(turns, scores))
        return self._recent

    async def recent_similarity(self) -> float:
        scores = await self.recent_scores()
        return max((score for _, score in scores), default=0.0)

    async def max_similarity(self) -> float:
        current, recent = await asyncio.gather(self.current_similarity(), self.recent_similarity())
        return max(current, recent)


Rule = Tuple[str, Callable[[_Evaluation], Awaitable[Optional[Verdict]]]]


class RelationshipClassifier:
    """Deterministic first-match-wins decision procedure over an ordered rule table.

    Rules are evaluated strictly in the order of ``self.rules``. A rule that
    raises is logged and skipped, and when nothing fires the turn is treated as
    a weak shift, so ``classify`` always returns a complete RelationshipResult.
    """

    def __init__(self,
                 similarity_engine: SimilarityEngine,
                 pattern_detector: Optional[PatternDetector] = None,
                 similarity_config: Optional[SimilarityConfig] = None,
                 transition_selector: Optional[TransitionSelector] = None):
        self.engine = similarity_engine
        self.pattern_detector = pattern_detector
        self.config = similarity_config or config.similarity
        self.transitions = transition_selector or TransitionSelector()

        self.rules: List[Rule] = [
            ('first_interaction', self._first_interaction),
            ('resumption', self._resumption),
            ('contradiction', self._contradiction),
            ('direct_continuation', self._direct_continuation),
            ('strong_relatedness', self._strong_relatedness),
            ('moderate_relatedness', self._moderate_relatedness),
            ('clarification', self._clarification),
            ('pattern_reinforcement', self._pattern_reinforcement),
        ]

    async def classify(self, input_text: str, context: ClassificationContext) -> RelationshipResult:
        """Classify how ``input_text`` relates to the discourse in ``context``.

        Args:
            input_text: The new user utterance
            context: Current sentence, recent turns, history and hints

        Returns:
            RelationshipResult with category, confidence, similarity and transition label
        """
        evaluation = _Evaluation(self.engine, input_text or '', context)

        verdict = None
        for name, rule in self.rules:
            try:
                verdict = await rule(evaluation)
            except Exception as e:
                logger.error(f'Relationship rule {name} failed, skipping: {e}')
                continue
            if verdict is not None:
                logger.debug(f'Rule {name} matched with confidence {verdict.confidence}')
                break

        if verdict is None:
            verdict = await self._weak_shift(evaluation)

        related_ids = await self._related_ids(evaluation, verdict.category)
        transition = self.transitions.select(verdict.category, context.topic_hint, context.previous_topic_hint)
        return RelationshipResult(category=verdict.category,
                                  confidence=verdict.confidence,
                                  similarity=verdict.similarity,
                                  transition=transition,
                                  pattern=verdict.pattern,
                                  resume_from_id=verdict.resume_from_id,
                                  related_ids=related_ids)

    async def _related_ids(self, evaluation: _Evaluation, category: RelationshipCategory) -> Tuple[str, ...]:
        if category == RelationshipCategory.FIRST_INTERACTION:
            return ()
        try:
            scores = await evaluation.recent_scores()
        except Exception as e:
            logger.error(f'Scoring recent turns for related ids failed: {e}')
            return ()
        return tuple(turn.id for turn, score in scores if score >= self.config.moderate_threshold)

    # -- rules, in evaluation order ------------------------------------------------

    async def _first_interaction(self, evaluation: _Evaluation) -> Optional[Verdict]:
        context = evaluation.context
        if context.is_first_interaction or not context.has_prior_context:
            return Verdict(RelationshipCategory.FIRST_INTERACTION, confidence=1.0, similarity=0.0)
        return None

    async def _resumption(self, evaluation: _Evaluation) -> Optional[Verdict]:
        if not contains_cue(evaluation.input_text, self.config.resumption_cues):
            return None

        context = evaluation.context
        candidates: Dict[str, Interaction] = {}
        for turn in list(context.recent_turns) + list(context.full_history[-RESUMPTION_HISTORY_SPAN:]):
            if len(turn.text.strip()) >= MIN_RESUMPTION_TEXT_LENGTH:
                candidates.setdefault(turn.id, turn)
        if not candidates:
            return None

        turns = list(candidates.values())
        scores = await asyncio.gather(*(self.engine.similarity(turn.text, evaluation.input_text) for turn in turns))
        best_turn, best_score = max(zip(turns, scores), key=lambda pair: pair[1])
        if best_score > self.config.resumption_threshold:
            return Verdict(RelationshipCategory.RESUMPTION,
                           confidence=0.9,
                           similarity=best_score,
                           resume_from_id=best_turn.id)
        return None

    async def _contradiction(self, evaluation: _Evaluation) -> Optional[Verdict]:
        if not evaluation.context.current_sentence:
            return None
        if not contains_cue(evaluation.input_text, self.config.contradiction_cues):
            return None
        similarity = await evaluation.current_similarity()
        if similarity >= self.config.same_topic_threshold:
            return Verdict(RelationshipCategory.CONTRADICTION, confidence=0.85, similarity=similarity)
        return None

    async def _direct_continuation(self, evaluation: _Evaluation) -> Optional[Verdict]:
        current = await evaluation.current_similarity()
        if current >= self.config.direct_threshold:
            return Verdict(RelationshipCategory.DIRECT_CONTINUATION, confidence=0.9, similarity=current)
        return None

    async def _strong_relatedness(self, evaluation: _Evaluation) -> Optional[Verdict]:
        maximum = await evaluation.max_similarity()
        if maximum >= self.config.direct_threshold:
            return Verdict(RelationshipCategory.STRONG_RELATEDNESS, confidence=0.85, similarity=maximum)
        return None

    async def _moderate_relatedness(self, evaluation: _Evaluation) -> Optional[Verdict]:
        maximum = await evaluation.max_similarity()
        if self.config.moderate_threshold <= maximum < self.config.direct_threshold:
            return Verdict(RelationshipCategory.MODERATE_RELATEDNESS, confidence=0.75, similarity=maximum)
        return None

    async def _clarification(self, evaluation: _Evaluation) -> Optional[Verdict]:
        maximum = await evaluation.max_similarity()
        if maximum >= self.config.clarification_threshold and contains_cue(evaluation.input_text,
                                                                           self.config.clarification_cues):
            return Verdict(RelationshipCategory.CLARIFICATION, confidence=0.8, similarity=maximum)
        return None

    async def _pattern_reinforcement(self, evaluation: _Evaluation) -> Optional[Verdict]:
        if self.pattern_detector is None:
            return None
        match = self.pattern_detector.match_structure(evaluation.input_text, evaluation.context.full_history)
        if match is None:
            return None
        return Verdict(RelationshipCategory.PATTERN_REINFORCEMENT,
                       confidence=match.confidence,
                       similarity=await evaluation.max_similarity(),
                       pattern=match.pattern)

    async def _weak_shift(self, evaluation: _Evaluation) -> Verdict:
        try:
            maximum = await evaluation.max_similarity()
        except Exception as e:
            logger.error(f'Similarity for weak shift failed: {e}')
            maximum = 0.0
        return Verdict(RelationshipCategory.WEAK_SHIFT, confidence=0.7, similarity=maximum)
