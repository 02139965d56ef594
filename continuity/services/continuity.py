"""
Continuity pipeline: classify a new turn, gather its context, and record completed turns.
"""

import asyncio
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.core import (ArchivedSummary, ClassificationContext, ContextPackage, ContinuityHints, Interaction,
                           PatternSet, RelationshipCategory, RelationshipResult, SemanticPayload, ValidationError)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import AppConfig, MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchArchive
from ..utils.text_utils import extract_topics, tokenize
from ..utils.timestamp_utils import utc_now
from .memory_store import MemoryStore, MemoryStoreError
from .pattern_detection import PatternDetector
from .relationship import RelationshipClassifier
from .retrieval import RetrievalOrchestrator
from .similarity import CircuitBreaker, SimilarityEngine
from .summarization import SummarizationService

logger = get_logger(__name__)

DEGRADED_REASON = 'unable to use conversation history this turn'

REFERENCE_TYPES = {
    RelationshipCategory.DIRECT_CONTINUATION: 'continue',
    RelationshipCategory.STRONG_RELATEDNESS: 'connect',
    RelationshipCategory.MODERATE_RELATEDNESS: 'build_on',
    RelationshipCategory.PATTERN_REINFORCEMENT: 'reinforce_pattern',
    RelationshipCategory.CLARIFICATION: 'clarify',
    RelationshipCategory.RESUMPTION: 'resume',
    RelationshipCategory.CONTRADICTION: 'address_contradiction',
}

MAX_HINT_THEMES = 3


class ContinuityError(Exception):
    """Custom exception for continuity pipeline errors."""
    pass


def previous_topic(turns: Sequence[Interaction]) -> Optional[str]:
    """Most frequent token longer than three characters in the latest turn."""
    if not turns:
        return None
    words = [token for token in tokenize(turns[-1].text) if len(token) > 3]
    if not words:
        return None
    return Counter(words).most_common(1)[0][0]


def build_hints(relationship: RelationshipResult, recent_turns: Sequence[Interaction], patterns: PatternSet) -> ContinuityHints:
    """
    Phrasing instructions for the response generator.

    Args:
        relationship: Classification of the new turn
        recent_turns: Latest turns of the session, oldest first
        patterns: Patterns detected over the history window

    Returns:
        ContinuityHints for this turn
    """
    category = relationship.category
    return ContinuityHints(should_reference_previous=category in REFERENCE_TYPES,
                           reference_type=REFERENCE_TYPES.get(category),
                           should_compare=category == RelationshipCategory.STRONG_RELATEDNESS,
                           should_contrast=category == RelationshipCategory.CONTRADICTION,
                           should_maintain_flow=category <= RelationshipCategory.MODERATE_RELATEDNESS,
                           should_acknowledge_shift=category >= RelationshipCategory.WEAK_SHIFT,
                           previous_topic=previous_topic(recent_turns),
                           resume_from_id=relationship.resume_from_id,
                           pattern=relationship.pattern,
                           recurring_themes=patterns.theme_tokens(MAX_HINT_THEMES))


class ContinuityService:
    """Wires the similarity engine, classifier, memory store, pattern detector and retrieval together.

    ``process_turn`` is called before the response is generated and never
    writes. ``record_turn`` is called once the response exists and is the only
    place interactions are created.
    """

    def __init__(self,
                 store: MemoryStore,
                 similarity_engine: SimilarityEngine,
                 classifier: Optional[RelationshipClassifier] = None,
                 pattern_detector: Optional[PatternDetector] = None,
                 retrieval: Optional[RetrievalOrchestrator] = None,
                 memory_config: Optional[MemoryConfig] = None,
                 summarizer: Optional[SummarizationService] = None):
        """
        Initialize the continuity service.

        Args:
            store: Memory store holding the conversation history
            similarity_engine: Shared similarity engine
            classifier: Relationship classifier; built over the engine if None
            pattern_detector: Pattern detector; built with global config if None
            retrieval: Retrieval orchestrator; built over store and engine if None
            memory_config: Window sizes and store timeout; uses global config if None
            summarizer: Optional per-turn summarizer used by ``record_turn``
        """
        self.store = store
        self.engine = similarity_engine
        self.pattern_detector = pattern_detector or PatternDetector()
        self.classifier = classifier or RelationshipClassifier(similarity_engine, self.pattern_detector)
        self.retrieval = retrieval or RetrievalOrchestrator(store, similarity_engine)
        self.config = memory_config or config.memory
        self.summarizer = summarizer
        # serializes tail read and append per session so turn indices stay sequential
        self._session_locks: Dict[str, asyncio.Lock] = {}

    async def _read(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.config.store_timeout_seconds)

    async def _load_context(self, session_id: str) -> Tuple[List[Interaction], List[Interaction], List[ArchivedSummary]]:
        recent, history = await self._read(
            asyncio.gather(self.store.query_by_session(session_id, self.config.recent_window),
                           self.store.load_history(self.config.history_window)))
        summaries = self.store.summaries(self.config.summary_window)
        # query_by_session is newest first
        return list(reversed(recent)), history, summaries

    async def process_turn(self,
                           input_text: str,
                           session_id: str,
                           current_sentence: Optional[str] = None,
                           topic_hint: Optional[str] = None,
                           previous_topic_hint: Optional[str] = None) -> ContextPackage:
        """
        Build the context package for a new user turn.

        Args:
            input_text: The new user utterance
            session_id: Conversation session id
            current_sentence: The sentence currently in focus, if any
            topic_hint: What the new turn is about, for transition phrasing
            previous_topic_hint: What the conversation was on before

        Returns:
            ContextPackage; degraded when the history cannot be read

        Raises:
            ValidationError: If the input text is empty
        """
        if not input_text or not input_text.strip():
            raise ValidationError('Input text must not be empty')

        try:
            recent_turns, history, summaries = await self._load_context(session_id)
        except (MemoryStoreError, asyncio.TimeoutError) as e:
            logger.warning(f'History unavailable for session {session_id}, answering without it: {e!r}')
            return self._degraded()

        context = ClassificationContext(current_sentence=current_sentence,
                                        recent_turns=recent_turns,
                                        full_history=history,
                                        is_first_interaction=not history and not current_sentence,
                                        topic_hint=topic_hint,
                                        previous_topic_hint=previous_topic_hint)
        relationship = await self.classifier.classify(input_text, context)
        logger.info(f'Session {session_id}: turn classified as category {int(relationship.category)} '
                    f'(confidence {relationship.confidence:.2f}, similarity {relationship.similarity:.2f})')

        patterns, retrieved = await asyncio.gather(self._patterns(history),
                                                   self._retrieve(input_text, session_id, relationship))

        return ContextPackage(relationship=relationship,
                              retrieved=retrieved,
                              patterns=patterns,
                              continuity_hints=build_hints(relationship, recent_turns, patterns),
                              archived_summaries=summaries)

    async def _retrieve(self, input_text: str, session_id: str, relationship: RelationshipResult) -> List[Interaction]:
        try:
            return await self._read(self.retrieval.retrieve(input_text, relationship=relationship))
        except (MemoryStoreError, asyncio.TimeoutError) as e:
            logger.warning(f'Retrieval unavailable for session {session_id}, continuing without it: {e!r}')
            return []

    async def _patterns(self, history: List[Interaction]) -> PatternSet:
        try:
            return await self.pattern_detector.detect_patterns(history)
        except Exception as e:
            logger.error(f'Pattern detection failed, continuing without patterns: {e}')
            return PatternSet()

    def _degraded(self) -> ContextPackage:
        transition = self.classifier.transitions.select(RelationshipCategory.FIRST_INTERACTION)
        relationship = RelationshipResult(category=RelationshipCategory.FIRST_INTERACTION,
                                          confidence=1.0,
                                          similarity=0.0,
                                          transition=transition)
        return ContextPackage(relationship=relationship,
                              continuity_hints=build_hints(relationship, [], PatternSet()),
                              degraded=True,
                              degraded_reason=DEGRADED_REASON)

    async def record_turn(self,
                          input_text: str,
                          response_text: str,
                          relationship: RelationshipResult,
                          session_id: str,
                          topic_hint: Optional[str] = None,
                          created_at: Optional[datetime] = None,
                          summarize: bool = False) -> Interaction:
        """
        Persist a completed turn and attach its embeddings.

        Args:
            input_text: The user utterance
            response_text: The generated response
            relationship: Classification returned by ``process_turn``
            session_id: Conversation session id
            topic_hint: Topic to index the turn under in addition to extracted ones
            created_at: Turn timestamp; now if None
            summarize: Also attach a one-turn summary when a summarizer is configured

        Returns:
            The stored interaction

        Raises:
            ValidationError: If the input is empty or the turn is out of session order
            ContinuityError: If the store rejects the append
        """
        if not input_text or not input_text.strip():
            raise ValidationError('Input text must not be empty')

        topics = extract_topics(f'{input_text} {response_text or ""}')
        if topic_hint and topic_hint.lower() not in topics:
            topics.insert(0, topic_hint.lower())

        async with self._session_locks.setdefault(session_id, asyncio.Lock()):
            try:
                tail = await self._read(self.store.session_tail(session_id))
            except (MemoryStoreError, asyncio.TimeoutError) as e:
                logger.error(f'Cannot read session tail for {session_id}: {e!r}')
                raise ContinuityError(f'Failed to record turn: {e!r}')

            interaction = Interaction(input=input_text,
                                      response=response_text or '',
                                      relationship=relationship,
                                      session_id=session_id,
                                      created_at=created_at or utc_now(),
                                      turn_index=tail.turn_index + 1 if tail else 0,
                                      semantics=SemanticPayload(topics=topics),
                                      previous_interaction_id=tail.id if tail else None)

            # Nothing is written before this point, so a cancelled call leaves no trace
            try:
                await self.store.append(interaction)
            except MemoryStoreError as e:
                logger.error(f'Appending interaction for session {session_id} failed: {e}')
                raise ContinuityError(f'Failed to record turn: {e}')

        await self._attach_derived(interaction, summarize)
        return interaction

    async def _attach_derived(self, interaction: Interaction, summarize: bool) -> None:
        try:
            embedding, response_embedding = await asyncio.gather(self.engine.embed(interaction.input),
                                                                 self.engine.embed(interaction.response))
            summary = None
            if summarize and self.summarizer is not None:
                summary = await self.summarizer.summarize_turn(interaction)
            self.store.attach_derived(interaction.id,
                                      embedding=embedding,
                                      input_embedding=embedding,
                                      response_embedding=response_embedding,
                                      summary=summary)
        except (MemoryStoreError, ValueError) as e:
            logger.warning(f'Derived fields for interaction {interaction.id} not attached: {e}')

    def health(self) -> Dict[str, Any]:
        return {
            'store': self.store.stats(),
            'similarity': self.engine.stats(),
            'pattern_cache_size': self.pattern_detector.cache_size(),
        }


def create_service(app_config: Optional[AppConfig] = None) -> ContinuityService:
    """
    Build a ContinuityService from configuration.

    Collaborators that are disabled or cannot be created are left out and the
    service runs without them (lexical similarity, no summaries, no archive).

    Args:
        app_config: Application configuration; uses global config if None

    Returns:
        Wired ContinuityService
    """
    app_config = app_config or config

    provider = None
    if app_config.bedrock_embed.enabled:
        try:
            provider = BedrockEmbed(app_config.bedrock_embed)
        except Exception as e:
            logger.warning(f'Embedding provider unavailable, using lexical similarity only: {e}')

    summarizer = SummarizationService.from_config(app_config.bedrock_llm)

    archive = None
    if app_config.opensearch.enabled:
        try:
            archive = OpenSearchArchive.from_config(app_config.opensearch)
        except Exception as e:
            logger.warning(f'OpenSearch archive unavailable, evicted interactions will not be archived: {e}')

    engine = SimilarityEngine(provider, app_config.similarity, CircuitBreaker.from_config(app_config.circuit_breaker))
    store = MemoryStore(app_config.memory, summarizer=summarizer if summarizer.is_available() else None, archive=archive)
    detector = PatternDetector(app_config.patterns, app_config.similarity)
    classifier = RelationshipClassifier(engine, detector, app_config.similarity)
    retrieval = RetrievalOrchestrator(store, engine, app_config.retrieval)

    logger.info(f'Continuity service ready (embeddings: {provider is not None}, '
                f'summaries: {summarizer.is_available()}, archive: {archive is not None})')
    return ContinuityService(store, engine, classifier, detector, retrieval, app_config.memory, summarizer)
