"""
Core data models for the discourse continuity engine.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple


class ValidationError(ValueError):
    """Malformed input rejected before any processing."""
    pass


class RelationshipCategory(IntEnum):
    """How a new turn relates to the discourse that came before it."""
    DIRECT_CONTINUATION = 1
    STRONG_RELATEDNESS = 2
    MODERATE_RELATEDNESS = 3
    PATTERN_REINFORCEMENT = 4
    CLARIFICATION = 5
    WEAK_SHIFT = 6
    RESUMPTION = 7
    CONTRADICTION = 8
    FIRST_INTERACTION = 9


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class RelationshipResult:
    """Classification output for one turn. Immutable once produced."""
    category: RelationshipCategory
    confidence: float
    similarity: float
    transition: str
    pattern: Optional[str] = None
    resume_from_id: Optional[str] = None
    related_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'category', RelationshipCategory(self.category))
        object.__setattr__(self, 'confidence', _clamp(self.confidence))
        object.__setattr__(self, 'similarity', _clamp(self.similarity))
        object.__setattr__(self, 'related_ids', tuple(self.related_ids))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['category'] = int(self.category)
        data['related_ids'] = list(self.related_ids)
        return data


@dataclass
class SemanticPayload:
    """Extracted topics and optional embeddings for an interaction."""
    topics: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    input_embedding: Optional[List[float]] = None
    response_embedding: Optional[List[float]] = None


@dataclass
class Interaction:
    """One accepted conversational turn.

    The id is assigned once and never changes; the only fields written after
    creation are the derived ones (embeddings, summary), attached through the
    memory store.
    """
    input: str
    response: str
    relationship: RelationshipResult
    session_id: str
    created_at: datetime
    turn_index: int = 0
    semantics: SemanticPayload = field(default_factory=SemanticPayload)
    previous_interaction_id: Optional[str] = None
    summary: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def text(self) -> str:
        """Input text, falling back to the response when the input is empty."""
        return self.input or self.response or ''

    @property
    def category(self) -> RelationshipCategory:
        return self.relationship.category

    def linked_ids(self) -> List[str]:
        """Ids this interaction points at through resume, related and previous links."""
        links = []
        if self.relationship.resume_from_id:
            links.append(self.relationship.resume_from_id)
        links.extend(self.relationship.related_ids)
        if self.previous_interaction_id:
            links.append(self.previous_interaction_id)
        unique = []
        for link in links:
            if link != self.id and link not in unique:
                unique.append(link)
        return unique

    def to_document(self) -> Dict[str, Any]:
        """Flat representation used by the archive tier."""
        return {
            'id': self.id,
            'session_id': self.session_id,
            'turn_index': self.turn_index,
            'input': self.input,
            'response': self.response,
            'category': int(self.relationship.category),
            'confidence': self.relationship.confidence,
            'similarity': self.relationship.similarity,
            'transition': self.relationship.transition,
            'pattern': self.relationship.pattern,
            'resume_from_id': self.relationship.resume_from_id,
            'related_ids': list(self.relationship.related_ids),
            'previous_interaction_id': self.previous_interaction_id,
            'topics': list(self.semantics.topics),
            'embedding': self.semantics.embedding,
            'summary': self.summary,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'Interaction':
        """Rebuild an interaction from its archive-tier representation."""
        relationship = RelationshipResult(category=RelationshipCategory(int(document['category'])),
                                          confidence=document.get('confidence') or 0.0,
                                          similarity=document.get('similarity') or 0.0,
                                          transition=document.get('transition') or '',
                                          pattern=document.get('pattern'),
                                          resume_from_id=document.get('resume_from_id'),
                                          related_ids=tuple(document.get('related_ids') or ()))
        return cls(input=document.get('input') or '',
                   response=document.get('response') or '',
                   relationship=relationship,
                   session_id=document['session_id'],
                   created_at=datetime.fromisoformat(document['created_at']),
                   turn_index=document.get('turn_index') or 0,
                   semantics=SemanticPayload(topics=list(document.get('topics') or []),
                                             embedding=document.get('embedding')),
                   previous_interaction_id=document.get('previous_interaction_id'),
                   summary=document.get('summary'),
                   id=document['id'])


@dataclass
class RecurringTheme:
    """A token that keeps coming back across a history window."""
    token: str
    count: int
    interaction_ids: List[str] = field(default_factory=list)


@dataclass
class PatternSet:
    """Recurring themes, contradictions and causal chains over a history window."""
    recurring_themes: List[RecurringTheme] = field(default_factory=list)
    contradictions: List[str] = field(default_factory=list)
    causal_chains: List[List[str]] = field(default_factory=list)
    window_hash: str = ''
    computed_at: Optional[datetime] = None

    def theme_tokens(self, limit: Optional[int] = None) -> List[str]:
        tokens = [theme.token for theme in self.recurring_themes]
        return tokens[:limit] if limit is not None else tokens


@dataclass(frozen=True)
class PatternMatch:
    """A structural pattern the new input matches, with its confidence."""
    pattern: str
    confidence: float


@dataclass
class IndexEntry:
    """Snapshot of one secondary-index list."""
    dimension: str  # time, category, topic or session
    key: str
    interaction_ids: List[str] = field(default_factory=list)


@dataclass
class ArchivedSummary:
    """Compressed record for interactions evicted from the fast tier."""
    interaction_ids: List[str]
    summary: str
    created_at: datetime
    count: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class ClassificationContext:
    """Everything the classifier looks at besides the new input."""
    current_sentence: Optional[str] = None
    recent_turns: List[Interaction] = field(default_factory=list)
    full_history: List[Interaction] = field(default_factory=list)
    is_first_interaction: bool = False
    topic_hint: Optional[str] = None  # what the new turn is about, e.g. a ticker or entity name
    previous_topic_hint: Optional[str] = None  # what the conversation was on before

    @property
    def has_prior_context(self) -> bool:
        return bool(self.current_sentence) or bool(self.recent_turns) or bool(self.full_history)


@dataclass
class ContinuityHints:
    """Phrasing instructions for the response generator."""
    should_reference_previous: bool = False
    reference_type: Optional[str] = None
    should_compare: bool = False
    should_contrast: bool = False
    should_maintain_flow: bool = False
    should_acknowledge_shift: bool = False
    previous_topic: Optional[str] = None
    resume_from_id: Optional[str] = None
    pattern: Optional[str] = None
    recurring_themes: List[str] = field(default_factory=list)


@dataclass
class ContextPackage:
    """What the response generator receives for one turn."""
    relationship: RelationshipResult
    retrieved: List[Interaction] = field(default_factory=list)
    patterns: PatternSet = field(default_factory=PatternSet)
    continuity_hints: ContinuityHints = field(default_factory=ContinuityHints)
    archived_summaries: List[ArchivedSummary] = field(default_factory=list)  # newest first
    degraded: bool = False
    degraded_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'relationship': self.relationship.to_dict(),
            'retrieved': [{
                'id': i.id,
                'input': i.input,
                'response': i.response,
                'created_at': i.created_at.isoformat()
            } for i in self.retrieved],
            'patterns': {
                'recurring_themes': [asdict(theme) for theme in self.patterns.recurring_themes],
                'contradictions': list(self.patterns.contradictions),
                'causal_chains': [list(chain) for chain in self.patterns.causal_chains],
            },
            'archived_summaries': [{
                'id': s.id,
                'summary': s.summary,
                'count': s.count,
                'created_at': s.created_at.isoformat()
            } for s in self.archived_summaries],
            'continuity_hints': asdict(self.continuity_hints),
            'degraded': self.degraded,
            'degraded_reason': self.degraded_reason,
        }
