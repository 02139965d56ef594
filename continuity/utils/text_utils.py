"""
Text utilities shared by similarity, classification, patterns and retrieval.
"""

import re
from collections import Counter
from typing import Iterable, List, Optional

STOP_WORDS = frozenset([
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'by', 'from', 'as', 'is', 'was',
    'are', 'were', 'be', 'been', 'being', 'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'should', 'could',
    'may', 'might', 'must', 'can', 'this', 'that', 'these', 'those', 'i', 'you', 'he', 'she', 'it', 'we', 'they', 'what',
    'about', 'there', 'their', 'then', 'than', 'some', 'just', 'also', 'into', 'your', 'them', 'very', 'when', 'which'
])

_NON_WORD = re.compile(r'[^\w\s]')

# Shortest token indexed or looked up as a topic
TOPIC_MIN_LENGTH = 3


def tokenize(text: Optional[str], min_length: int = 1) -> List[str]:
    """Lower-case word tokens with punctuation removed.

    Args:
        text: Text to tokenize
        min_length: Drop tokens shorter than this

    Returns:
        Tokens in order of appearance
    """
    if not text:
        return []
    words = _NON_WORD.sub(' ', text.lower()).split()
    return [word for word in words if len(word) >= min_length]


def content_tokens(text: Optional[str], min_length: int = 4) -> List[str]:
    """Tokens that carry topic information: no stop words, no short tokens."""
    return [token for token in tokenize(text, min_length) if token not in STOP_WORDS]


def extract_topics(text: Optional[str], limit: int = 5) -> List[str]:
    """Most frequent content tokens of a text, first appearance breaking ties."""
    counts = Counter(content_tokens(text, min_length=TOPIC_MIN_LENGTH))
    return [token for token, _ in counts.most_common(limit)]


def contains_cue(text: Optional[str], cues: Iterable[str]) -> bool:
    """Whether any cue phrase occurs in ``text`` on word boundaries."""
    if not text:
        return False
    normalized = ' '.join(tokenize(text))
    for cue in cues:
        phrase = ' '.join(tokenize(cue))
        if phrase and re.search(rf'\b{re.escape(phrase)}\b', normalized):
            return True
    return False


def is_question(text: Optional[str], question_cues: Iterable[str] = ()) -> bool:
    """Question mark or a question cue anywhere in the text."""
    if not text:
        return False
    return '?' in text or contains_cue(text, question_cues)
