"""Tests for pattern detection and its cache."""

from unittest.mock import patch

import pytest

from continuity.models.core import RelationshipCategory
from continuity.services.pattern_detection import (QUESTION_ANSWER, TOPIC_PROGRESSION, PatternDetector, window_hash)
from continuity.utils.config import PatternConfig


@pytest.fixture
def detector(pattern_config, similarity_config, clock) -> PatternDetector:
    return PatternDetector(pattern_config, similarity_config, clock=clock)


# -- computation ------------------------------------------------------------------


def test_recurring_themes_need_three_occurrences(detector, make_interaction) -> None:
    history = [
        make_interaction('Starlink pricing', 'Pricing varies by region'),
        make_interaction('Starlink in Europe', 'Coverage is expanding'),
        make_interaction('Starlink capacity', 'Capacity grows with launches'),
    ]

    patterns = detector.compute_patterns(history)
    themes = {theme.token: theme for theme in patterns.recurring_themes}

    assert themes['starlink'].count == 3
    assert themes['starlink'].interaction_ids == [i.id for i in history]
    assert 'europe' not in themes


def test_theme_limit_applies(make_interaction, clock) -> None:
    detector = PatternDetector(PatternConfig(max_themes=1, min_occurrences=1), clock=clock)
    patterns = detector.compute_patterns([make_interaction('orbit orbit orbit launch launch')])
    assert patterns.theme_tokens() == ['orbit']


def test_contradictions_listed_by_id(detector, make_interaction) -> None:
    plain = make_interaction('Margins will expand')
    objection = make_interaction('No, margins will shrink', category=RelationshipCategory.CONTRADICTION)

    patterns = detector.compute_patterns([plain, objection])

    assert patterns.contradictions == [objection.id]


def test_causal_chains_split_on_branches(detector, make_interaction) -> None:
    a = make_interaction('root question')
    b = make_interaction('follow up one', previous=a)
    c = make_interaction('follow up two', previous=b)
    d = make_interaction('side branch', previous=a)
    lone = make_interaction('unrelated turn')

    patterns = detector.compute_patterns([a, b, c, d, lone])

    assert patterns.causal_chains == [[a.id, b.id, c.id], [a.id, d.id]]


def test_window_hash_depends_on_order(make_interaction) -> None:
    a, b = make_interaction('first'), make_interaction('second')
    assert window_hash([a, b]) != window_hash([b, a])
    assert window_hash([a, b]) == window_hash([a, b])


# -- cache ----------------------------------------------------------------------------


async def test_cache_hit_skips_recomputation(detector, make_interaction) -> None:
    history = [make_interaction('Starlink pricing'), make_interaction('Starlink coverage')]

    with patch.object(detector, 'compute_patterns', wraps=detector.compute_patterns) as compute:
        first = await detector.detect_patterns(history)
        second = await detector.detect_patterns(history)

    assert compute.call_count == 1
    assert second is first
    assert first.window_hash == window_hash(history)


async def test_cache_entry_expires_after_ttl(detector, make_interaction, clock) -> None:
    history = [make_interaction('Starlink pricing')]

    with patch.object(detector, 'compute_patterns', wraps=detector.compute_patterns) as compute:
        await detector.detect_patterns(history)
        clock.advance(1799)
        await detector.detect_patterns(history)
        clock.advance(2)
        await detector.detect_patterns(history)

    assert compute.call_count == 2


async def test_invalidate_clears_cache(detector, make_interaction) -> None:
    await detector.detect_patterns([make_interaction('Starlink pricing')])
    assert detector.cache_size() == 1
    detector.invalidate()
    assert detector.cache_size() == 0


# -- structural matching ------------------------------------------------------------


def test_match_structure_needs_three_turns(detector, make_interaction) -> None:
    history = [make_interaction('Why is it cheap?'), make_interaction('How is it built?')]
    assert detector.match_structure('What comes next?', history) is None


def test_question_answer_pattern(detector, make_interaction) -> None:
    history = [
        make_interaction('Why is Starlink cheap?'),
        make_interaction('Tesla margins fell'),
        make_interaction('How many launches per year?'),
    ]
    match = detector.match_structure('Is Rivian profitable?', history)
    assert match.pattern == QUESTION_ANSWER
    assert match.confidence == pytest.approx(0.7)


def test_topic_progression_pattern(detector, make_interaction) -> None:
    history = [make_interaction('starlink pricing') for _ in range(3)]
    match = detector.match_structure('starlink pricing trends', history)
    assert match.pattern == TOPIC_PROGRESSION
    assert match.confidence == pytest.approx(1.0)


def test_no_structure_for_unrelated_statements(detector, make_interaction) -> None:
    history = [make_interaction('starlink pricing'), make_interaction('tesla margins'), make_interaction('rivian deliveries')]
    assert detector.match_structure('boring tunnels', history) is None
