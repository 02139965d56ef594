"""Tests for the relationship classifier and transition selection."""

import pytest

from continuity.models.core import ClassificationContext, RelationshipCategory
from continuity.services.pattern_detection import QUESTION_ANSWER, PatternDetector
from continuity.services.relationship import TRANSITIONS, RelationshipClassifier, TransitionSelector


@pytest.fixture
def classifier(lexical_engine, similarity_config, pattern_config, clock) -> RelationshipClassifier:
    detector = PatternDetector(pattern_config, similarity_config, clock=clock)
    return RelationshipClassifier(lexical_engine, detector, similarity_config)


# -- rule outcomes -------------------------------------------------------------


async def test_first_interaction(classifier) -> None:
    result = await classifier.classify('Tell me about Starlink', ClassificationContext())
    assert result.category == RelationshipCategory.FIRST_INTERACTION
    assert result.confidence == 1.0
    assert result.similarity == 0.0
    assert result.related_ids == ()


async def test_explicit_first_interaction_flag_wins(classifier) -> None:
    context = ClassificationContext(current_sentence='Starlink pricing', is_first_interaction=True)
    result = await classifier.classify('Starlink pricing', context)
    assert result.category == RelationshipCategory.FIRST_INTERACTION


async def test_moderate_relatedness_for_refined_question(classifier) -> None:
    context = ClassificationContext(current_sentence='Starlink pricing')
    result = await classifier.classify('Starlink pricing for 2026', context)
    assert result.category == RelationshipCategory.MODERATE_RELATEDNESS
    assert result.similarity == pytest.approx(0.5)
    assert result.confidence == pytest.approx(0.75)


async def test_resumption_points_at_matching_turn(classifier, make_interaction) -> None:
    mars = make_interaction('what about mars colonization')
    tesla = make_interaction('Tesla margins this quarter')
    context = ClassificationContext(current_sentence='Tesla margins look thin this quarter',
                                    recent_turns=[mars, tesla],
                                    full_history=[mars, tesla])

    result = await classifier.classify('going back to what we discussed about Mars', context)

    assert result.category == RelationshipCategory.RESUMPTION
    assert result.resume_from_id == mars.id
    assert result.similarity == pytest.approx(3 / 7)
    assert result.confidence == pytest.approx(0.9)


async def test_resumption_evaluated_before_direct_continuation(classifier, make_interaction) -> None:
    earlier = make_interaction('back to the battery supply chain')
    context = ClassificationContext(current_sentence='back to the battery supply chain', recent_turns=[earlier])

    result = await classifier.classify('back to the battery supply chain', context)

    assert result.category == RelationshipCategory.RESUMPTION


async def test_direct_continuation(classifier) -> None:
    context = ClassificationContext(current_sentence='Tesla battery supply chain risks')
    result = await classifier.classify('Tesla battery supply chain risks', context)
    assert result.category == RelationshipCategory.DIRECT_CONTINUATION
    assert result.similarity == pytest.approx(1.0)


async def test_strong_relatedness_to_recent_turn(classifier, make_interaction) -> None:
    turn = make_interaction('Tesla battery supply chain risks')
    context = ClassificationContext(current_sentence='Interest rates outlook', recent_turns=[turn])

    result = await classifier.classify('Tesla battery supply chain risks', context)

    assert result.category == RelationshipCategory.STRONG_RELATEDNESS
    assert result.related_ids == (turn.id, )


async def test_contradiction_on_same_topic(classifier) -> None:
    context = ClassificationContext(current_sentence='Tesla margins will expand next year')
    result = await classifier.classify('I disagree, Tesla margins will not expand next year', context)
    assert result.category == RelationshipCategory.CONTRADICTION
    assert result.confidence == pytest.approx(0.85)


async def test_contradiction_cue_on_other_topic_is_not_contradiction(classifier) -> None:
    context = ClassificationContext(current_sentence='Tesla margins will expand next year')
    result = await classifier.classify('No, show me Rivian deliveries', context)
    assert result.category != RelationshipCategory.CONTRADICTION


async def test_clarification(classifier) -> None:
    # {explain, the, starlink, growth} vs {starlink, subscriber, growth, europe}: 2/6
    context = ClassificationContext(current_sentence='Starlink subscriber growth in Europe')
    result = await classifier.classify('explain the starlink growth', context)
    assert result.category == RelationshipCategory.CLARIFICATION
    assert result.confidence == pytest.approx(0.8)


async def test_pattern_reinforcement_for_question_series(classifier, make_interaction) -> None:
    history = [
        make_interaction('What is the Starlink price?'),
        make_interaction('How big is the launch market?'),
        make_interaction('Why did margins fall?'),
    ]
    result = await classifier.classify('Is Rivian profitable?', ClassificationContext(full_history=history))
    assert result.category == RelationshipCategory.PATTERN_REINFORCEMENT
    assert result.pattern == QUESTION_ANSWER
    assert result.confidence == pytest.approx(0.7)


async def test_weak_shift_fallback(classifier, make_interaction) -> None:
    turns = [make_interaction('Starlink pricing update'), make_interaction('Tesla margin outlook')]
    context = ClassificationContext(recent_turns=turns, full_history=turns)

    result = await classifier.classify('Rivian delivery numbers', context)

    assert result.category == RelationshipCategory.WEAK_SHIFT
    assert result.confidence == pytest.approx(0.7)


async def test_failing_rule_falls_through(classifier, make_interaction) -> None:

    async def broken(evaluation):
        raise RuntimeError('boom')

    classifier.rules = [(name, broken if name == 'resumption' else rule) for name, rule in classifier.rules]
    mars = make_interaction('what about mars colonization')
    context = ClassificationContext(current_sentence='Tesla margins look thin', recent_turns=[mars])

    result = await classifier.classify('going back to what we discussed about Mars', context)

    assert result.category == RelationshipCategory.MODERATE_RELATEDNESS
    assert result.related_ids == (mars.id, )


async def test_classification_is_deterministic(lexical_engine, similarity_config, make_interaction) -> None:
    turn = make_interaction('what about mars colonization')
    context = ClassificationContext(current_sentence='Starlink pricing', recent_turns=[turn])

    first = await RelationshipClassifier(lexical_engine, None, similarity_config).classify('Starlink pricing for 2026', context)
    second = await RelationshipClassifier(lexical_engine, None, similarity_config).classify('Starlink pricing for 2026', context)

    assert first == second


# -- transitions ------------------------------------------------------------------


async def test_weak_shift_transition_names_new_topic(classifier, make_interaction) -> None:
    turns = [make_interaction('Starlink pricing update'), make_interaction('Tesla margin outlook')]
    context = ClassificationContext(recent_turns=turns, full_history=turns, topic_hint='RIVN', previous_topic_hint='TSLA')

    result = await classifier.classify('Rivian delivery numbers', context)

    assert result.transition == 'Switching to RIVN…'


def test_relatedness_transition_mentions_both_topics() -> None:
    label = TransitionSelector().select(RelationshipCategory.MODERATE_RELATEDNESS, 'RIVN', 'TSLA')
    assert label.endswith('RIVN relates to TSLA…')


def test_transitions_do_not_repeat_until_pool_exhausted() -> None:
    selector = TransitionSelector()
    labels = [selector.select(RelationshipCategory.DIRECT_CONTINUATION) for _ in range(4)]
    assert sorted(labels) == sorted(TRANSITIONS[RelationshipCategory.DIRECT_CONTINUATION])


def test_fresh_selectors_agree() -> None:
    assert TransitionSelector().select(RelationshipCategory.RESUMPTION) == TransitionSelector().select(
        RelationshipCategory.RESUMPTION)
