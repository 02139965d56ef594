"""Tests for the memory store: indices, validation, retention and consistency."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import BASE_TIME

from continuity.models.core import RelationshipCategory, ValidationError
from continuity.services.memory_store import IndexConsistencyError, MemoryStore, MemoryStoreError, MemoryStoreUnavailableError
from continuity.utils.config import MemoryConfig

# -- append and queries ---------------------------------------------------------


async def test_append_then_latest_by_time(store, make_interaction) -> None:
    first = await store.append(make_interaction('Starlink pricing'))
    second = await store.append(make_interaction('Tesla margins'))

    assert await store.query_by_time(1) == [second]
    assert await store.query_by_time(from_end=False) == [first, second]
    assert await store.count() == 2
    assert await store.get(first.id) is first


async def test_secondary_indices(store, make_interaction) -> None:
    contradiction = make_interaction('No, margins will shrink', session_id='s2', category=RelationshipCategory.CONTRADICTION)
    await store.append(make_interaction('Starlink pricing in Europe', topics=['starlink', 'pricing']))
    await store.append(contradiction)

    assert await store.query_by_category(RelationshipCategory.CONTRADICTION) == [contradiction]
    assert [i.input for i in await store.query_by_topic('Starlink')] == ['Starlink pricing in Europe']
    assert await store.query_by_session('s2') == [contradiction]
    assert await store.session_tail('s2') is contradiction


async def test_topics_extracted_when_missing(store, make_interaction) -> None:
    stored = await store.append(make_interaction('Mars colonization needs cheap launches'))
    assert 'mars' in stored.semantics.topics
    assert await store.query_by_topic('mars') == [stored]


async def test_load_history_is_chronological(store, make_interaction) -> None:
    turns = [await store.append(make_interaction(f'turn number {n}')) for n in range(4)]
    assert await store.load_history(3) == turns[1:]


async def test_query_by_time_range(store, make_interaction) -> None:
    early = await store.append(make_interaction('early turn', created_at=BASE_TIME))
    await store.append(make_interaction('late turn', created_at=BASE_TIME + timedelta(hours=3)))

    found = await store.query_by_time_range(BASE_TIME - timedelta(minutes=5), BASE_TIME + timedelta(hours=1))

    assert found == [early]


async def test_index_lists_are_bounded(make_interaction) -> None:
    store = MemoryStore(MemoryConfig(max_index_entries=2))
    turns = [await store.append(make_interaction(f'session turn {n}')) for n in range(3)]

    entry = store.index_entry('session', 's1')

    assert entry.interaction_ids == [turns[1].id, turns[2].id]


# -- validation -------------------------------------------------------------------


async def test_empty_input_rejected(store, make_interaction) -> None:
    with pytest.raises(ValidationError):
        await store.append(make_interaction('   '))
    assert await store.count() == 0


async def test_duplicate_id_rejected(store, make_interaction) -> None:
    await store.append(make_interaction('first', interaction_id='fixed'))
    with pytest.raises(ValidationError):
        await store.append(make_interaction('second', interaction_id='fixed'))
    assert await store.count() == 1


async def test_out_of_order_session_timestamp_rejected(store, make_interaction) -> None:
    await store.append(make_interaction('later', created_at=BASE_TIME + timedelta(hours=1)))
    with pytest.raises(ValidationError):
        await store.append(make_interaction('earlier', created_at=BASE_TIME))
    assert store.check_consistency() == []


async def test_closed_store_is_unavailable(store, make_interaction) -> None:
    store.close()
    with pytest.raises(MemoryStoreUnavailableError):
        await store.query_by_time(5)
    with pytest.raises(MemoryStoreUnavailableError):
        await store.append(make_interaction('too late'))


# -- links and derived fields -------------------------------------------------------


async def test_links_are_bidirectional(store, make_interaction) -> None:
    first = await store.append(make_interaction('Starlink pricing'))
    second = await store.append(make_interaction('Starlink pricing for 2026', previous=first))
    third = await store.append(make_interaction('back to Starlink', resume_from_id=first.id))

    assert store.linked_ids(first.id) == [third.id, second.id]
    assert store.linked_ids(second.id) == [first.id]
    assert store.has_links()


async def test_attach_derived(store, make_interaction) -> None:
    stored = await store.append(make_interaction('Starlink pricing'))
    assert not store.has_embeddings()

    assert store.attach_derived(stored.id, embedding=[0.1, 0.2], summary='Pricing question')

    assert store.has_embeddings()
    assert await store.query_embedded() == [stored]
    assert stored.summary == 'Pricing question'
    assert store.attach_derived('missing', embedding=[1.0]) is False


async def test_query_embedded_follows_time_order(store, make_interaction) -> None:
    first = await store.append(make_interaction('Starlink pricing'))
    await store.append(make_interaction('Tesla margins'))
    third = await store.append(make_interaction('Rivian deliveries'))

    # attached out of order, read back newest first
    store.attach_derived(third.id, embedding=[0.3])
    store.attach_derived(first.id, embedding=[0.1])
    store.attach_derived(first.id, embedding=[0.2])

    assert await store.query_embedded() == [third, first]
    assert await store.query_embedded(1) == [third]


async def test_evicted_interactions_leave_embedded_index(make_interaction) -> None:
    store = MemoryStore(MemoryConfig(retention_window=2, retention_batch_size=1))
    turns = []
    for n in range(3):
        interaction = make_interaction(f'embedded turn {n}')
        interaction.semantics.embedding = [float(n + 1)]
        turns.append(await store.append(interaction))

    assert await store.query_embedded() == [turns[2], turns[1]]
    assert store.stats()['embedded'] == 2


async def test_get_falls_back_to_archive(make_interaction) -> None:
    archived = make_interaction('launch costs from last year')
    archive = MagicMock()
    archive.archive = AsyncMock()
    archive.get = AsyncMock(return_value=archived)
    store = MemoryStore(MemoryConfig(), archive=archive)
    live = await store.append(make_interaction('launch costs today'))

    assert await store.get(live.id) is live
    archive.get.assert_not_awaited()
    assert await store.get(archived.id) is archived
    archive.get.assert_awaited_once_with(archived.id)


async def test_archive_lookup_failure_raises(make_interaction) -> None:
    archive = MagicMock()
    archive.get = AsyncMock(side_effect=RuntimeError('cluster unreachable'))
    store = MemoryStore(MemoryConfig(), archive=archive)

    with pytest.raises(MemoryStoreError):
        await store.get('evicted-id')


# -- retention ------------------------------------------------------------------------


async def test_retention_evicts_oldest_batch(make_interaction) -> None:
    summarizer = MagicMock()
    summarizer.summarize = AsyncMock(return_value='They discussed launch costs.')
    archive = MagicMock()
    archive.archive = AsyncMock()
    archive.get = AsyncMock(return_value=None)
    store = MemoryStore(MemoryConfig(retention_window=5, retention_batch_size=2), summarizer=summarizer, archive=archive)

    turns = [await store.append(make_interaction(f'launch cost turn {n}')) for n in range(6)]

    assert await store.count() == 4
    assert await store.get(turns[0].id) is None
    assert await store.get(turns[1].id) is None
    assert [i.id for i in await store.query_by_session('s1', from_end=False)] == [t.id for t in turns[2:]]

    summarizer.summarize.assert_awaited_once_with(turns[:2])
    archived, summary = archive.archive.await_args.args
    assert archived == turns[:2]
    assert summary.interaction_ids == [turns[0].id, turns[1].id]
    assert store.summaries()[0].summary == 'They discussed launch costs.'
    assert store.check_consistency() == []


async def test_collaborator_failure_keeps_append(make_interaction) -> None:
    summarizer = MagicMock()
    summarizer.summarize = AsyncMock(side_effect=RuntimeError('model down'))
    store = MemoryStore(MemoryConfig(retention_window=2, retention_batch_size=1), summarizer=summarizer)

    turns = [await store.append(make_interaction(f'turn {n} text')) for n in range(3)]

    assert await store.count() == 2
    assert await store.query_by_time(1) == [turns[-1]]
    assert store.summaries() == []


# -- consistency -----------------------------------------------------------------------


async def test_detects_and_repairs_inconsistent_index(store, make_interaction) -> None:
    await store.append(make_interaction('Starlink pricing', topics=['starlink']))
    store._topics['ghost'] = ['not-a-real-id']

    assert store.check_consistency() == ['topic']
    with pytest.raises(IndexConsistencyError):
        store.check_consistency(strict=True)

    assert await store.verify_and_repair() == ['topic']
    assert store.check_consistency() == []
    assert await store.query_by_topic('starlink') != []
