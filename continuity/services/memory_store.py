"""
Memory Store: fast-tier interaction records with secondary indices and a retention policy.
"""

import asyncio
import bisect
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from ..models.core import ArchivedSummary, IndexEntry, Interaction, RelationshipCategory, ValidationError
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import extract_topics
from ..utils.timestamp_utils import time_bucket, to_epoch, utc_now

logger = get_logger(__name__)

INDEX_DIMENSIONS = ('time', 'bucket', 'category', 'topic', 'session')


class MemoryStoreError(Exception):
    """Custom exception for memory store errors."""
    pass


class MemoryStoreUnavailableError(MemoryStoreError):
    """The store cannot serve reads or writes right now."""
    pass


class IndexConsistencyError(MemoryStoreError):
    """A secondary index disagrees with the primary records."""
    pass


class Summarizer(Protocol):
    """Compresses evicted interactions into text."""

    async def summarize(self, interactions: List[Interaction]) -> Optional[str]:
        ...


class ArchiveTier(Protocol):
    """Slower persistent tier receiving evicted interactions."""

    async def archive(self, interactions: List[Interaction], summary: Optional[ArchivedSummary] = None) -> None:
        ...

    async def get(self, interaction_id: str) -> Optional[Interaction]:
        ...


class MemoryStore:
    """In-process fast tier for interactions.

    Every append writes the record and all of its secondary index entries in one
    step: the entries are computed first, then applied without yielding to the
    event loop, and rolled back if any of them fails. Readers never take the
    write lock. Queries go through an index, so their cost depends on the size
    of the index entry rather than on the total history.
    """

    def __init__(self,
                 memory_config: Optional[MemoryConfig] = None,
                 summarizer: Optional[Summarizer] = None,
                 archive: Optional[ArchiveTier] = None):
        """
        Initialize the memory store.

        Args:
            memory_config: Retention and index bounds; uses global config if None
            summarizer: Optional collaborator that compresses evicted interactions
            archive: Optional slow tier that receives evicted interactions
        """
        self.config = memory_config or config.memory
        self.summarizer = summarizer
        self.archive = archive

        self._records: Dict[str, Interaction] = {}
        self._sequence: Dict[str, int] = {}
        self._next_sequence = 0

        # (epoch, sequence) keys kept sorted alongside the ids they order
        self._time_keys: List[Tuple[float, int]] = []
        self._time_ids: List[str] = []
        self._buckets: Dict[str, List[str]] = {}
        self._categories: Dict[int, List[str]] = {}
        self._topics: Dict[str, List[str]] = {}
        self._sessions: Dict[str, List[str]] = {}
        self._links: Dict[str, Set[str]] = {}
        self._embedded: Dict[str, None] = {}
        # embedded ids ordered like the time index
        self._embedded_keys: List[Tuple[float, int]] = []
        self._embedded_ids: List[str] = []

        self._summaries: List[ArchivedSummary] = []
        self._lock = asyncio.Lock()
        self._available = True

        logger.info(f'Initialized MemoryStore with retention window {self.config.retention_window}')

    # -- lifecycle ------------------------------------------------------------

    def close(self) -> None:
        """Mark the store unavailable; subsequent calls raise MemoryStoreUnavailableError."""
        self._available = False
        logger.info('MemoryStore closed')

    def _ensure_available(self) -> None:
        if not self._available:
            raise MemoryStoreUnavailableError('Memory store is not available')

    # -- write path -------------------------------------------------------------

    async def append(self, interaction: Interaction) -> Interaction:
        """Persist an interaction and update every secondary index atomically.

        Args:
            interaction: Fully built interaction

        Returns:
            The stored interaction

        Raises:
            ValidationError: If the interaction is malformed, duplicated or out of session order
            MemoryStoreUnavailableError: If the store is closed
        """
        self._ensure_available()

        async with self._lock:
            self._validate(interaction)
            if not interaction.semantics.topics:
                interaction.semantics.topics = extract_topics(f'{interaction.input} {interaction.response}')

            sequence = self._next_sequence
            self._next_sequence += 1
            self._records[interaction.id] = interaction
            self._sequence[interaction.id] = sequence
            try:
                self._index(interaction, sequence)
            except Exception as e:
                self._unindex(interaction.id)
                self._records.pop(interaction.id, None)
                self._sequence.pop(interaction.id, None)
                logger.error(f'Index update failed for interaction {interaction.id}, append aborted: {e}')
                raise MemoryStoreError(f'Append failed: {e}')

            evicted = self._evict_overflow()
            logger.debug(f'Appended interaction {interaction.id} (session {interaction.session_id}, '
                         f'turn {interaction.turn_index})')

        if evicted:
            await self._retire(evicted)
        return interaction

    def _validate(self, interaction: Interaction) -> None:
        if not interaction.input or not interaction.input.strip():
            raise ValidationError('Interaction input text must not be empty')
        if not interaction.session_id:
            raise ValidationError('Interaction must belong to a session')
        if interaction.id in self._records:
            raise ValidationError(f'Interaction {interaction.id} already exists')

        session_ids = self._sessions.get(interaction.session_id)
        last = self._records.get(session_ids[-1]) if session_ids else None
        if last is not None:
            if to_epoch(interaction.created_at) < to_epoch(last.created_at):
                raise ValidationError(f'Interaction {interaction.id} is older than the last turn of session '
                                      f'{interaction.session_id}')

    def _index(self, interaction: Interaction, sequence: int) -> None:
        key = (to_epoch(interaction.created_at), sequence)
        position = bisect.bisect_right(self._time_keys, key)
        self._time_keys.insert(position, key)
        self._time_ids.insert(position, interaction.id)

        self._push(self._buckets, time_bucket(interaction.created_at), interaction.id)
        self._push(self._categories, int(interaction.category), interaction.id)
        for topic in dict.fromkeys(t.lower() for t in interaction.semantics.topics):
            self._push(self._topics, topic, interaction.id)
        self._push(self._sessions, interaction.session_id, interaction.id)

        for linked in interaction.linked_ids():
            self._links.setdefault(interaction.id, set()).add(linked)
            self._links.setdefault(linked, set()).add(interaction.id)

        if interaction.semantics.embedding:
            self._mark_embedded(interaction.id, key)

    def _time_key(self, interaction_id: str) -> Optional[Tuple[float, int]]:
        interaction = self._records.get(interaction_id)
        if interaction is None or interaction_id not in self._sequence:
            return None
        return to_epoch(interaction.created_at), self._sequence[interaction_id]

    def _mark_embedded(self, interaction_id: str, key: Tuple[float, int]) -> None:
        if interaction_id in self._embedded:
            return
        position = bisect.bisect_right(self._embedded_keys, key)
        self._embedded_keys.insert(position, key)
        self._embedded_ids.insert(position, interaction_id)
        self._embedded[interaction_id] = None

    @staticmethod
    def _remove_keyed(keys: List[Tuple[float, int]], ids: List[str], key: Optional[Tuple[float, int]],
                      interaction_id: str) -> None:
        if key is None:
            return
        position = bisect.bisect_left(keys, key)
        if position < len(ids) and ids[position] == interaction_id:
            del keys[position]
            del ids[position]

    def _push(self, index: Dict[Any, List[str]], key: Any, interaction_id: str) -> None:
        ids = index.setdefault(key, [])
        ids.append(interaction_id)
        overflow = len(ids) - self.config.max_index_entries
        if overflow > 0:
            del ids[:overflow]

    def _unindex(self, interaction_id: str) -> None:
        """Remove an id from every index it may appear in."""
        key = self._time_key(interaction_id)
        self._remove_keyed(self._time_keys, self._time_ids, key, interaction_id)
        if interaction_id in self._embedded:
            self._remove_keyed(self._embedded_keys, self._embedded_ids, key, interaction_id)

        interaction = self._records.get(interaction_id)
        if interaction is not None:
            self._drop(self._buckets, time_bucket(interaction.created_at), interaction_id)
            self._drop(self._categories, int(interaction.category), interaction_id)
            for topic in interaction.semantics.topics:
                self._drop(self._topics, topic.lower(), interaction_id)
            self._drop(self._sessions, interaction.session_id, interaction_id)

        for linked in self._links.pop(interaction_id, set()):
            neighbors = self._links.get(linked)
            if neighbors is not None:
                neighbors.discard(interaction_id)
                if not neighbors:
                    del self._links[linked]
        self._embedded.pop(interaction_id, None)

    @staticmethod
    def _drop(index: Dict[Any, List[str]], key: Any, interaction_id: str) -> None:
        ids = index.get(key)
        if ids and interaction_id in ids:
            ids.remove(interaction_id)
            if not ids:
                del index[key]

    def attach_derived(self,
                       interaction_id: str,
                       embedding: Optional[List[float]] = None,
                       input_embedding: Optional[List[float]] = None,
                       response_embedding: Optional[List[float]] = None,
                       summary: Optional[str] = None) -> bool:
        """Attach asynchronously computed fields to a stored interaction.

        Returns:
            False if the interaction is no longer in the fast tier
        """
        self._ensure_available()
        interaction = self._records.get(interaction_id)
        if interaction is None:
            logger.debug(f'Cannot attach derived fields, interaction {interaction_id} not in fast tier')
            return False

        if embedding:
            interaction.semantics.embedding = embedding
            self._mark_embedded(interaction_id, self._time_key(interaction_id))
        if input_embedding:
            interaction.semantics.input_embedding = input_embedding
        if response_embedding:
            interaction.semantics.response_embedding = response_embedding
        if summary:
            interaction.summary = summary
        return True

    # -- retention --------------------------------------------------------------

    def _evict_overflow(self) -> List[Interaction]:
        overflow = len(self._records) - self.config.retention_window
        if overflow <= 0:
            return []

        # Evict in batches so the summarizer sees more than one turn at a time;
        # the newest record always stays
        batch = min(max(overflow, self.config.retention_batch_size), len(self._records) - 1)
        evicted_ids = self._time_ids[:batch]
        evicted = []
        for interaction_id in evicted_ids:
            self._unindex(interaction_id)
            self._sequence.pop(interaction_id, None)
            evicted.append(self._records.pop(interaction_id))
        logger.info(f'Evicted {len(evicted)} interactions from the fast tier')
        return evicted

    async def _retire(self, evicted: List[Interaction]) -> None:
        summary = None
        if self.summarizer is not None:
            try:
                text = await self.summarizer.summarize(evicted)
                if text:
                    summary = ArchivedSummary(interaction_ids=[i.id for i in evicted],
                                              summary=text,
                                              created_at=utc_now(),
                                              count=len(evicted))
                    self._summaries.append(summary)
            except Exception as e:
                logger.error(f'Summarizing evicted interactions failed: {e}')

        if self.archive is not None:
            try:
                await self.archive.archive(evicted, summary)
            except Exception as e:
                logger.error(f'Archiving evicted interactions failed: {e}')

    def summaries(self, limit: Optional[int] = None) -> List[ArchivedSummary]:
        """Summaries of evicted interactions, newest first."""
        self._ensure_available()
        ordered = list(reversed(self._summaries))
        return ordered[:limit] if limit is not None else ordered

    # -- read path ----------------------------------------------------------------

    def _resolve(self, ids: Iterable[str]) -> List[Interaction]:
        return [self._records[i] for i in ids if i in self._records]

    @staticmethod
    def _window(ids: List[str], limit: Optional[int], from_end: bool) -> List[str]:
        if limit is not None and limit <= 0:
            return []
        if from_end:
            selected = ids if limit is None else ids[-limit:]
            return list(reversed(selected))
        return list(ids if limit is None else ids[:limit])

    async def get(self, interaction_id: str) -> Optional[Interaction]:
        """Interaction by id, read from the archive tier once it has left the fast tier.

        Raises:
            MemoryStoreError: If the archive lookup fails
        """
        self._ensure_available()
        interaction = self._records.get(interaction_id)
        if interaction is not None or self.archive is None:
            return interaction

        try:
            archived = await self.archive.get(interaction_id)
        except Exception as e:
            logger.error(f'Archive lookup for interaction {interaction_id} failed: {e}')
            raise MemoryStoreError(f'Archive lookup failed: {e}')
        if archived is not None:
            logger.debug(f'Interaction {interaction_id} served from the archive tier')
        return archived

    async def count(self) -> int:
        self._ensure_available()
        return len(self._records)

    async def query_by_time(self, limit: Optional[int] = None, from_end: bool = True) -> List[Interaction]:
        """Interactions in chronological order; newest first when ``from_end``."""
        self._ensure_available()
        return self._resolve(self._window(self._time_ids, limit, from_end))

    async def query_by_time_range(self, start, end) -> List[Interaction]:
        """Interactions created in [start, end), oldest first, read through the hour buckets."""
        self._ensure_available()
        start_epoch, end_epoch = to_epoch(start), to_epoch(end)
        bucket_keys = sorted((k for k in self._buckets if start_epoch - 3600 < int(k) < end_epoch), key=int)
        matches = []
        for key in bucket_keys:
            for interaction in self._resolve(self._buckets[key]):
                if start_epoch <= to_epoch(interaction.created_at) < end_epoch:
                    matches.append(interaction)
        matches.sort(key=lambda i: (to_epoch(i.created_at), self._sequence.get(i.id, 0)))
        return matches

    async def query_by_category(self, category: int, limit: Optional[int] = None, from_end: bool = True) -> List[Interaction]:
        self._ensure_available()
        ids = self._categories.get(int(RelationshipCategory(category)), [])
        return self._resolve(self._window(ids, limit, from_end))

    async def query_by_topic(self, topic: str, limit: Optional[int] = None, from_end: bool = True) -> List[Interaction]:
        self._ensure_available()
        ids = self._topics.get(topic.lower(), []) if topic else []
        return self._resolve(self._window(ids, limit, from_end))

    async def query_by_session(self, session_id: str, limit: Optional[int] = None, from_end: bool = True) -> List[Interaction]:
        self._ensure_available()
        ids = self._sessions.get(session_id, [])
        return self._resolve(self._window(ids, limit, from_end))

    async def session_tail(self, session_id: str) -> Optional[Interaction]:
        """Latest interaction of a session."""
        latest = await self.query_by_session(session_id, limit=1)
        return latest[0] if latest else None

    async def load_history(self, limit: Optional[int] = None) -> List[Interaction]:
        """Most recent interactions in chronological order (oldest first)."""
        newest_first = await self.query_by_time(limit)
        return list(reversed(newest_first))

    async def query_embedded(self, limit: Optional[int] = None) -> List[Interaction]:
        """Interactions that carry an embedding, newest first."""
        self._ensure_available()
        return self._resolve(self._window(self._embedded_ids, limit, True))

    def linked_ids(self, interaction_id: str) -> List[str]:
        """Neighbors of an interaction in the relationship graph, newest first."""
        neighbors = [i for i in self._links.get(interaction_id, ()) if i in self._records]
        return sorted(neighbors, key=lambda i: self._sequence[i], reverse=True)

    def has_embeddings(self) -> bool:
        return bool(self._embedded)

    def has_links(self) -> bool:
        return bool(self._links)

    def index_entry(self, dimension: str, key: Any) -> IndexEntry:
        """Snapshot of one index list."""
        if dimension == 'time':
            return IndexEntry(dimension=dimension, key='all', interaction_ids=list(self._time_ids))
        index = self._index_for(dimension)
        return IndexEntry(dimension=dimension, key=str(key), interaction_ids=list(index.get(key, [])))

    def _index_for(self, dimension: str) -> Dict[Any, List[str]]:
        mapping = {
            'bucket': self._buckets,
            'category': self._categories,
            'topic': self._topics,
            'session': self._sessions,
        }
        if dimension not in mapping:
            raise MemoryStoreError(f'Unknown index dimension: {dimension}')
        return mapping[dimension]

    # -- consistency ----------------------------------------------------------------

    def _rebuild(self) -> Dict[str, Any]:
        """Indices recomputed from primary records, in the same shapes the store keeps."""
        ordered = sorted(self._records.values(), key=lambda i: self._sequence[i.id])
        by_time = sorted(ordered, key=lambda i: (to_epoch(i.created_at), self._sequence[i.id]))
        rebuilt: Dict[str, Any] = {
            'time': [i.id for i in by_time],
            'bucket': {},
            'category': {},
            'topic': {},
            'session': {},
        }
        for interaction in ordered:
            self._push(rebuilt['bucket'], time_bucket(interaction.created_at), interaction.id)
            self._push(rebuilt['category'], int(interaction.category), interaction.id)
            for topic in dict.fromkeys(t.lower() for t in interaction.semantics.topics):
                self._push(rebuilt['topic'], topic, interaction.id)
            self._push(rebuilt['session'], interaction.session_id, interaction.id)
        return rebuilt

    def check_consistency(self, strict: bool = False) -> List[str]:
        """Compare every secondary index with the primary records.

        Args:
            strict: Raise instead of returning when an inconsistency is found

        Returns:
            Names of the inconsistent index dimensions

        Raises:
            IndexConsistencyError: If ``strict`` and any index is inconsistent
        """
        rebuilt = self._rebuild()
        current = {
            'time': self._time_ids,
            'bucket': self._buckets,
            'category': self._categories,
            'topic': self._topics,
            'session': self._sessions,
        }
        broken = [dimension for dimension in INDEX_DIMENSIONS if rebuilt[dimension] != current[dimension]]
        if broken and strict:
            raise IndexConsistencyError(f'Inconsistent indices: {", ".join(broken)}')
        return broken

    def repair(self, dimensions: Optional[Iterable[str]] = None) -> List[str]:
        """Rebuild the given index dimensions (all when None) from the primary records."""
        targets = list(dimensions) if dimensions is not None else list(INDEX_DIMENSIONS)
        rebuilt = self._rebuild()
        for dimension in targets:
            if dimension == 'time':
                self._time_ids = rebuilt['time']
                self._time_keys = [(to_epoch(self._records[i].created_at), self._sequence[i]) for i in self._time_ids]
            elif dimension == 'bucket':
                self._buckets = rebuilt['bucket']
            elif dimension == 'category':
                self._categories = rebuilt['category']
            elif dimension == 'topic':
                self._topics = rebuilt['topic']
            elif dimension == 'session':
                self._sessions = rebuilt['session']
            else:
                raise MemoryStoreError(f'Unknown index dimension: {dimension}')
        logger.info(f'Rebuilt indices: {", ".join(targets)}')
        return targets

    async def verify_and_repair(self) -> List[str]:
        """Periodic consistency check: rebuild whatever index disagrees with the records."""
        self._ensure_available()
        async with self._lock:
            broken = self.check_consistency()
            if broken:
                logger.error(f'Index inconsistency detected in: {", ".join(broken)}; rebuilding')
                self.repair(broken)
            return broken

    def stats(self) -> Dict[str, Any]:
        return {
            'interactions': len(self._records),
            'sessions': len(self._sessions),
            'topics': len(self._topics),
            'embedded': len(self._embedded),
            'links': sum(len(n) for n in self._links.values()) // 2,
            'summaries': len(self._summaries),
            'retention_window': self.config.retention_window,
        }
