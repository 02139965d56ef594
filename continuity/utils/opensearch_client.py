"""
OpenSearch archive tier for interactions and summaries evicted from the fast tier.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import ArchivedSummary, Interaction
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

INTERACTION_INDEX = 'interaction'
SUMMARY_INDEX = 'summary'


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def _knn_settings() -> Dict[str, Any]:
    return {'index': {'knn': True, 'knn.algo_param.ef_search': 100}}


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Prebuilt opensearch-py client; built with SigV4 auth if None
        """
        self.config = config

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            host = config.endpoint.split('://', 1)[1] if '://' in config.endpoint else config.endpoint
            client = OpenSearch(hosts=[{'host': host, 'port': config.port}],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str = INTERACTION_INDEX) -> str:
        return f'{self.config.index_name}_{index_type}'

    def _mapping(self, index_type: str) -> Dict[str, Any]:
        if index_type == INTERACTION_INDEX:
            properties = {
                'id': {'type': 'keyword'},
                'session_id': {'type': 'keyword'},
                'turn_index': {'type': 'integer'},
                'category': {'type': 'keyword'},
                'topics': {'type': 'keyword'},
                'previous_interaction_id': {'type': 'keyword'},
                'input': {'type': 'text'},
                'response': {'type': 'text'},
                'summary': {'type': 'text'},
                'embedding': {
                    'type': 'knn_vector',
                    'dimension': self.config.dimension,
                    'method': {'name': 'hnsw', 'space_type': 'cosinesimil', 'engine': 'nmslib'}
                },
                'created_at': {'type': 'date'},
            }
            return {'mappings': {'properties': properties}, 'settings': _knn_settings()}

        if index_type == SUMMARY_INDEX:
            properties = {
                'id': {'type': 'keyword'},
                'interaction_ids': {'type': 'keyword'},
                'summary': {'type': 'text'},
                'count': {'type': 'integer'},
                'created_at': {'type': 'date'},
            }
            return {'mappings': {'properties': properties}}

        raise OpenSearchError(f'Unknown index type: {index_type}')

    def create_index_if_not_exists(self, index_type: str = INTERACTION_INDEX) -> str:
        """
        Create the archive index if it doesn't exist.

        Args:
            index_type: ``interaction`` or ``summary``

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)
        body = self._mapping(index_type)
        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            logger.warning(f'Index creation for {index_name} not acknowledged: {response}')
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def archive_interactions(self, interactions: List[Interaction]) -> int:
        """
        Write interactions to the interaction index, keyed by interaction id.

        Args:
            interactions: Interactions to archive

        Returns:
            Number of documents created or updated
        """
        index_name = self.index_name(INTERACTION_INDEX)
        written = 0
        try:
            for interaction in interactions:
                document = interaction.to_document()
                if not document.get('embedding'):
                    document.pop('embedding', None)
                response = self.client.index(index=index_name, id=interaction.id, body=document)
                if response.get('result') in ('created', 'updated'):
                    written += 1
                else:
                    logger.warning(f'Unexpected result archiving interaction {interaction.id}: {response}')
        except OpenSearchException as e:
            logger.error(f'Error archiving interactions: {e}')
            raise OpenSearchError(f'Failed to archive interactions: {e}')
        except Exception as e:
            logger.error(f'Unexpected error archiving interactions: {e}')
            raise OpenSearchError(f'Unexpected error archiving interactions: {e}')

        logger.debug(f'Archived {written}/{len(interactions)} interactions in {index_name}')
        return written

    def archive_summary(self, summary: ArchivedSummary) -> bool:
        """Write one evicted-batch summary to the summary index."""
        index_name = self.index_name(SUMMARY_INDEX)
        document = asdict(summary)
        document['created_at'] = summary.created_at.isoformat()
        try:
            response = self.client.index(index=index_name, id=summary.id, body=document)
            return response.get('result') in ('created', 'updated')
        except OpenSearchException as e:
            logger.error(f'Error archiving summary {summary.id}: {e}')
            raise OpenSearchError(f'Failed to archive summary: {e}')
        except Exception as e:
            logger.error(f'Unexpected error archiving summary {summary.id}: {e}')
            raise OpenSearchError(f'Unexpected error archiving summary: {e}')

    def get_interaction(self, interaction_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch an archived interaction document.

        Args:
            interaction_id: Interaction id

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_name(INTERACTION_INDEX)
        try:
            response = self.client.get(index=index_name, id=interaction_id)
            return response.get('_source') if response.get('found') else None
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting interaction {interaction_id}: {e}')
            raise OpenSearchError(f'Failed to get interaction: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting interaction {interaction_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting interaction: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return self.client.indices.exists(index=self.index_name(INTERACTION_INDEX)) in (True, False)
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False


class OpenSearchArchive:
    """Async archive tier for the memory store, backed by OpenSearchClient."""

    def __init__(self, client: OpenSearchClient):
        self.client = client
        self._ready = False

    @classmethod
    def from_config(cls, opensearch_config: OpenSearchConfig) -> 'OpenSearchArchive':
        return cls(OpenSearchClient(opensearch_config))

    def _ensure_indices(self) -> None:
        if self._ready:
            return
        self.client.create_index_if_not_exists(INTERACTION_INDEX)
        self.client.create_index_if_not_exists(SUMMARY_INDEX)
        self._ready = True

    def _write(self, interactions: List[Interaction], summary: Optional[ArchivedSummary]) -> int:
        self._ensure_indices()
        written = self.client.archive_interactions(interactions)
        if summary is not None:
            self.client.archive_summary(summary)
        return written

    async def archive(self, interactions: List[Interaction], summary: Optional[ArchivedSummary] = None) -> None:
        """Persist evicted interactions and their summary off the event loop.

        Raises:
            OpenSearchError: If writing to OpenSearch fails
        """
        if not interactions:
            return
        written = await asyncio.to_thread(self._write, list(interactions), summary)
        logger.info(f'Archived {written} evicted interactions to OpenSearch')

    async def get(self, interaction_id: str) -> Optional[Interaction]:
        """Archived interaction by id, or None if it was never archived.

        Raises:
            OpenSearchError: If the lookup fails
        """
        document = await asyncio.to_thread(self.client.get_interaction, interaction_id)
        return Interaction.from_document(document) if document else None

    def health_check(self) -> bool:
        return self.client.health_check()
