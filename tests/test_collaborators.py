"""Tests for the Bedrock and OpenSearch collaborator wrappers."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from opensearchpy.exceptions import NotFoundError, TransportError

from continuity.models.core import ArchivedSummary
from continuity.services.summarization import SummarizationService
from continuity.utils.bedrock_embed import (BedrockEmbedError, EmbeddingQuotaError, EmbeddingRateLimitError,
                                            classify_client_error)
from continuity.utils.bedrock_llm import BedrockLLMError
from continuity.utils.config import BedrockLLMConfig, OpenSearchConfig
from continuity.utils.opensearch_client import OpenSearchArchive, OpenSearchClient, OpenSearchError
from continuity.utils.timestamp_utils import utc_now


@pytest.fixture
def llm_config() -> BedrockLLMConfig:
    return BedrockLLMConfig(region='us-east-1',
                            model_id='anthropic.claude-3-haiku-20240307-v1:0',
                            max_tokens=512,
                            temperature=0.0,
                            retry_attempts=1,
                            retry_delay=0.0)


@pytest.fixture
def opensearch_config() -> OpenSearchConfig:
    return OpenSearchConfig(endpoint='https://search.example.com', port=443, region='us-east-1', index_name='continuity',
                            dimension=8, enabled=True)


def client_error(code: str, message: str) -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': message}}, 'InvokeModel')


# -- embedding error taxonomy -----------------------------------------------------------


def test_throttling_maps_to_rate_limit() -> None:
    assert isinstance(classify_client_error(client_error('ThrottlingException', 'slow down')), EmbeddingRateLimitError)


def test_quota_message_maps_to_quota() -> None:
    error = classify_client_error(client_error('ValidationException', 'Monthly quota exceeded for account'))
    assert isinstance(error, EmbeddingQuotaError)


def test_other_errors_are_generic() -> None:
    error = classify_client_error(client_error('InternalServerException', 'oops'))
    assert type(error) is BedrockEmbedError


# -- summarization ----------------------------------------------------------------------------


async def test_summarize_batch(llm_config, make_interaction) -> None:
    llm = MagicMock()
    llm.complete.return_value = '  Discussed launch costs and Starlink pricing.  '
    service = SummarizationService(llm, llm_config)

    summary = await service.summarize([make_interaction('launch costs', 'Falling fast'), make_interaction('Starlink pricing')])

    assert summary == 'Discussed launch costs and Starlink pricing.'
    prompt = llm.complete.call_args.args[0]
    assert 'Summarize these 2 conversation turns in approximately 200 words' in prompt
    assert 'User: launch costs' in prompt


async def test_summarize_failure_returns_none(llm_config, make_interaction) -> None:
    llm = MagicMock()
    llm.complete.side_effect = BedrockLLMError('throttled')
    service = SummarizationService(llm, llm_config)

    assert await service.summarize_turn(make_interaction('launch costs')) is None


async def test_disabled_summarizer_returns_none(llm_config, make_interaction) -> None:
    llm_config.summarization_enabled = False
    llm = MagicMock()
    service = SummarizationService(llm, llm_config)

    assert await service.summarize([make_interaction('launch costs')]) is None
    llm.complete.assert_not_called()


# -- archive tier -------------------------------------------------------------------------------


async def test_archive_creates_indices_and_writes_documents(opensearch_config, make_interaction) -> None:
    raw = MagicMock()
    raw.indices.exists.return_value = False
    raw.indices.create.return_value = {'acknowledged': True}
    raw.index.return_value = {'result': 'created'}
    archive = OpenSearchArchive(OpenSearchClient(opensearch_config, client=raw))
    turns = [make_interaction('launch costs'), make_interaction('Starlink pricing')]
    summary = ArchivedSummary(interaction_ids=[t.id for t in turns], summary='Launch economics.', created_at=utc_now(), count=2)

    await archive.archive(turns, summary)

    created = [c.kwargs['index'] for c in raw.indices.create.call_args_list]
    assert created == ['continuity_interaction', 'continuity_summary']
    written = [(c.kwargs['index'], c.kwargs['id']) for c in raw.index.call_args_list]
    assert written == [('continuity_interaction', turns[0].id), ('continuity_interaction', turns[1].id),
                       ('continuity_summary', summary.id)]
    assert 'embedding' not in raw.index.call_args_list[0].kwargs['body']


async def test_archive_wraps_opensearch_errors(opensearch_config, make_interaction) -> None:
    raw = MagicMock()
    raw.indices.exists.return_value = True
    raw.index.side_effect = TransportError(500, 'internal_error', {})
    archive = OpenSearchArchive(OpenSearchClient(opensearch_config, client=raw))

    with pytest.raises(OpenSearchError):
        await archive.archive([make_interaction('launch costs')])



async def test_archive_get_rebuilds_interaction(opensearch_config, make_interaction) -> None:
    original = make_interaction('launch costs', 'Falling fast', topics=['launch'], resume_from_id='earlier-id')
    raw = MagicMock()
    raw.get.return_value = {'found': True, '_source': original.to_document()}
    archive = OpenSearchArchive(OpenSearchClient(opensearch_config, client=raw))

    restored = await archive.get(original.id)

    assert restored.id == original.id
    assert restored.created_at == original.created_at
    assert restored.relationship == original.relationship
    assert restored.semantics.topics == ['launch']
    assert raw.get.call_args.kwargs == {'index': 'continuity_interaction', 'id': original.id}


async def test_archive_get_missing_returns_none(opensearch_config) -> None:
    raw = MagicMock()
    raw.get.side_effect = NotFoundError(404, 'not_found', {})
    archive = OpenSearchArchive(OpenSearchClient(opensearch_config, client=raw))

    assert await archive.get('never-archived') is None
