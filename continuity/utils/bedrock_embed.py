"""
Amazon Bedrock embedding provider with retry logic and failure classification.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

_QUOTA_MARKERS = ('quota', 'billing', 'payment', 'exceeded')
_RATE_LIMIT_CODES = ('ThrottlingException', 'TooManyRequestsException')
_QUOTA_CODES = ('ServiceQuotaExceededException', )


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class EmbeddingRateLimitError(BedrockEmbedError):
    """The provider throttled the request."""
    pass


class EmbeddingQuotaError(BedrockEmbedError):
    """The account ran out of quota or has a billing problem."""
    pass


def classify_client_error(error: Exception) -> BedrockEmbedError:
    """Map a botocore failure onto the provider's error taxonomy.

    Args:
        error: Exception raised by the Bedrock runtime client

    Returns:
        EmbeddingQuotaError, EmbeddingRateLimitError or a generic BedrockEmbedError
    """
    code = ''
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
    message = str(error)

    if code in _QUOTA_CODES or any(marker in message.lower() for marker in _QUOTA_MARKERS):
        return EmbeddingQuotaError(f'Bedrock Embed quota exhausted: {message}')
    if code in _RATE_LIMIT_CODES:
        return EmbeddingRateLimitError(f'Bedrock Embed throttled: {message}')
    return BedrockEmbedError(f'Bedrock Embed call failed: {message}')


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        self.bedrock = boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call, retrying transient failures.

        Quota failures are raised immediately; retrying them only burns time.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{attempts}')
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                error = classify_client_error(e)
                if isinstance(error, EmbeddingQuotaError) or attempt == attempts - 1:
                    raise error
                logger.debug(f'Bedrock Embed attempt {attempt + 1}/{attempts} failed: {e}')
                # Exponential backoff with jitter
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 0.5))

            except Exception as e:
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts')

    def embed(self, text: str, input_type: str = 'search_document') -> List[float]:
        """
        Generate an embedding vector for text.

        Args:
            text: Text to embed
            input_type: Cohere input type, ``search_document`` or ``search_query``

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Text cannot be empty')

        model = self.model_id.lower()
        if 'titan' in model:
            response = self._call_with_retry({'inputText': text, 'dimensions': self.output_embedding_length})
            embedding = response.get('embedding')
        elif 'cohere' in model:
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
            response = self._call_with_retry({'input_type': input_type, 'texts': [text]})
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else None
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if not embedding:
            raise BedrockEmbedError('Bedrock Embed returned no embedding')
        return [float(value) for value in embedding]

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed('test')) == self.output_embedding_length
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
