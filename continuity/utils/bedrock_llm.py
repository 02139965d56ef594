"""
Amazon Bedrock text generation client used to compress conversation history.
"""

import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Thin wrapper over the Bedrock ``converse`` API with manual retries."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with model and retry settings
        """
        self.config = config
        self.model_id = config.model_id

        # Summaries are short, so keep timeouts tight; retries are handled here
        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=30,
                                                              read_timeout=120,
                                                              retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    @staticmethod
    def _text_of(response: Dict[str, Any]) -> str:
        content = response.get('output', {}).get('message', {}).get('content', [])
        return ''.join(block.get('text', '') for block in content)

    def complete(self,
                 prompt: str,
                 system_prompt: str,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> str:
        """
        Run a single-turn completion.

        Args:
            prompt: User message text
            system_prompt: System instructions
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Sampling temperature (uses config default if None)

        Returns:
            Generated text

        Raises:
            BedrockLLMError: If every attempt fails or the model returns nothing
        """
        messages: List[Dict[str, Any]] = [{'role': 'user', 'content': [{'text': prompt}]}]
        inference = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
        }
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{attempts}')
                response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                         messages=messages,
                                                         system=[{'text': system_prompt}],
                                                         inferenceConfig=inference)
                text = self._text_of(response).strip()
                if not text:
                    raise BedrockLLMError('Bedrock LLM returned an empty completion')

                usage = response.get('usage', {})
                logger.debug(f'Bedrock LLM completion: {len(text)} chars, '
                             f'{usage.get("inputTokens", "?")} in / {usage.get("outputTokens", "?")} out tokens')
                return text

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt == attempts - 1:
                    raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {e}')
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

            except BedrockLLMError:
                raise

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            reply = self.complete('Hi', "Respond with just 'OK'.", max_tokens=10, temperature=0.0)
            return len(reply) > 0
        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
