"""
Summarization Service: compresses conversation turns with a Bedrock model.
"""

import asyncio
from typing import Optional, Sequence

from ..models.core import Interaction
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import BedrockLLMConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = ('You compress conversation history for a long-running assistant. '
                 'Write plain prose, no preamble, no bullet points.')

TURN_PROMPT = """Summarize this conversation turn in 2-3 sentences, focusing on:
- Key topics discussed
- Important decisions or insights
- Any questions asked or answered

User: {input}
Assistant: {response}

Summary:"""

BATCH_PROMPT = """Summarize these {count} conversation turns in approximately {max_words} words, focusing on:
- Main topics discussed across all turns
- Key insights or decisions made
- Important patterns or themes
- Questions asked and answers provided

Conversations:
{turns}

Summary:"""


class SummarizationService:
    """Turns interactions into short summaries; unavailable or failing calls yield None."""

    def __init__(self, llm: Optional[BedrockLLM], llm_config: BedrockLLMConfig):
        """
        Initialize the summarization service.

        Args:
            llm: Bedrock client, or None to disable summarization
            llm_config: Model settings, including the enable flag and target length
        """
        self.llm = llm
        self.config = llm_config
        self.enabled = llm_config.summarization_enabled and llm is not None

    @classmethod
    def from_config(cls, llm_config: BedrockLLMConfig) -> 'SummarizationService':
        """Build the service, disabling it when the Bedrock client cannot be created."""
        llm = None
        if llm_config.summarization_enabled:
            try:
                llm = BedrockLLM(llm_config)
            except Exception as e:
                logger.warning(f'Summarization disabled, Bedrock LLM client unavailable: {e}')
        return cls(llm, llm_config)

    def is_available(self) -> bool:
        return self.enabled

    async def summarize_turn(self, interaction: Interaction) -> Optional[str]:
        """Two or three sentence summary of one turn."""
        if not self.is_available():
            return None
        prompt = TURN_PROMPT.format(input=interaction.input, response=interaction.response)
        return await self._complete(prompt, f'turn {interaction.id}')

    async def summarize(self, interactions: Sequence[Interaction]) -> Optional[str]:
        """
        Summarize a batch of interactions in roughly ``summary_max_words`` words.

        Args:
            interactions: Interactions in chronological order

        Returns:
            Summary text, or None when the service is unavailable, the batch is empty or the call fails
        """
        if not self.is_available() or not interactions:
            return None

        turns = '\n\n'.join(f'Turn {position}:\nUser: {i.input}\nAssistant: {i.response}'
                            for position, i in enumerate(interactions, start=1))
        prompt = BATCH_PROMPT.format(count=len(interactions), max_words=self.config.summary_max_words, turns=turns)
        return await self._complete(prompt, f'{len(interactions)} interactions')

    async def _complete(self, prompt: str, subject: str) -> Optional[str]:
        try:
            summary = await asyncio.to_thread(self.llm.complete, prompt, SYSTEM_PROMPT)
        except BedrockLLMError as e:
            logger.error(f'Summarizing {subject} failed: {e}')
            return None
        logger.debug(f'Summarized {subject} into {len(summary.split())} words')
        return summary.strip()

    def health_check(self) -> bool:
        return self.is_available() and self.llm.health_check()
