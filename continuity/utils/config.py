"""
Configuration management for AWS collaborators and continuity engine settings.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_RESUMPTION_CUES = ('back to', 'return to', 'resume', 'continue', 'earlier', 'before', 'previous', 'we discussed',
                           'we talked about', 'going back')

DEFAULT_CLARIFICATION_CUES = ('what do you mean', 'can you elaborate', 'what', 'how', 'why', 'explain', 'clarify',
                              'elaborate', 'more about', 'tell me more', 'can you', 'could you', 'focus on', 'zoom in',
                              'drill down', 'specifically')

DEFAULT_CONTRADICTION_CUES = ('but', 'however', 'although', 'despite', 'nevertheless', 'yet', 'contrary', 'opposite',
                              'different', 'disagree', 'wrong', 'incorrect', 'no', 'not', 'never', 'none', 'nothing')


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock model used for summarization."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    summarization_enabled: bool = True
    summary_max_words: int = 200


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    enabled: bool = True


@dataclass
class SimilarityConfig:
    """Thresholds and cache settings for the similarity engine and classifier."""
    direct_threshold: float = 0.75
    moderate_threshold: float = 0.40
    clarification_threshold: float = 0.30
    resumption_threshold: float = 0.40
    same_topic_threshold: float = 0.30
    min_token_length: int = 3
    cache_size: int = 1000
    embed_timeout_seconds: float = 5.0
    resumption_cues: Tuple[str, ...] = DEFAULT_RESUMPTION_CUES
    clarification_cues: Tuple[str, ...] = DEFAULT_CLARIFICATION_CUES
    contradiction_cues: Tuple[str, ...] = DEFAULT_CONTRADICTION_CUES


@dataclass
class CircuitBreakerConfig:
    """Configuration for the embedding provider circuit breaker."""
    threshold: int = 3
    cooldown_seconds: float = 300.0


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch archive tier."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    enabled: bool = False


@dataclass
class MemoryConfig:
    """Configuration for the memory store and pipeline windows."""
    retention_window: int = 10000
    retention_batch_size: int = 10
    max_index_entries: int = 10000
    store_timeout_seconds: float = 5.0
    recent_window: int = 5
    history_window: int = 1000
    summary_window: int = 5


@dataclass
class PatternConfig:
    """Configuration for pattern detection."""
    cache_ttl_seconds: float = 1800.0
    min_occurrences: int = 3
    max_themes: int = 10
    window: int = 10


@dataclass
class RetrievalConfig:
    """Default fusion weights and result size for retrieval."""
    time_weight: float = 0.3
    topic_weight: float = 0.3
    semantic_weight: float = 0.3
    relationship_weight: float = 0.1
    limit: int = 20


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    mcp: MCPConfig
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_cues(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Read a comma-separated cue list, falling back to the built-in vocabulary."""
    raw: Optional[str] = os.getenv(name)
    if not raw or not raw.strip():
        return default
    return tuple(cue.strip().lower() for cue in raw.split(',') if cue.strip())


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock summarization model
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          summarization_enabled=_env_bool('SUMMARIZATION_ENABLED', 'true'),
                                          summary_max_words=int(os.getenv('SUMMARY_MAX_WORDS', '200')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '1')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')),
                                              enabled=_env_bool('BEDROCK_EMBED_ENABLED', 'true'))

    similarity_config = SimilarityConfig(
        direct_threshold=float(os.getenv('SIMILARITY_DIRECT_THRESHOLD', '0.75')),
        moderate_threshold=float(os.getenv('SIMILARITY_MODERATE_THRESHOLD', '0.40')),
        clarification_threshold=float(os.getenv('SIMILARITY_CLARIFICATION_THRESHOLD', '0.30')),
        resumption_threshold=float(os.getenv('SIMILARITY_RESUMPTION_THRESHOLD', '0.40')),
        same_topic_threshold=float(os.getenv('SIMILARITY_SAME_TOPIC_THRESHOLD', '0.30')),
        min_token_length=int(os.getenv('SIMILARITY_MIN_TOKEN_LENGTH', '3')),
        cache_size=int(os.getenv('EMBEDDING_CACHE_SIZE', '1000')),
        embed_timeout_seconds=float(os.getenv('EMBEDDING_TIMEOUT_SECONDS', '5')),
        resumption_cues=_env_cues('RESUMPTION_CUES', DEFAULT_RESUMPTION_CUES),
        clarification_cues=_env_cues('CLARIFICATION_CUES', DEFAULT_CLARIFICATION_CUES),
        contradiction_cues=_env_cues('CONTRADICTION_CUES', DEFAULT_CONTRADICTION_CUES))

    circuit_breaker_config = CircuitBreakerConfig(threshold=int(os.getenv('CIRCUIT_BREAKER_THRESHOLD', '3')),
                                                  cooldown_seconds=float(os.getenv('CIRCUIT_BREAKER_COOLDOWN_SECONDS', '300')))

    # Archive tier
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'continuity'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         enabled=_env_bool('OPENSEARCH_ENABLED', 'false'))

    memory_config = MemoryConfig(retention_window=int(os.getenv('MEMORY_RETENTION_WINDOW', '10000')),
                                 retention_batch_size=int(os.getenv('MEMORY_RETENTION_BATCH_SIZE', '10')),
                                 max_index_entries=int(os.getenv('MEMORY_MAX_INDEX_ENTRIES', '10000')),
                                 store_timeout_seconds=float(os.getenv('MEMORY_STORE_TIMEOUT_SECONDS', '5')),
                                 recent_window=int(os.getenv('MEMORY_RECENT_WINDOW', '5')),
                                 history_window=int(os.getenv('MEMORY_HISTORY_WINDOW', '1000')),
                                 summary_window=int(os.getenv('MEMORY_SUMMARY_WINDOW', '5')))

    pattern_config = PatternConfig(cache_ttl_seconds=float(os.getenv('PATTERN_CACHE_TTL_SECONDS', '1800')),
                                   min_occurrences=int(os.getenv('PATTERN_MIN_OCCURRENCES', '3')),
                                   max_themes=int(os.getenv('PATTERN_MAX_THEMES', '10')),
                                   window=int(os.getenv('PATTERN_WINDOW', '10')))

    retrieval_config = RetrievalConfig(time_weight=float(os.getenv('RETRIEVAL_TIME_WEIGHT', '0.3')),
                                       topic_weight=float(os.getenv('RETRIEVAL_TOPIC_WEIGHT', '0.3')),
                                       semantic_weight=float(os.getenv('RETRIEVAL_SEMANTIC_WEIGHT', '0.3')),
                                       relationship_weight=float(os.getenv('RETRIEVAL_RELATIONSHIP_WEIGHT', '0.1')),
                                       limit=int(os.getenv('RETRIEVAL_LIMIT', '20')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     mcp=mcp_config,
                     similarity=similarity_config,
                     circuit_breaker=circuit_breaker_config,
                     memory=memory_config,
                     patterns=pattern_config,
                     retrieval=retrieval_config)


# Global configuration instance
config = load_config()
