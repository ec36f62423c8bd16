"""
Configuration management for the store agent services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class LLMConfig:
    """Configuration for the language model provider layer."""
    provider: str
    chat_timeout: float
    fallback_timeout: float
    max_search_results: int
    max_session_messages: int
    max_session_age: int


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class OllamaConfig:
    """Configuration for a locally hosted Ollama model server."""
    base_url: str
    chat_model: str
    embedding_model: str
    timeout: float


@dataclass
class HuggingFaceConfig:
    """Configuration for the Hugging Face hosted inference API."""
    api_key: str
    model: str
    base_url: str
    timeout: float


@dataclass
class EmbedConfig:
    """Selects the embedding backend used by the vector index."""
    provider: str
    dimension: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    use_aws_auth: bool
    use_ssl: bool
    chunk_size: int
    chunk_overlap: int


@dataclass
class SyncConfig:
    """Configuration for document synchronization into the vector index."""
    interval_minutes: float
    tick_minutes: float
    batch_size: int
    retry_attempts: int
    retry_delay: float
    run_on_startup: bool
    # 'package.module:function' returning the entity type to record source mapping
    sources_factory: str = ''


@dataclass
class CacheConfig:
    """Configuration for the query result cache."""
    ttl_seconds: float
    max_entries: int


@dataclass
class ConversationConfig:
    """Configuration for conversation persistence."""
    backend: str
    title_length: int


@dataclass
class ApiConfig:
    """Configuration for the HTTP API server."""
    host: str
    port: int


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
    llm: LLMConfig
    bedrock_llm: BedrockLLMConfig
    ollama: OllamaConfig
    huggingface: HuggingFaceConfig
    embed: EmbedConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    sync: SyncConfig
    cache: CacheConfig
    conversation: ConversationConfig
    api: ApiConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    dimension = int(os.getenv('EMBED_DIMENSION', '1024'))

    llm_config = LLMConfig(provider=os.getenv('LLM_PROVIDER', 'bedrock'),
                           chat_timeout=float(os.getenv('LLM_CHAT_TIMEOUT', '45')),
                           fallback_timeout=float(os.getenv('LLM_FALLBACK_TIMEOUT', '25')),
                           max_search_results=int(os.getenv('LLM_MAX_SEARCH_RESULTS', '8')),
                           max_session_messages=int(os.getenv('LLM_MAX_SESSION_MESSAGES', '30')),
                           max_session_age=int(os.getenv('LLM_MAX_SESSION_AGE_SECONDS', '3600')))

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.1')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    ollama_config = OllamaConfig(base_url=os.getenv('OLLAMA_URL', 'http://localhost:11434'),
                                 chat_model=os.getenv('OLLAMA_CHAT_MODEL', 'llama3.1:8b'),
                                 embedding_model=os.getenv('OLLAMA_EMBEDDING_MODEL', 'nomic-embed-text'),
                                 timeout=float(os.getenv('OLLAMA_TIMEOUT', '60')))

    huggingface_config = HuggingFaceConfig(api_key=os.getenv('HUGGING_FACE_API_KEY', ''),
                                           model=os.getenv('HUGGING_FACE_MODEL', 'meta-llama/Llama-3.1-8B-Instruct'),
                                           base_url=os.getenv('HUGGING_FACE_URL', 'https://router.huggingface.co/v1'),
                                           timeout=float(os.getenv('HUGGING_FACE_TIMEOUT', '60')))

    embed_config = EmbedConfig(provider=os.getenv('EMBED_PROVIDER', 'bedrock'), dimension=dimension)

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=dimension,
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '9200')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'store_agent'),
                                         dimension=dimension,
                                         use_aws_auth=_env_bool('OPENSEARCH_USE_AWS_AUTH', 'false'),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'false'),
                                         chunk_size=int(os.getenv('AI_CHUNK_SIZE', '1500')),
                                         chunk_overlap=int(os.getenv('AI_CHUNK_OVERLAP', '300')))

    sync_config = SyncConfig(interval_minutes=float(os.getenv('AI_SYNC_INTERVAL_MINUTES', '60')),
                             tick_minutes=float(os.getenv('AI_SYNC_TICK_MINUTES', '5')),
                             batch_size=int(os.getenv('AI_SYNC_BATCH_SIZE', '50')),
                             retry_attempts=int(os.getenv('AI_SYNC_RETRY_ATTEMPTS', '3')),
                             retry_delay=float(os.getenv('AI_SYNC_RETRY_DELAY', '1.0')),
                             run_on_startup=_env_bool('AI_SYNC_ON_STARTUP', 'true'),
                             sources_factory=os.getenv('AI_SYNC_SOURCES_FACTORY', ''))

    cache_config = CacheConfig(ttl_seconds=float(os.getenv('AI_CACHE_TTL_SECONDS', '300')),
                               max_entries=int(os.getenv('AI_CACHE_MAX_ENTRIES', '1000')))

    conversation_config = ConversationConfig(backend=os.getenv('CONVERSATION_BACKEND', 'memory'),
                                             title_length=int(os.getenv('CONVERSATION_TITLE_LENGTH', '50')))

    api_config = ApiConfig(host=os.getenv('API_HOST', '127.0.0.1'), port=int(os.getenv('API_PORT', '8080')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     llm=llm_config,
                     bedrock_llm=bedrock_llm_config,
                     ollama=ollama_config,
                     huggingface=huggingface_config,
                     embed=embed_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     sync=sync_config,
                     cache=cache_config,
                     conversation=conversation_config,
                     api=api_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
