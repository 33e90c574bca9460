"""
Configuration Management for Member Q&A

Loads configuration from ~/.memberqa/config.json and environment variables.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Default config paths
CONFIG_DIR = Path.home() / ".memberqa"
CONFIG_PATH = CONFIG_DIR / "config.json"
VECTORS_DIR = CONFIG_DIR / "vectors"

DEFAULT_MESSAGES_API_URL = "https://november7-730026606190.europe-west1.run.app"

# Diagnostic "no limits" values
UNRESTRICTED_TOP_K = 10000


@dataclass
class SourceConfig:
    """Message source (paginated HTTP API) configuration"""
    base_url: str = DEFAULT_MESSAGES_API_URL
    batch_size: int = 1000
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number
    timeout: float = 10.0


@dataclass
class CacheConfig:
    """Corpus cache configuration"""
    ttl_hours: float = 1.0

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_hours * 3600.0


@dataclass
class RetrievalConfig:
    """Query analysis, retrieval and context budget parameters"""
    specific_top_k: int = 50
    specific_similarity_threshold: float = 0.7  # precision
    broad_top_k: int = 120
    broad_similarity_threshold: float = 0.5  # recall
    specific_max_messages: int = 30
    broad_max_messages: int = 50
    max_context_tokens: Optional[int] = 6000  # None disables truncation
    diagnostic: bool = False

    @classmethod
    def unrestricted(cls) -> "RetrievalConfig":
        """Capacity-testing variant: unbounded top-k, no threshold, no truncation."""
        return cls(
            specific_top_k=UNRESTRICTED_TOP_K,
            specific_similarity_threshold=0.0,
            broad_top_k=UNRESTRICTED_TOP_K,
            broad_similarity_threshold=0.0,
            specific_max_messages=UNRESTRICTED_TOP_K,
            broad_max_messages=UNRESTRICTED_TOP_K,
            max_context_tokens=None,
            diagnostic=True,
        )

    def validate(self) -> "RetrievalConfig":
        """Reject values that would break the analysis invariants."""
        for name in ("specific_top_k", "broad_top_k", "specific_max_messages", "broad_max_messages"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("specific_similarity_threshold", "broad_similarity_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.max_context_tokens is not None and self.max_context_tokens < 0:
            raise ValueError(f"max_context_tokens must be >= 0, got {self.max_context_tokens}")
        return self


@dataclass
class SemanticConfig:
    """Vector index configuration"""
    enabled: bool = False
    top_k: int = 20
    keyword_fallback: bool = True
    timeout: float = 10.0
    max_concurrency: int = 4
    persist_path: str = str(VECTORS_DIR)
    collection: str = "member-messages"
    embedding_model: str = "text-embedding-3-small"


@dataclass
class LLMConfig:
    """Answering model configuration"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-haiku-20241022"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    timeout: float = 30.0


@dataclass
class MemberQAConfig:
    """Main Member Q&A configuration"""
    source: SourceConfig = field(default_factory=SourceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    semantic: SemanticConfig = field(default_factory=SemanticConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_source_config(data: dict) -> SourceConfig:
    """Parse source section from config dict"""
    source_data = data.get("source", {})
    return SourceConfig(
        base_url=source_data.get("base_url", DEFAULT_MESSAGES_API_URL),
        batch_size=source_data.get("batch_size", 1000),
        max_retries=source_data.get("max_retries", 3),
        retry_delay=source_data.get("retry_delay", 1.0),
        timeout=source_data.get("timeout", 10.0),
    )


def _parse_cache_config(data: dict) -> CacheConfig:
    """Parse cache section from config dict"""
    cache_data = data.get("cache", {})
    return CacheConfig(ttl_hours=cache_data.get("ttl_hours", 1.0))


def _parse_retrieval_config(data: dict) -> RetrievalConfig:
    """Parse retrieval section from config dict"""
    retrieval_data = data.get("retrieval", {})
    return RetrievalConfig(
        specific_top_k=retrieval_data.get("specific_top_k", 50),
        specific_similarity_threshold=retrieval_data.get("specific_similarity_threshold", 0.7),
        broad_top_k=retrieval_data.get("broad_top_k", 120),
        broad_similarity_threshold=retrieval_data.get("broad_similarity_threshold", 0.5),
        specific_max_messages=retrieval_data.get("specific_max_messages", 30),
        broad_max_messages=retrieval_data.get("broad_max_messages", 50),
        max_context_tokens=retrieval_data.get("max_context_tokens", 6000),
    )


def _parse_semantic_config(data: dict) -> SemanticConfig:
    """Parse semantic section from config dict"""
    semantic_data = data.get("semantic", {})
    return SemanticConfig(
        enabled=_parse_bool(semantic_data.get("enabled", False)),
        top_k=semantic_data.get("top_k", 20),
        keyword_fallback=_parse_bool(semantic_data.get("keyword_fallback", True)),
        timeout=semantic_data.get("timeout", 10.0),
        max_concurrency=semantic_data.get("max_concurrency", 4),
        persist_path=semantic_data.get("persist_path", str(VECTORS_DIR)),
        collection=semantic_data.get("collection", "member-messages"),
        embedding_model=semantic_data.get("embedding_model", "text-embedding-3-small"),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "anthropic"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-3-5-haiku-20241022"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        max_tokens=llm_data.get("max_tokens", 1024),
        timeout=llm_data.get("timeout", 30.0),
    )


def load_config() -> MemberQAConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (a local .env file is loaded first)
    2. Config file (~/.memberqa/config.json)
    3. Default values
    """
    load_dotenv()
    config = MemberQAConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.source = _parse_source_config(data)
            config.cache = _parse_cache_config(data)
            config.retrieval = _parse_retrieval_config(data)
            config.semantic = _parse_semantic_config(data)
            config.llm = _parse_llm_config(data)
        except (json.JSONDecodeError, IOError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    # Environment variable overrides
    if os.getenv("MESSAGES_API_URL"):
        config.source.base_url = os.getenv("MESSAGES_API_URL")

    if os.getenv("CACHE_TTL_HOURS"):
        config.cache.ttl_hours = float(os.getenv("CACHE_TTL_HOURS"))

    if os.getenv("SPECIFIC_QUERY_TOP_K"):
        config.retrieval.specific_top_k = int(os.getenv("SPECIFIC_QUERY_TOP_K"))
    if os.getenv("SPECIFIC_QUERY_THRESHOLD"):
        config.retrieval.specific_similarity_threshold = float(os.getenv("SPECIFIC_QUERY_THRESHOLD"))
    if os.getenv("BROAD_QUERY_TOP_K"):
        config.retrieval.broad_top_k = int(os.getenv("BROAD_QUERY_TOP_K"))
    if os.getenv("BROAD_QUERY_THRESHOLD"):
        config.retrieval.broad_similarity_threshold = float(os.getenv("BROAD_QUERY_THRESHOLD"))
    if os.getenv("MAX_CONTEXT_TOKENS"):
        config.retrieval.max_context_tokens = int(os.getenv("MAX_CONTEXT_TOKENS"))

    if os.getenv("ENABLE_SEMANTIC_SEARCH"):
        config.semantic.enabled = _parse_bool(os.getenv("ENABLE_SEMANTIC_SEARCH"))
    if os.getenv("SEMANTIC_SEARCH_TOP_K"):
        config.semantic.top_k = int(os.getenv("SEMANTIC_SEARCH_TOP_K"))
    if os.getenv("SEMANTIC_KEYWORD_FALLBACK"):
        config.semantic.keyword_fallback = _parse_bool(os.getenv("SEMANTIC_KEYWORD_FALLBACK"))
    if os.getenv("VECTOR_INDEX_PATH"):
        config.semantic.persist_path = os.getenv("VECTOR_INDEX_PATH")
    if os.getenv("VECTOR_COLLECTION"):
        config.semantic.collection = os.getenv("VECTOR_COLLECTION")

    # LLM env var overrides
    _env_llm_map = {
        "CLAUDE_API_KEY": "anthropic_api_key",
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "MEMBERQA_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)

    # Diagnostic switch for context-size stress tests, never for production
    if _parse_bool(os.getenv("NO_LIMITS_TEST", "false")):
        config.retrieval = RetrievalConfig.unrestricted()

    config.retrieval.validate()
    return config


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    VECTORS_DIR.mkdir(parents=True, exist_ok=True)
