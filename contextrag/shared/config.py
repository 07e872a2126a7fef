# Configuration loader with environment variable support
# YAML file per environment (config/{ENV}.yaml) + pydantic validation

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from .models import ContextBaseModel

logger = logging.getLogger(__name__)

QUERY_TYPES = ("factual", "conceptual", "procedural", "exploratory", "unknown")


class AppConfig(BaseModel):
    name: str = "contextrag"
    version: str = "0.1.0"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080


class QueryAnalysisConfig(BaseModel):
    """Adaptive chunk count selection."""

    default_chunks: int = Field(default=5, gt=0)
    min_chunks: int = Field(default=3, gt=0)
    max_chunks: int = Field(default=15, gt=0)
    simple_max_length: int = 50
    complex_min_length: int = 150
    simple_max_keywords: int = 2
    complex_min_keywords: int = 5
    short_max_length: int = 20
    medium_max_length: int = 100
    intent_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"simple": 0.6, "moderate": 1.0, "complex": 1.5}
    )
    length_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"short": 0.7, "medium": 1.0, "long": 1.3}
    )
    type_adjustments: Dict[str, int] = Field(
        default_factory=lambda: {
            "factual": 0,
            "conceptual": 2,
            "procedural": 1,
            "exploratory": 3,
            "unknown": 0,
        }
    )
    # Document/web balance for adaptive selection
    web_ratio: float = 0.8
    min_web_results: int = 2
    max_web_results: int = 10

    @validator("max_chunks")
    def validate_bounds(cls, v, values):
        min_chunks = values.get("min_chunks")
        if min_chunks is not None and v < min_chunks:
            raise ValueError(f"max_chunks ({v}) must be >= min_chunks ({min_chunks})")
        return v


class ThresholdConfig(BaseModel):
    default_threshold: float = 0.7
    min_threshold: float = 0.3
    max_threshold: float = 0.95
    query_type_thresholds: Dict[str, float] = Field(
        default_factory=lambda: {
            "factual": 0.75,
            "conceptual": 0.65,
            "procedural": 0.70,
            "exploratory": 0.60,
            "unknown": 0.70,
        }
    )
    query_type_top_k: Dict[str, int] = Field(
        default_factory=lambda: {
            "factual": 10,
            "conceptual": 15,
            "procedural": 15,
            "exploratory": 25,
            "unknown": 20,
        }
    )
    max_top_k: int = 50
    use_distribution_analysis: bool = False
    percentile: float = 0.75
    min_results: int = 3
    max_results: int = 10
    relax_step: float = 0.1
    tighten_step: float = 0.05

    @validator("query_type_thresholds")
    def validate_thresholds(cls, v):
        for query_type, threshold in v.items():
            if not 0.0 <= threshold <= 1.0:
                raise ValueError(
                    f"threshold for {query_type} must be within [0, 1], got {threshold}"
                )
        return v


class ExpansionConfig(BaseModel):
    enabled: bool = False
    method: str = "hybrid"  # llm, synonym, hybrid, none
    max_expansions: int = 5
    confidence_threshold: float = 0.5
    cache_ttl_seconds: int = 3600
    llm_temperature: float = 0.7
    llm_max_tokens: int = 100
    llm_timeout_ms: int = Field(default=5000, gt=0)

    @validator("method")
    def validate_method(cls, v):
        valid = {"llm", "synonym", "hybrid", "none"}
        if v not in valid:
            raise ValueError(f"method must be one of {valid}, got {v}")
        return v


class HybridSearchConfig(BaseModel):
    vector_weight: float = 0.6
    lexical_weight: float = 0.4
    web_weight: float = 0.5
    min_fused_score: float = 0.05
    search_timeout_ms: int = 3000
    per_call_timeout_ms: int = 2500
    web_timeout_ms: int = 4000

    @validator("lexical_weight")
    def validate_weights(cls, v, values):
        vector_weight = values.get("vector_weight", 0.6)
        if abs((vector_weight + v) - 1.0) > 1e-6:
            raise ValueError(
                f"vector_weight + lexical_weight must equal 1.0, got {vector_weight + v}"
            )
        return v


class RerankerConfig(BaseModel):
    strategy: str = "rrf"  # cross_encoder, rrf, score
    provider: Optional[str] = None  # jina-ai
    model: Optional[str] = None
    max_candidates: int = 50
    batch_size: int = 10
    rrf_k: int = 60
    timeout_ms: int = 5000
    score_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "semantic": 0.4,
            "lexical": 0.3,
            "length": 0.2,
            "position": 0.1,
        }
    )

    @validator("strategy")
    def validate_strategy(cls, v):
        valid = {"cross_encoder", "rrf", "score"}
        if v not in valid:
            raise ValueError(f"strategy must be one of {valid}, got {v}")
        return v


class DiversityConfig(BaseModel):
    enabled: bool = True
    lambda_: float = Field(default=0.7, alias="lambda", ge=0.0, le=1.0)
    candidate_multiplier: float = 2.0
    embed_missing: bool = True

    class Config:
        populate_by_name = True


class DeduplicationConfig(BaseModel):
    enabled: bool = True
    near_duplicate_threshold: float = Field(default=0.95, gt=0.0, le=1.0)


class ContextConfig(BaseModel):
    """Token budgeting for the assembled context window."""

    model: str = "gpt-3.5-turbo"
    tokenizer_backend: str = "tiktoken"  # tiktoken, hf
    tokenizer_encoding: str = "cl100k_base"
    tokenizer_model_id: Optional[str] = None  # HuggingFace model id for hf backend
    model_context_limits: Dict[str, int] = Field(
        default_factory=lambda: {
            "gpt-3.5-turbo": 16385,
            "gpt-4": 8192,
            "gpt-4-turbo": 128000,
            "gpt-4o": 128000,
            "gpt-4o-mini": 128000,
        }
    )
    allocation: Dict[str, float] = Field(
        default_factory=lambda: {
            "document_context": 0.50,
            "web_context": 0.20,
            "system_prompt": 0.05,
            "user_prompt": 0.05,
            "response": 0.15,
            "overhead": 0.05,
        }
    )
    max_context_tokens: int = 6000
    system_prompt_tokens: int = 200
    min_truncation_ratio: float = Field(default=0.2, ge=0.0, le=1.0)

    @validator("allocation")
    def validate_allocation(cls, v):
        total = sum(v.values())
        if total > 1.0 + 1e-6:
            raise ValueError(f"allocation ratios must sum to <= 1.0, got {total:.2f}")
        return v


class L1CacheConfig(BaseModel):
    enabled: bool = True
    ttl_seconds: int = 300
    max_size: int = 1000


class L2CacheConfig(BaseModel):
    enabled: bool = False
    ttl_seconds: int = 3600
    key_prefix: str = "contextrag"


class CacheInvalidationConfig(BaseModel):
    history_size: int = 1000
    scan_count: int = 100


class CacheConfig(BaseModel):
    enabled: bool = True
    context_ttl_seconds: int = 3600
    l1: L1CacheConfig = Field(default_factory=L1CacheConfig)
    l2: L2CacheConfig = Field(default_factory=L2CacheConfig)
    invalidation: CacheInvalidationConfig = Field(
        default_factory=CacheInvalidationConfig
    )


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(default=5, gt=0)
    recovery_timeout_seconds: float = Field(default=30.0, gt=0)


class RecoveryConfig(BaseModel):
    max_attempts: int = Field(default=3, gt=0)
    retry_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    rate_limit_delay_ms: int = 2000
    max_retry_after_ms: int = 10000
    max_total_retry_ms: int = 15000
    history_size: int = 10000
    average_window: int = 100
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)


class WorkerPoolConfig(BaseModel):
    concurrency: int = Field(default=5, gt=0)
    rate_limit_max_jobs: int = Field(default=10, gt=0)
    rate_limit_period_seconds: float = Field(default=1.0, gt=0)
    max_queue_size: int = 1000
    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    completed_jobs_retained: int = 1000


class WebSearchConfig(BaseModel):
    enabled: bool = False
    provider: str = "tavily"
    max_results: int = 5
    search_depth: str = "basic"


class ProvidersConfig(BaseModel):
    embedding_provider: str = "openai"  # openai
    embedding_model: str = "text-embedding-3-small"
    llm_provider: str = "openai"
    llm_model: str = "gpt-3.5-turbo"
    vector_store: str = "qdrant"  # qdrant, memory
    qdrant_collection: str = "chunks"
    lexical_index: str = "bm25"
    timeout_seconds: float = 30.0


class Config(ContextBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    query_analysis: QueryAnalysisConfig = Field(default_factory=QueryAnalysisConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    expansion: ExpansionConfig = Field(default_factory=ExpansionConfig)
    hybrid: HybridSearchConfig = Field(default_factory=HybridSearchConfig)
    reranker: RerankerConfig = Field(default_factory=RerankerConfig)
    diversity: DiversityConfig = Field(default_factory=DiversityConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    workers: WorkerPoolConfig = Field(default_factory=WorkerPoolConfig)
    web_search: WebSearchConfig = Field(default_factory=WebSearchConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    # Environment
    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Redis
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    # Qdrant
    qdrant_host: str = Field(default="localhost", alias="QDRANT_HOST")
    qdrant_port: int = Field(default=6333, alias="QDRANT_PORT")

    # Provider credentials
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", alias="OPENAI_BASE_URL"
    )
    jina_api_key: Optional[str] = Field(default=None, alias="JINA_API_KEY")
    tavily_api_key: Optional[str] = Field(default=None, alias="TAVILY_API_KEY")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    settings = Settings()

    if settings.config_path:
        config_path = Path(settings.config_path)
    else:
        config_path = (
            Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"
        )

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f) or {}

    config = Config(**config_dict)
    validate_config_at_startup(config, settings)

    return config, settings


def validate_config_at_startup(config: Config, settings: Settings) -> None:
    """
    Validate cross-section configuration at startup.
    Fail fast: invalid combinations abort initialization instead of
    surfacing per request.

    Raises:
        ValueError: If critical validation fails
    """
    qa = config.query_analysis
    if not qa.min_chunks <= qa.default_chunks <= qa.max_chunks:
        raise ValueError(
            "query_analysis.default_chunks must lie within [min_chunks, max_chunks], "
            f"got {qa.default_chunks} not in [{qa.min_chunks}, {qa.max_chunks}]"
        )

    missing_types = set(QUERY_TYPES) - set(config.thresholds.query_type_thresholds)
    if missing_types:
        raise ValueError(
            f"thresholds.query_type_thresholds missing types: {sorted(missing_types)}"
        )

    if config.context.model not in config.context.model_context_limits:
        raise ValueError(
            f"context.model {config.context.model!r} has no entry in "
            "context.model_context_limits"
        )

    if config.reranker.strategy == "cross_encoder" and not config.reranker.provider:
        raise ValueError("reranker.provider is required for cross_encoder strategy")

    if config.hybrid.per_call_timeout_ms > config.hybrid.search_timeout_ms:
        logger.warning(
            "hybrid.per_call_timeout_ms (%s) exceeds search_timeout_ms (%s); "
            "the join timeout will cut retries short",
            config.hybrid.per_call_timeout_ms,
            config.hybrid.search_timeout_ms,
        )

    logger.info(
        "Configuration validation successful: env=%s reranker=%s l2_cache=%s",
        settings.env,
        config.reranker.strategy,
        config.cache.l2.enabled,
    )


# Global config instances (loaded once at startup)
_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get the global Config instance"""
    global _config
    if _config is None:
        _config, _ = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _settings
    if _settings is None:
        _, _settings = load_config()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> tuple[Config, Settings]:
    """Force reload of config/settings from disk and environment."""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}
