# Tools module
from .llm_service import LLMService
from .embeddings import (
    EmbeddingProvider,
    cosine_similarity,
    naive_cosine_similarity,
    similarity_matrix,
    centroid,
)
from .rate_limiter import (
    BackoffPolicy,
    CircuitBreaker,
    CircuitState,
    RateLimitedExecutor,
    RateLimitTracker,
    parse_rate_limit_error,
    retry_async,
)
from .theme_cache import ThemeCache, content_fingerprint, fingerprint
from .json_repair import JsonParseError, ParseResult, load_json, parse_model

__all__ = [
    # LLM
    "LLMService",
    # Embeddings
    "EmbeddingProvider",
    "cosine_similarity",
    "naive_cosine_similarity",
    "similarity_matrix",
    "centroid",
    # Rate limiting / circuit breaker
    "BackoffPolicy",
    "CircuitBreaker",
    "CircuitState",
    "RateLimitedExecutor",
    "RateLimitTracker",
    "parse_rate_limit_error",
    "retry_async",
    # Cache
    "ThemeCache",
    "fingerprint",
    "content_fingerprint",
    # Parsing
    "ParseResult",
    "parse_model",
    "load_json",
    "JsonParseError",
]
