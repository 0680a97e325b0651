"""
Configuration management for the theme extraction engine.
Supports OpenAI-compatible and Groq LLM providers, local or remote embeddings.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration
    # Provider priority: OpenAI-compatible endpoint → Groq
    llm_provider: str = Field(default="openai", alias="LLM_PROVIDER")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="", alias="OPENAI_BASE_URL")
    groq_api_key: str = Field(default="", alias="GROQ_API_KEY")
    groq_model: str = Field(default="llama-3.3-70b-versatile", alias="GROQ_MODEL")
    llm_temperature: float = Field(default=0.3, alias="LLM_TEMPERATURE")
    llm_timeout_seconds: float = Field(default=60.0, alias="LLM_TIMEOUT_SECONDS")
    # Mock mode answers every LLM call from tools/mock_responses (no network)
    mock_mode: bool = Field(default=False, alias="MOCK_MODE")

    # ── Embeddings ──
    # Backends: local (sentence-transformers) | huggingface | ollama | hashing
    # "hashing" is deterministic and offline (sklearn HashingVectorizer).
    embedding_backend: str = Field(default="local", alias="EMBEDDING_BACKEND")
    local_embedding_model: str = Field(default="all-MiniLM-L6-v2", alias="LOCAL_EMBEDDING_MODEL")
    embedding_model: str = Field(default="BAAI/bge-small-en-v1.5", alias="EMBEDDING_MODEL")
    huggingface_api_key: str = Field(default="", alias="HF_API_KEY")
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    ollama_embedding_model: str = Field(default="nomic-embed-text", alias="OLLAMA_EMBEDDING_MODEL")
    embedding_dimensions: int = Field(default=384, alias="EMBEDDING_DIMENSIONS")
    # Local inference is compute-bound, remote is provider-limit-bound
    local_embedding_concurrency: int = Field(default=100, alias="LOCAL_EMBEDDING_CONCURRENCY")
    remote_embedding_concurrency: int = Field(default=10, alias="REMOTE_EMBEDDING_CONCURRENCY")

    # ── Rate Limiting ──
    rate_limit_max_retries: int = Field(default=3, alias="RATE_LIMIT_MAX_RETRIES")
    rate_limit_base_delay_seconds: float = Field(default=5.0, alias="RATE_LIMIT_BASE_DELAY_SECONDS")
    # Used when a 429 carries no parseable "try again in" hint
    rate_limit_default_retry_seconds: int = Field(default=300, alias="RATE_LIMIT_DEFAULT_RETRY_SECONDS")
    rate_limit_max_retry_seconds: int = Field(default=3600, alias="RATE_LIMIT_MAX_RETRY_SECONDS")
    # Usage ratio at which a provider is reported as near its quota
    rate_limit_warning_ratio: float = Field(default=0.9, alias="RATE_LIMIT_WARNING_RATIO")
    circuit_failure_threshold: int = Field(default=5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_success_threshold: int = Field(default=2, alias="CIRCUIT_SUCCESS_THRESHOLD")
    circuit_open_seconds: float = Field(default=60.0, alias="CIRCUIT_OPEN_SECONDS")

    # ── Code Extraction ──
    # llm = atomic statements from the LLM, local = keyword/bigram frequency codes
    code_extraction_mode: str = Field(default="llm", alias="CODE_EXTRACTION_MODE")
    extraction_batch_size: int = Field(default=5, alias="EXTRACTION_BATCH_SIZE")
    extraction_concurrency: int = Field(default=4, alias="EXTRACTION_CONCURRENCY")
    extraction_char_limit: int = Field(default=4000, alias="EXTRACTION_CHAR_LIMIT")

    # ── Clustering ──
    clustering_random_state: int = Field(default=42, alias="CLUSTERING_RANDOM_STATE")
    kmeans_max_iterations: int = Field(default=100, alias="KMEANS_MAX_ITERATIONS")
    kmeans_tolerance: float = Field(default=0.001, alias="KMEANS_TOLERANCE")
    # Cheaper runs while scanning candidate k values
    k_selection_max_iterations: int = Field(default=50, alias="K_SELECTION_MAX_ITERATIONS")
    bisecting_enabled: bool = Field(default=True, alias="BISECTING_ENABLED")
    bisecting_min_coherence: float = Field(default=0.35, alias="BISECTING_MIN_COHERENCE")
    # Centroid cosine above which two clusters are near-duplicates
    diversity_similarity_threshold: float = Field(default=0.7, alias="DIVERSITY_SIMILARITY_THRESHOLD")
    code_split_max_chars: int = Field(default=160, alias="CODE_SPLIT_MAX_CHARS")
    split_grounding_threshold: float = Field(default=0.65, alias="SPLIT_GROUNDING_THRESHOLD")
    max_splits_per_code: int = Field(default=5, alias="MAX_SPLITS_PER_CODE")

    # ── Labeling ──
    labeling_mode: str = Field(default="local", alias="LABELING_MODE")
    # 0 = os.cpu_count()
    labeling_workers: int = Field(default=0, alias="LABELING_WORKERS")

    # ── Saturation ──
    saturation_permutations: int = Field(default=100, alias="SATURATION_PERMUTATIONS")
    saturation_new_theme_threshold: int = Field(default=1, alias="SATURATION_NEW_THEME_THRESHOLD")
    saturation_probability_threshold: float = Field(default=0.8, alias="SATURATION_PROBABILITY_THRESHOLD")

    # ── Cache ──
    cache_max_entries: int = Field(default=100, alias="CACHE_MAX_ENTRIES")
    cache_ttl_seconds: int = Field(default=3600, alias="CACHE_TTL_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    def get_llm_config(self) -> dict:
        """Get LLM configuration for the active provider."""
        if self.llm_provider == "groq" and self.groq_api_key:
            return {
                "provider": "groq",
                "model": self.groq_model,
                "api_key": self.groq_api_key,
            }
        return {
            "provider": "openai",
            "model": self.openai_model,
            "api_key": self.openai_api_key,
            "base_url": self.openai_base_url or None,
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
