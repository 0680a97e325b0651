"""
Theme extraction engine: research sources → purpose-aware themes.

Entry point is ThemeExtractionPipeline (theme_extraction.themes.engine):

    from theme_extraction import ThemeExtractionPipeline, configure_logging
    from theme_extraction.schemas import ExtractionRequest, ResearchPurpose

    configure_logging()
    pipeline = ThemeExtractionPipeline()
    result = await pipeline.run(ExtractionRequest(sources=..., purpose=ResearchPurpose.QUALITATIVE_ANALYSIS))
"""

import logging
from typing import Optional

from theme_extraction.config import Settings, get_settings
from theme_extraction.errors import (
    CacheError,
    CircuitOpenError,
    ClusteringError,
    EmbeddingError,
    ExtractionCancelled,
    NoContentProducedError,
    RateLimitError,
    ThemeExtractionError,
    ValidationError,
)
from theme_extraction.themes.engine import ThemeExtractionPipeline
from theme_extraction.themes.run_manager import CancellationToken

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once (level defaults to LOG_LEVEL from settings)."""
    level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "ThemeExtractionPipeline",
    "CancellationToken",
    "ThemeExtractionError",
    "ValidationError",
    "EmbeddingError",
    "RateLimitError",
    "NoContentProducedError",
    "ClusteringError",
    "CacheError",
    "CircuitOpenError",
    "ExtractionCancelled",
]
