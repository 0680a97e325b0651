"""
Typed error taxonomy for theme extraction runs.

Every failure a caller can see is one of these. Each carries the stage it
came from and a to_dict() payload that is safe to ship in a failure event.

  ValidationError        blocking, itemized per source, nothing else runs
  EmbeddingError         recoverable, the item is skipped
  RateLimitError         retried by the executor, then fatal with retry timing
  NoContentProducedError every extraction batch failed
  ClusteringError        nothing to cluster
  CacheError             non-fatal, treated as a miss / no-op
  CircuitOpenError       provider short-circuited after repeated failures
  ExtractionCancelled    caller asked to stop
"""

import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SourceIssue(BaseModel):
    """Why one source (or the source set, when source_id is None) is insufficient."""
    source_id: Optional[str] = None
    reason: str
    content_length: int = 0
    required_length: int = 0


class RateLimitUsage(BaseModel):
    """Quota usage reported by a provider in its 429 message."""
    limit: int = Field(ge=0)
    used: int = Field(ge=0)
    requested: int = Field(ge=0)

    @property
    def percentage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return round(100.0 * self.used / self.limit, 2)


class ThemeExtractionError(Exception):
    """Base class. `stage` names the pipeline stage that failed."""

    kind = "theme_extraction_error"

    def __init__(self, message: str, stage: str = ""):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "stage": self.stage, "message": self.message}


class ValidationError(ThemeExtractionError):
    kind = "validation_error"

    def __init__(self, purpose: str, issues: List[SourceIssue]):
        self.purpose = purpose
        self.issues = list(issues)
        lines = [
            f"  - {i.source_id}: {i.reason}" if i.source_id else f"  - {i.reason}"
            for i in self.issues
        ]
        message = (
            f"Insufficient content for {purpose}: {len(self.issues)} issue(s)\n"
            + "\n".join(lines)
        )
        super().__init__(message, stage="validating")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["purpose"] = self.purpose
        data["issues"] = [i.model_dump() for i in self.issues]
        return data


class EmbeddingError(ThemeExtractionError):
    kind = "embedding_error"

    def __init__(self, reason: str, source_id: Optional[str] = None):
        self.reason = reason
        self.source_id = source_id
        prefix = f"{source_id}: " if source_id else ""
        super().__init__(f"Embedding failed: {prefix}{reason}", stage="embedding")


class RateLimitError(ThemeExtractionError):
    kind = "rate_limit_error"

    def __init__(
        self,
        provider: str,
        retry_after_seconds: int,
        usage: Optional[RateLimitUsage] = None,
        details: str = "",
        stage: str = "",
    ):
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds
        self.usage = usage
        self.details = details
        super().__init__(self.user_message(), stage=stage)

    def user_message(self) -> str:
        """Actionable text, e.g. 'try again in 7 minutes, 99,996/100,000 used'."""
        minutes = math.ceil(self.retry_after_seconds / 60)
        if self.retry_after_seconds < 60:
            wait = f"{self.retry_after_seconds} seconds"
        else:
            wait = f"{minutes} minute{'s' if minutes != 1 else ''}"
        msg = f"{self.provider} rate limit exceeded: try again in {wait}"
        if self.usage is not None:
            msg += f", {self.usage.used:,}/{self.usage.limit:,} used"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        data["retry_after_seconds"] = self.retry_after_seconds
        data["usage"] = self.usage.model_dump() if self.usage else None
        return data


class NoContentProducedError(ThemeExtractionError):
    kind = "no_content_produced"

    def __init__(self, attempted_batches: int, failures: List[str]):
        self.attempted_batches = attempted_batches
        self.failures = list(failures)
        shown = "; ".join(f[:200] for f in self.failures[:3])
        super().__init__(
            f"Code extraction produced no codes: all {attempted_batches} batch(es) failed"
            + (f" ({shown})" if shown else ""),
            stage="extracting",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempted_batches"] = self.attempted_batches
        data["failures"] = self.failures
        return data


class ClusteringError(ThemeExtractionError):
    kind = "clustering_error"

    def __init__(self, reason: str, stage_name: str = "clustering"):
        self.reason = reason
        super().__init__(f"Clustering failed: {reason}", stage=stage_name)


class CacheError(ThemeExtractionError):
    kind = "cache_error"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Cache {operation} failed: {reason}", stage="cache")


class CircuitOpenError(ThemeExtractionError):
    kind = "circuit_open"

    def __init__(self, provider: str, retry_after_seconds: float):
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"{provider} circuit open after repeated failures, "
            f"retry in {retry_after_seconds:.0f}s",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class ExtractionCancelled(ThemeExtractionError):
    kind = "cancelled"

    def __init__(self, stage: str = ""):
        super().__init__(f"Extraction cancelled during {stage or 'run'}", stage=stage)
