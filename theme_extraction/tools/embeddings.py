"""
Embedding provider: text → EmbeddingVector with a precomputed norm.

Backends (EMBEDDING_BACKEND):
1. local       — sentence-transformers model, loaded once per process
2. huggingface — Hugging Face Inference API (feature extraction)
3. ollama      — Ollama /api/embeddings over httpx
4. hashing     — sklearn HashingVectorizer, deterministic and offline

Concurrency: embed_batch() runs one task per text under an asyncio.Semaphore.
Local backends allow ~100 in flight, remote ones ~10 (provider limits).
Every backend is deterministic (same text → same vector), so concurrent and
sequential batches produce identical results.

Remote calls (huggingface, ollama) in embed_batch() go through the shared
RateLimitedExecutor with the backend as provider: a 429 is retried with
backoff, and an exhausted retry budget raises RateLimitError (or
CircuitOpenError) out of the batch. A rate limit is never a skipped text.

Any other failure raises EmbeddingError from embed(); embed_batch() logs it
and returns None in that slot. One bad source never aborts a run.

IMPORTANT: the first successful vector locks the dimension. A later vector of
a different size is rejected, since mixed dimensions break every downstream
similarity computation.
"""

import asyncio
import logging
import math
import threading
from typing import List, Optional, Sequence

import httpx
import numpy as np

from ..config import get_settings
from ..errors import CircuitOpenError, EmbeddingError, RateLimitError
from ..schemas.themes import Code, EmbeddingVector
from .rate_limiter import RateLimitedExecutor, is_rate_limit_error, parse_rate_limit_error

logger = logging.getLogger(__name__)

LOCAL_BACKENDS = frozenset({"local", "hashing"})
REMOTE_BACKENDS = frozenset({"huggingface", "ollama"})
SUPPORTED_BACKENDS = frozenset({"local", "huggingface", "ollama", "hashing"})

# Singleton for local model (avoids reloading on every EmbeddingProvider instantiation)
_local_model = None
_local_model_name = None
_local_model_lock = threading.Lock()


def _get_device() -> str:
    """Detect best available device: CUDA GPU > CPU."""
    try:
        import torch
        if torch.cuda.is_available():
            logger.info(f"GPU detected: {torch.cuda.get_device_name(0)}, using CUDA")
            return "cuda"
    except ImportError:
        pass
    return "cpu"


def _get_local_model(model_name: str):
    """Load local sentence-transformers model (singleton, lazy-loaded)."""
    global _local_model, _local_model_name
    with _local_model_lock:
        if _local_model is not None and _local_model_name == model_name:
            return _local_model
        from sentence_transformers import SentenceTransformer
        device = _get_device()
        logger.info(f"Loading local embedding model: {model_name} on {device}...")
        _local_model = SentenceTransformer(model_name, device=device)
        _local_model_name = model_name
        logger.info(
            f"Local embedding model loaded: {model_name} "
            f"(dim={_local_model.get_sentence_embedding_dimension()})"
        )
        return _local_model


class EmbeddingProvider:
    """Pluggable text embedder with dimension locking and bounded concurrency."""

    def __init__(self, settings=None, backend: Optional[str] = None, concurrency: Optional[int] = None,
                 executor: Optional[RateLimitedExecutor] = None):
        self.settings = settings or get_settings()
        self.backend = (backend or self.settings.embedding_backend).lower()
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unknown embedding backend '{self.backend}' "
                f"(expected one of {sorted(SUPPORTED_BACKENDS)})"
            )
        if concurrency is None:
            concurrency = (
                self.settings.local_embedding_concurrency
                if self.backend in LOCAL_BACKENDS
                else self.settings.remote_embedding_concurrency
            )
        self.concurrency = max(1, concurrency)
        self.executor = executor
        if self.executor is None and self.backend in REMOTE_BACKENDS:
            self.executor = RateLimitedExecutor(settings=self.settings)
        self._dim: Optional[int] = None
        self._dim_lock = threading.Lock()
        self._hf_client = None
        self._hasher = None

    @property
    def model_name(self) -> str:
        s = self.settings
        return {
            "local": s.local_embedding_model,
            "huggingface": s.embedding_model,
            "ollama": s.ollama_embedding_model,
            "hashing": f"hashing-{s.embedding_dimensions}",
        }[self.backend]

    @property
    def dimensions(self) -> Optional[int]:
        return self._dim

    # ── Backends ─────────────────────────────────────────────────────

    def _embed_local(self, text: str) -> List[float]:
        model = _get_local_model(self.settings.local_embedding_model)
        return model.encode(text, normalize_embeddings=False).tolist()

    @property
    def hf_client(self):
        """Lazy-load Hugging Face client."""
        if self._hf_client is None:
            from huggingface_hub import InferenceClient
            self._hf_client = InferenceClient(token=self.settings.huggingface_api_key or None)
        return self._hf_client

    def _embed_hf(self, text: str) -> List[float]:
        result = np.asarray(
            self.hf_client.feature_extraction(text, model=self.settings.embedding_model),
            dtype=np.float64,
        )
        # Token-level models return (tokens, dim): mean-pool
        if result.ndim > 1:
            result = result.reshape(-1, result.shape[-1]).mean(axis=0)
        return result.tolist()

    def _embed_ollama(self, text: str) -> List[float]:
        url = f"{self.settings.ollama_base_url}/api/embeddings"
        payload = {"model": self.settings.ollama_embedding_model, "prompt": text}
        with httpx.Client(timeout=60.0) as client:
            response = client.post(url, json=payload)
            response.raise_for_status()
            return response.json().get("embedding", [])

    async def _embed_ollama_async(self, client: httpx.AsyncClient, text: str) -> List[float]:
        url = f"{self.settings.ollama_base_url}/api/embeddings"
        payload = {"model": self.settings.ollama_embedding_model, "prompt": text}
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json().get("embedding", [])

    def _embed_hashing(self, text: str) -> List[float]:
        if self._hasher is None:
            from sklearn.feature_extraction.text import HashingVectorizer
            self._hasher = HashingVectorizer(
                n_features=self.settings.embedding_dimensions,
                ngram_range=(1, 2),
                stop_words="english",
                alternate_sign=False,
                norm=None,
            )
        return self._hasher.transform([text]).toarray()[0].tolist()

    def _raw_embed(self, text: str) -> List[float]:
        if self.backend == "local":
            return self._embed_local(text)
        if self.backend == "huggingface":
            return self._embed_hf(text)
        if self.backend == "ollama":
            return self._embed_ollama(text)
        return self._embed_hashing(text)

    # ── Validation ───────────────────────────────────────────────────

    def _lock_dimension(self, size: int) -> None:
        with self._dim_lock:
            if self._dim is None:
                self._dim = size
                logger.info(f"Embedding dimension locked: {size} ({self.backend}:{self.model_name})")
            elif size != self._dim:
                raise EmbeddingError(
                    f"dimension mismatch: got {size}, pipeline locked to {self._dim}"
                )

    def _to_vector(self, values: Sequence[float]) -> EmbeddingVector:
        if values is None or len(values) == 0:
            raise EmbeddingError(f"{self.backend} backend returned an empty vector")
        arr = np.asarray(values, dtype=np.float64)
        if not np.all(np.isfinite(arr)):
            raise EmbeddingError("vector contains non-finite values")
        norm = float(np.linalg.norm(arr))
        if norm <= 0 or not math.isfinite(norm):
            raise EmbeddingError("text has no embeddable content (zero-norm vector)")
        self._lock_dimension(int(arr.shape[0]))
        return EmbeddingVector(
            values=arr.tolist(), norm=norm, dimensions=int(arr.shape[0]), model=self.model_name,
        )

    # ── Public API ───────────────────────────────────────────────────

    def embed(self, text: str) -> EmbeddingVector:
        """Embed one text. Raises EmbeddingError on empty input or backend failure."""
        if text is None or not str(text).strip():
            raise EmbeddingError("empty or whitespace-only text")
        try:
            values = self._raw_embed(str(text))
        except EmbeddingError:
            raise
        except (httpx.HTTPError, ValueError, RuntimeError, OSError) as e:
            self._raise_if_rate_limited(e)
            raise EmbeddingError(f"{self.backend} backend failed: {type(e).__name__}: {e}") from e
        return self._to_vector(values)

    def _raise_if_rate_limited(self, error: BaseException) -> None:
        """Single unretried call: a 429 still surfaces typed, never as EmbeddingError."""
        if not is_rate_limit_error(error):
            return
        info = parse_rate_limit_error(
            error,
            default_retry_seconds=self.settings.rate_limit_default_retry_seconds,
            max_retry_seconds=self.settings.rate_limit_max_retry_seconds,
        )
        raise RateLimitError(
            provider=self.backend,
            retry_after_seconds=info.retry_after_seconds,
            usage=info.usage,
            details=info.message,
        ) from error

    async def _embed_remote(self, text: str, client: Optional[httpx.AsyncClient] = None) -> EmbeddingVector:
        """One remote embedding through the executor (retry on 429, circuit breaker)."""
        if not text or not text.strip():
            raise EmbeddingError("empty or whitespace-only text")
        if self.backend == "ollama":
            operation = lambda: self._embed_ollama_async(client, text)
        else:
            operation = lambda: asyncio.to_thread(self._embed_hf, text)
        try:
            values = await self.executor.execute(operation, context="embedding", provider=self.backend)
        except (RateLimitError, CircuitOpenError):
            raise
        except (httpx.HTTPError, ValueError, RuntimeError, OSError) as e:
            raise EmbeddingError(f"{self.backend} backend failed: {type(e).__name__}: {e}") from e
        return self._to_vector(values)

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[EmbeddingVector]]:
        """Embed many texts concurrently.

        Failed slots are None (logged, not raised). RateLimitError and
        CircuitOpenError are raised: once one is seen, pending texts are not sent.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        results: List[Optional[EmbeddingVector]] = [None] * len(texts)
        fatal: List[Exception] = []

        async def _one(i: int, text: str, client: Optional[httpx.AsyncClient]):
            async with semaphore:
                if fatal:
                    return
                try:
                    if self.backend in REMOTE_BACKENDS:
                        results[i] = await self._embed_remote(text, client)
                    else:
                        results[i] = await asyncio.to_thread(self.embed, text)
                except EmbeddingError as e:
                    logger.warning(f"Skipping text {i}: {e.reason}")
                except (RateLimitError, CircuitOpenError) as e:
                    fatal.append(e)

        if self.backend == "ollama":
            async with httpx.AsyncClient(timeout=60.0) as client:
                await asyncio.gather(*(_one(i, t, client) for i, t in enumerate(texts)))
        else:
            await asyncio.gather(*(_one(i, t, None) for i, t in enumerate(texts)))

        if fatal:
            logger.error(f"Embedding batch aborted by {self.backend}: {fatal[0].message}")
            raise fatal[0]

        failed = sum(1 for r in results if r is None)
        if failed:
            logger.warning(f"Embedding batch: {failed}/{len(texts)} text(s) skipped")
        return results

    async def embed_codes(self, codes: Sequence[Code]) -> List[Code]:
        """Return embedded copies of `codes`, dropping the ones that failed to embed."""
        vectors = await self.embed_batch([c.text for c in codes])
        embedded = []
        for code, vector in zip(codes, vectors):
            if vector is None:
                logger.warning(f"Code {code.id} (source {code.source_id}) skipped: no embedding")
                continue
            embedded.append(code.with_embedding(vector))
        return embedded


# ── Similarity helpers ─────────────────────────────────────────────────────────

def cosine_similarity(a: EmbeddingVector, b: EmbeddingVector) -> float:
    """Cosine similarity using the vectors' stored norms."""
    return float(np.dot(a.as_array(), b.as_array()) / (a.norm * b.norm))


def naive_cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity recomputing both norms (reference implementation)."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    return float(np.dot(va, vb) / (np.linalg.norm(va) * np.linalg.norm(vb)))


def _stack_vectors(vectors: Sequence[EmbeddingVector]) -> np.ndarray:
    """(n, dim) matrix of raw values."""
    return np.vstack([v.as_array() for v in vectors])


def unit_matrix(vectors: Sequence[EmbeddingVector]) -> np.ndarray:
    """(n, dim) matrix of L2-normalized rows, dividing by the stored norms."""
    norms = np.asarray([v.norm for v in vectors], dtype=np.float64)[:, None]
    return _stack_vectors(vectors) / norms


def similarity_matrix(vectors: Sequence[EmbeddingVector]) -> np.ndarray:
    """Pairwise cosine similarity matrix."""
    if not vectors:
        return np.zeros((0, 0))
    unit = unit_matrix(vectors)
    return unit @ unit.T


def centroid(vectors: Sequence[EmbeddingVector]) -> np.ndarray:
    """Mean of the unit vectors."""
    if not vectors:
        raise ValueError("centroid of an empty set")
    return unit_matrix(vectors).mean(axis=0)
