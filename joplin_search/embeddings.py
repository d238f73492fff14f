from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from .errors import EmbeddingError


DEFAULT_MODEL_NAME = "BAAI/bge-small-en-v1.5"
DIMENSIONS = 384


@runtime_checkable
class TextEncoder(Protocol):
    """Anything with a SentenceTransformer-style encode() qualifies."""

    def encode(self, sentences: List[str], **kwargs: Any) -> Any:
        ...


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize every row so cosine similarity equals the dot product.

    Rows with (near) zero norm are left as they are.
    """
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    safe = np.where(norms > 1e-10, norms, 1.0)
    return (vectors / safe).astype(np.float32)


class EmbeddingPipeline:
    """Serialized access to one sentence-embedding model.

    The underlying inference session is not safe to enter from two threads at
    once, so every call goes through a single lock. The async wrappers push
    inference onto a dedicated worker thread to keep the event loop free.
    """

    def __init__(self, model: TextEncoder, *, dim: int = DIMENSIONS, model_name: str = "") -> None:
        self.model_name = model_name or type(model).__name__
        self.dim = int(dim)
        self._model = model
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    @classmethod
    def load(
        cls,
        model_name: str = DEFAULT_MODEL_NAME,
        *,
        device: str = "cpu",
        cache_dir: Optional[str] = None,
        dim: int = DIMENSIONS,
    ) -> "EmbeddingPipeline":
        """Load a sentence-transformers model. Downloads on first use."""
        try:
            from sentence_transformers import SentenceTransformer

            model = SentenceTransformer(model_name, device=device, cache_folder=cache_dir)
        except Exception as exc:
            raise EmbeddingError(f"Failed to load embedding model {model_name}: {exc}") from exc
        return cls(model, dim=dim, model_name=model_name)

    def _encode(self, texts: List[str]) -> np.ndarray:
        with self._lock:
            try:
                raw = self._model.encode(
                    texts,
                    batch_size=max(1, min(128, len(texts))),
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
            except Exception as exc:
                raise EmbeddingError(f"Embedding inference failed: {exc}") from exc
        vectors = np.asarray(raw, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape != (len(texts), self.dim):
            raise EmbeddingError(
                f"Model returned shape {vectors.shape}, expected ({len(texts)}, {self.dim})"
            )
        return normalize_rows(vectors)

    def embed_one(self, text: str) -> np.ndarray:
        return self._encode([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """One normalized vector per input text, in input order."""
        texts_list = list(texts)
        if not texts_list:
            return np.zeros((0, self.dim), dtype=np.float32)
        return self._encode(texts_list)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedding")
            return self._executor

    async def aembed_one(self, text: str) -> np.ndarray:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._ensure_executor(), self.embed_one, text)

    async def aembed_batch(self, texts: Sequence[str]) -> np.ndarray:
        texts_list = list(texts)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._ensure_executor(), self.embed_batch, texts_list)

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True, cancel_futures=True)
                self._executor = None
