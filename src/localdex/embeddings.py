"""Local embedding model wrapper.

Uses ``fastembed`` (ONNX runtime, no torch). The model is downloaded once into
the cache dir and then runs fully offline. Model loading and inference run in
worker threads so the event loop keeps serving events while a batch embeds.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Protocol

import numpy as np

log = logging.getLogger(__name__)


class EmbeddingModel(Protocol):
    """The part of ``fastembed.TextEmbedding`` we rely on."""

    def embed(self, documents: list[str], batch_size: int = ...) -> Iterable[Any]: ...


def load_fastembed(model_id: str, cache_dir: str | Path | None = None) -> EmbeddingModel:
    """Instantiate a fastembed model (downloads it on first use)."""
    from fastembed import TextEmbedding

    if cache_dir is not None:
        Path(cache_dir).mkdir(parents=True, exist_ok=True)
        os.environ.setdefault("FASTEMBED_CACHE_PATH", str(cache_dir))
        return TextEmbedding(model_name=model_id, cache_dir=str(cache_dir))
    return TextEmbedding(model_name=model_id)


def l2_normalize(vec: Any) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm > 0:
        arr = arr / norm
    return arr.astype(np.float32)


class Embedder:
    """Turns text into fixed-length, L2-normalized vectors.

    Safe to call concurrently: the first callers share one model load.
    """

    def __init__(
        self,
        model_id: str = "sentence-transformers/all-MiniLM-L6-v2",
        *,
        batch_size: int = 32,
        cache_dir: str | Path | None = None,
        model_factory: Callable[[], EmbeddingModel] | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.model_id = model_id
        self.batch_size = batch_size
        self.cache_dir = cache_dir
        self._factory = model_factory or (lambda: load_fastembed(model_id, cache_dir))
        self._model: EmbeddingModel | None = None
        self._dimension: int | None = None
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._model is not None

    @property
    def dimension(self) -> int | None:
        """Vector length, known once the model has been loaded."""
        return self._dimension

    async def initialize(self) -> None:
        """Load the model once. Concurrent callers wait on the same load."""
        if self._model is not None:
            return
        async with self._init_lock:
            if self._model is not None:
                return
            log.info("Loading embedding model: %s", self.model_id)
            model = await asyncio.to_thread(self._factory)
            probe = await asyncio.to_thread(self._run, model, ["dimension probe"])
            self._dimension = len(probe[0])
            self._model = model
            log.info("Embedding model loaded (dim=%d)", self._dimension)

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text (typically a query)."""
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in fixed-size sub-batches, preserving order."""
        if not texts:
            return []
        await self.initialize()
        model = self._model

        vectors: list[list[float]] = []
        total_batches = -(-len(texts) // self.batch_size)  # ceil division
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            if total_batches > 1:
                log.debug(
                    "Embedding batch %d/%d (%d texts)",
                    i // self.batch_size + 1, total_batches, len(batch),
                )
            out = await asyncio.to_thread(self._run, model, batch)
            if len(out) != len(batch):
                raise RuntimeError(
                    f"Embedding model returned {len(out)} vectors for {len(batch)} texts"
                )
            vectors.extend(out)
        return vectors

    def _run(self, model: EmbeddingModel, batch: list[str]) -> list[list[float]]:
        raw = model.embed(batch, batch_size=self.batch_size)
        return [l2_normalize(v).tolist() for v in raw]
