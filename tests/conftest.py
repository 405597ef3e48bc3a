"""Shared test fixtures."""

from __future__ import annotations

import re
import zlib
from pathlib import Path

import numpy as np
import pytest

# Ensure tests run from the project root so config.default.yaml is found
PROJECT_ROOT = Path(__file__).parent.parent

FAKE_DIM = 16


@pytest.fixture(autouse=True)
def _set_project_root(monkeypatch, tmp_path):
    """Point LOCALDEX_ROOT at the project root and use tmp_path for data."""
    monkeypatch.setenv("LOCALDEX_ROOT", str(PROJECT_ROOT))
    monkeypatch.setenv("LOCALDEX_STORE__PATH", str(tmp_path / "localdex.db"))
    monkeypatch.setenv("LOCALDEX_EMBEDDING__CACHE_DIR", str(tmp_path / "models"))
    monkeypatch.setenv("LOCALDEX_WATCHER__WATCH_DIR", str(tmp_path / "kb"))

    # Reset settings cache between tests
    from localdex.config import reset_settings
    reset_settings()


class FakeEmbeddingModel:
    """Deterministic bag-of-words hashing model standing in for fastembed."""

    def __init__(self, dim: int = FAKE_DIM):
        self.dim = dim
        self.calls: list[list[str]] = []

    def embed(self, documents, batch_size=32):
        self.calls.append(list(documents))
        for text in documents:
            vec = np.zeros(self.dim, dtype=np.float32)
            for word in re.findall(r"\w+", text.lower()):
                vec[zlib.crc32(word.encode()) % self.dim] += 1.0
            if not vec.any():
                vec[0] = 1.0
            yield vec


@pytest.fixture
def fake_model():
    return FakeEmbeddingModel()


@pytest.fixture
def embedder(fake_model):
    from localdex.embeddings import Embedder

    return Embedder("fake-model", batch_size=4, model_factory=lambda: fake_model)


@pytest.fixture
def store(tmp_path):
    from localdex.stores.docstore import DocStore

    db = DocStore(str(tmp_path / "test.db"))
    yield db
    db.close()


@pytest.fixture
def chunker():
    from localdex.ingest.chunker import Chunker

    return Chunker(chunk_size=200, chunk_overlap=20)


@pytest.fixture
def pipeline(store, embedder, chunker):
    from localdex.ingest.pipeline import IngestPipeline

    return IngestPipeline(store, embedder, chunker, batch_size=10)
