"""Shared fixtures: an in-memory corpus, fake embedder, failing stores."""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import pytest
import pytest_asyncio

from libs.common.config import SearchConfig
from libs.common.errors import EmbeddingError
from libs.common.metrics import MetricsCollector
from libs.common.models import Fragment
from libs.lexical_store.memory import InMemoryLexicalStore
from libs.vector_store.memory import InMemoryVectorStore
from service_search.app.adapters.embedding_client import EmbeddingProvider
from service_search.app.bootstrap import SearchStores, create_search_manager, create_stores
from service_search.app.retrievers.fulltext import FulltextSearchEngine
from service_search.app.runtime.search_log import SearchLogSink


CORPUS = [
    Fragment(
        id=1, document_id=10, title="Deep learning basics",
        content="Advances in deep learning for neural networks",
        language="en", created_at=datetime(2024, 1, 10),
    ),
    Fragment(
        id=2, document_id=20, title="Neural survey",
        content="A survey of neural architectures",
        language="en", created_at=datetime(2024, 3, 5),
    ),
    Fragment(
        id=3, document_id=10, title="Deep learning appendix",
        content="More deep learning notes",
        language="en", position=1, created_at=datetime(2024, 1, 11),
    ),
    Fragment(
        id=4, document_id=30, title="机器学习",
        content="机器学习是人工智能的一个分支",
        language="zh", created_at=datetime(2024, 6, 1),
    ),
    Fragment(
        id=5, document_id=40, title="Pasta",
        content="Cooking pasta at home",
        language="en", created_at=datetime(2023, 12, 24),
    ),
]

VECTORS: Dict[int, List[float]] = {
    1: [1.0, 0.0, 0.0],
    2: [1.0, 0.0, 0.0],
    3: [0.9, 0.1, 0.0],
    4: [0.0, 1.0, 0.0],
    5: [0.0, 0.0, 1.0],
}


class FakeEmbedder(EmbeddingProvider):
    """Returns canned vectors; records every call."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Sequence[float] = (1.0, 0.0, 0.0)):
        self.vectors = vectors or {}
        self.default = list(default)
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))


class FailingEmbedder(EmbeddingProvider):

    async def embed(self, text: str) -> List[float]:
        raise EmbeddingError("embedding service unavailable")


class FailingLexicalStore(InMemoryLexicalStore):

    async def query(self, structured_query, tokenizer, k, filters=None, highlight=True):
        raise ConnectionError("lexical database is down")


class SlowLexicalStore(InMemoryLexicalStore):

    async def query(self, structured_query, tokenizer, k, filters=None, highlight=True):
        await asyncio.sleep(5)
        return []


class FailingVectorStore(InMemoryVectorStore):

    async def nearest(self, vector, k, min_score=None):
        raise ConnectionError("vector database is down")


class RecordingSink(SearchLogSink):

    def __init__(self):
        self.entries: List[Dict] = []

    async def record(self, query, mode, count, latency_ms, error=None, filters=None):
        self.entries.append({
            "query": query,
            "mode": mode,
            "count": count,
            "latency_ms": latency_ms,
            "error": error,
            "filters": filters,
        })


class FailingSink(SearchLogSink):

    def __init__(self):
        self.attempts = 0

    async def record(self, query, mode, count, latency_ms, error=None, filters=None):
        self.attempts += 1
        raise RuntimeError("search_logs table is missing")


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def populate(stores: SearchStores) -> None:
    """Load the corpus into in-memory stores."""
    stores.tags.add_tag(1, "ai")
    stores.tags.add_tag(2, "architecture", parent_id=1)
    stores.tags.add_tag(3, "cooking")
    stores.tags.assign(1, 1)
    stores.tags.assign(2, 2)
    stores.tags.assign(5, 3)

    for fragment in CORPUS:
        stores.fragments.add(fragment)
        await stores.vector.upsert(fragment.id, VECTORS[fragment.id], model="test-model")

    engine = FulltextSearchEngine(stores.lexical, stores.fragments)
    await engine.batch_index(CORPUS)


@pytest.fixture
def config() -> SearchConfig:
    return SearchConfig(
        kb_store_backend="memory",
        kb_vector_dimension=3,
        kb_search_source_timeout=1.0,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector("test-search")


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def stores(config, sink) -> SearchStores:
    stores = create_stores(config)
    stores.search_log = sink
    await populate(stores)
    return stores


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def manager(config, stores, embedder, metrics):
    return create_search_manager(config, stores, embedder=embedder, metrics=metrics)
