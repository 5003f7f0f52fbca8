"""Component wiring for the search service.

Centralizes creation of the concrete store backends, engines and the
embedding client so the API layer does not depend on implementation details.
``kb_store_backend`` selects between the in-memory adapters (local
development, tests) and the PostgreSQL adapters sharing one asyncpg pool.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from libs.common.config import SearchConfig
from libs.common.db import PostgresPool
from libs.common.metrics import MetricsCollector
from libs.fragment_store.base import FragmentRepository
from libs.fragment_store.memory import InMemoryFragmentRepository
from libs.fragment_store.postgres import PostgresFragmentRepository
from libs.lexical_store.base import LexicalStore
from libs.lexical_store.memory import InMemoryLexicalStore
from libs.lexical_store.postgres import PostgresLexicalStore
from libs.tag_store.base import TagStore
from libs.tag_store.memory import InMemoryTagStore
from libs.tag_store.postgres import PostgresTagStore
from libs.vector_store.base import VectorStore
from libs.vector_store.memory import InMemoryVectorStore
from libs.vector_store.pgvector import PgVectorStore

from .adapters.circuit_breaker import CircuitBreaker
from .adapters.embedding_client import (
    RETRYABLE_EXCEPTIONS,
    EmbeddingProvider,
    HttpEmbeddingProvider,
    RetryingEmbeddingProvider,
)
from .adapters.retry_handler import RetryConfig
from .hybrid.search_manager import HybridSearchManager
from .intelligence.query_parser import QueryParser
from .retrievers.fulltext import FulltextSearchEngine
from .retrievers.vector import VectorSearchEngine
from .runtime.search_log import (
    InMemorySearchLogSink,
    PostgresSearchLogSink,
    SearchLogRecorder,
    SearchLogSink,
)

logger = structlog.get_logger("search_service.bootstrap")


class StoreBackend(Enum):
    """Supported storage backends."""
    MEMORY = "memory"
    POSTGRES = "postgres"


@dataclass
class SearchStores:
    vector: VectorStore
    lexical: LexicalStore
    tags: TagStore
    fragments: FragmentRepository
    search_log: SearchLogSink
    pool: Optional[PostgresPool] = None

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()


def create_stores(config: SearchConfig) -> SearchStores:
    """Create the store adapters selected by ``kb_store_backend``."""
    try:
        backend = StoreBackend(config.kb_store_backend.lower())
    except ValueError:
        raise ValueError(f"Unsupported store backend: {config.kb_store_backend}")

    if backend == StoreBackend.POSTGRES:
        if not config.kb_db_dsn:
            raise ValueError("The postgres backend requires KB_DB_DSN")
        pool = PostgresPool(
            dsn=config.kb_db_dsn,
            pool_size=config.kb_db_pool_size,
            command_timeout=config.kb_db_command_timeout,
        )
        return SearchStores(
            vector=PgVectorStore(pool, vector_dimension=config.kb_vector_dimension),
            lexical=PostgresLexicalStore(pool),
            tags=PostgresTagStore(pool),
            fragments=PostgresFragmentRepository(pool),
            search_log=PostgresSearchLogSink(pool),
            pool=pool,
        )

    tags = InMemoryTagStore()
    fragments = InMemoryFragmentRepository()
    return SearchStores(
        vector=InMemoryVectorStore(vector_dimension=config.kb_vector_dimension),
        lexical=InMemoryLexicalStore(fragments=fragments, tags=tags),
        tags=tags,
        fragments=fragments,
        search_log=InMemorySearchLogSink(),
    )


def create_embedder(config: SearchConfig, metrics: Optional[MetricsCollector] = None) -> EmbeddingProvider:
    """HTTP embedding client wrapped with retries and a circuit breaker.

    The per-attempt timeout is shrunk when needed so every retry fits inside
    the per-source search timeout.
    """
    attempt_timeout = config.embedding_attempt_timeout()
    if attempt_timeout < config.kb_embedding_timeout:
        logger.warning(
            "Embedding timeout shortened to fit retries in the source timeout",
            configured_timeout=config.kb_embedding_timeout,
            attempt_timeout=attempt_timeout,
            source_timeout=config.kb_search_source_timeout,
            max_attempts=config.kb_embedding_retry_attempts
        )
    circuit_breaker = CircuitBreaker(
        failure_threshold=config.kb_embedding_circuit_failure_threshold,
        recovery_timeout=config.kb_embedding_circuit_recovery_timeout,
        expected_exception=RETRYABLE_EXCEPTIONS,
        name="embedding_service",
    )
    return RetryingEmbeddingProvider(
        HttpEmbeddingProvider(
            config.kb_embedding_service_url,
            model=config.kb_embedding_model,
            timeout=attempt_timeout,
        ),
        retry_config=RetryConfig.from_config(config),
        attempt_timeout=attempt_timeout,
        circuit_breaker=circuit_breaker,
        metrics=metrics,
    )


def create_search_manager(
    config: SearchConfig,
    stores: SearchStores,
    embedder: Optional[EmbeddingProvider] = None,
    metrics: Optional[MetricsCollector] = None
) -> HybridSearchManager:
    parser = QueryParser()
    fulltext = FulltextSearchEngine(
        stores.lexical,
        stores.fragments,
        parser=parser,
        max_results=max(config.kb_search_max_limit, config.kb_search_rerank_limit) * 4,
    )
    vector = VectorSearchEngine(
        stores.vector,
        stores.fragments,
        stores.tags,
        vector_dimension=config.kb_vector_dimension,
        filter_overfetch=config.kb_search_filter_overfetch,
    )

    logger.info(
        "Search components created",
        store_backend=config.kb_store_backend,
        embedding_service=config.kb_embedding_service_url if embedder else None
    )
    return HybridSearchManager(
        config,
        fulltext=fulltext,
        vector=vector,
        tags=stores.tags,
        fragments=stores.fragments,
        embedder=embedder,
        parser=parser,
        search_log=SearchLogRecorder(stores.search_log),
        metrics=metrics,
    )
