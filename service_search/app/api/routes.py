"""API routes for search service."""

import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from libs.common.models import SearchFilters

from ..hybrid.search_manager import HybridSearchManager
from ..models import SearchOptions

logger = structlog.get_logger("search_service.api")

router = APIRouter()


class SearchFiltersModel(BaseModel):
    """Post-filter constraints."""
    document_ids: Optional[List[int]] = Field(None, description="Restrict to these documents")
    tag_ids: Optional[List[int]] = Field(None, description="Restrict to fragments carrying any of these tags")
    date_from: Optional[datetime] = Field(None, description="Earliest fragment creation time")
    date_to: Optional[datetime] = Field(None, description="Latest fragment creation time")
    model: Optional[str] = Field(None, description="Embedding model name")

    def to_filters(self) -> SearchFilters:
        return SearchFilters.create(
            document_ids=self.document_ids,
            tag_ids=self.tag_ids,
            date_from=self.date_from,
            date_to=self.date_to,
            model=self.model,
        )


class SearchRequest(BaseModel):
    """Request model for search endpoint."""
    query: str = Field(..., description="Search query")
    mode: str = Field("hybrid", description="hybrid, vector or fulltext")
    limit: Optional[int] = Field(None, description="Maximum number of results (clamped to [1, 100])")
    alpha: Optional[float] = Field(None, description="Vector weight in [0, 1]")
    rrf_k: Optional[int] = Field(None, description="Reciprocal Rank Fusion constant")
    fusion_method: Optional[str] = Field(None, description="rrf or weighted")
    language: Optional[str] = Field(None, description="Query language; detected when omitted")
    filters: Optional[SearchFiltersModel] = Field(None, description="Search filters")
    tags: List[int] = Field(default_factory=list, description="Tags whose fragments are boosted")
    tag_boost_weight: Optional[float] = Field(None, description="Weight of the tag boost")
    threshold: Optional[float] = Field(None, description="Minimum vector similarity")
    rerank: bool = Field(True, description="Apply the token-overlap rerank")
    include_content: bool = Field(True, description="Attach fragment content")
    include_metadata: bool = Field(False, description="Attach fragment metadata")
    include_explanations: bool = Field(False, description="Attach the score breakdown")
    query_embedding: Optional[List[float]] = Field(None, description="Precomputed query embedding")

    def to_options(self) -> SearchOptions:
        filters = self.filters.to_filters() if self.filters is not None else SearchFilters()
        return SearchOptions(
            mode=self.mode,
            limit=self.limit,
            alpha=self.alpha,
            rrf_k=self.rrf_k,
            fusion_method=self.fusion_method,
            language=self.language,
            filters=filters,
            tags=list(self.tags),
            tag_boost_weight=self.tag_boost_weight,
            threshold=self.threshold,
            rerank=self.rerank,
            include_content=self.include_content,
            include_metadata=self.include_metadata,
            include_explanations=self.include_explanations,
        )


class SearchResponse(BaseModel):
    """Response model for search endpoint."""
    query: str = Field(..., description="Normalized query")
    results: List[Dict[str, Any]] = Field(..., description="Ranked results")
    metadata: Dict[str, Any] = Field(..., description="Search metadata")


class MultilingualSearchRequest(BaseModel):
    """Request model for the multilingual full-text endpoint."""
    query: str = Field(..., description="Search query")
    languages: List[str] = Field(..., description="Languages to search, such as en and zh")
    limit: Optional[int] = Field(None, description="Maximum number of results (clamped to [1, 100])")
    filters: Optional[SearchFiltersModel] = Field(None, description="Search filters")


class IndexRequest(BaseModel):
    """Request model for index endpoint."""
    fragment_id: int = Field(..., description="Fragment ID")
    body: str = Field(..., description="Fragment text")
    title: Optional[str] = Field(None, description="Fragment title")
    language: Optional[str] = Field(None, description="Fragment language; detected when omitted")
    document_id: Optional[int] = Field(None, description="Owning document; looked up when omitted")


class IndexResponse(BaseModel):
    """Response model for index endpoint."""
    status: str = Field(..., description="Indexing status")
    fragment_id: int = Field(..., description="Fragment ID")


def get_search_manager(request: Request) -> HybridSearchManager:
    """Get search manager from application state."""
    return request.app.state.search_manager


@router.post("/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Hybrid, vector-only or full-text-only search."""
    result = await search_manager.search(
        request.query,
        request.to_options(),
        query_embedding=request.query_embedding,
    )
    logger.info(
        "Search completed",
        query=result.query,
        mode=request.mode,
        results_count=len(result.results),
        latency_ms=result.metadata.get("execution_time_ms")
    )
    return result.to_dict()


@router.post("/index", response_model=IndexResponse)
async def index_fragment(
    request: IndexRequest,
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Create or replace the full-text index entry of a fragment."""
    await search_manager.fulltext.index(
        request.fragment_id,
        request.title,
        request.body,
        language=request.language,
        document_id=request.document_id,
    )
    logger.info("Fragment indexed", fragment_id=request.fragment_id)
    return IndexResponse(status="success", fragment_id=request.fragment_id)


@router.delete("/index/{fragment_id}")
async def remove_fragment(
    fragment_id: int,
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Remove a fragment from the full-text index."""
    removed = await search_manager.fulltext.remove(fragment_id)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Fragment {fragment_id} is not indexed")

    logger.info("Fragment removed from index", fragment_id=fragment_id)
    return {"status": "success", "fragment_id": fragment_id}


@router.post("/index/cleanup")
async def cleanup_index(
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Drop index entries whose fragment no longer exists."""
    removed = await search_manager.fulltext.cleanup_orphaned()
    return {"status": "success", "removed": removed}


@router.get("/index/stats")
async def get_index_stats(
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Get full-text index statistics."""
    stats = await search_manager.fulltext.stats()
    return stats.to_dict()


@router.post("/search/multilingual")
async def multilingual_search(
    request: MultilingualSearchRequest,
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Full-text search across several languages, merged by fragment."""
    start_time = time.time()
    query = search_manager.validate_query(request.query)
    hits = await search_manager.fulltext.multilingual_search(
        query,
        request.languages,
        limit=search_manager.clamp_limit(request.limit),
        filters=request.filters.to_filters() if request.filters is not None else None,
    )
    execution_time_ms = int(round((time.time() - start_time) * 1000))
    logger.info(
        "Multilingual search completed",
        query=query,
        languages=request.languages,
        results_count=len(hits),
        latency_ms=execution_time_ms
    )
    return {
        "query": query,
        "languages": request.languages,
        "results": [asdict(hit) for hit in hits],
        "metadata": {
            "total_count": len(hits),
            "execution_time_ms": execution_time_ms,
            "multilingual": True,
        },
    }


@router.get("/search/suggestions")
async def get_suggestions(
    prefix: str = Query(..., description="Text typed so far"),
    language: Optional[str] = Query(None, description="Restrict to entries indexed in this language"),
    limit: int = Query(10, ge=1, le=100, description="Maximum number of suggestions"),
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Autocomplete the last word of ``prefix`` from indexed content."""
    suggestions = await search_manager.fulltext.suggestions(prefix, language=language, limit=limit)
    return {"prefix": prefix, "suggestions": suggestions}


@router.get("/search/statistics")
async def get_search_statistics(
    search_manager: HybridSearchManager = Depends(get_search_manager)
):
    """Index language distribution plus popular queries and latency over the last day."""
    return await search_manager.statistics()
