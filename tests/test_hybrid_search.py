"""Tests for the hybrid search manager."""

import asyncio
from dataclasses import replace

import pytest

from libs.common.errors import TotalFailureError, ValidationError
from service_search.app.bootstrap import create_search_manager
from service_search.app.models import SearchOptions
from service_search.app.runtime.search_log import InMemorySearchLogSink

from .conftest import FailingEmbedder, FailingLexicalStore, FailingSink, FakeEmbedder, SlowLexicalStore


@pytest.mark.asyncio
async def test_phrase_and_term_match_ranks_first(manager):
    result = await manager.search(
        '"deep learning" AND neural', query_embedding=[1.0, 0.0, 0.0]
    )
    ids = [r.fragment_id for r in result.results]

    assert ids[0] == 1
    assert 2 in ids
    assert result.results[0].combined_score > result.results[ids.index(2)].combined_score
    assert result.metadata["language"] == "en"
    assert result.metadata["relaxed"] is False
    assert result.metadata["errors"] == {}
    assert "error" not in result.metadata


@pytest.mark.asyncio
async def test_results_are_deduplicated_by_document(manager):
    result = await manager.search("deep learning", query_embedding=[1.0, 0.0, 0.0])
    documents = [r.document_id for r in result.results]
    assert len(documents) == len(set(documents))
    assert 3 not in [r.fragment_id for r in result.results]


@pytest.mark.asyncio
async def test_short_chinese_query_caps_alpha(manager):
    result = await manager.search("学习", SearchOptions(alpha=0.95))
    assert result.metadata["language"] == "zh"
    assert result.metadata["alpha"] <= 0.3
    assert result.results[0].fragment_id == 4


@pytest.mark.asyncio
async def test_alpha_is_clamped(manager):
    result = await manager.search("neural networks", SearchOptions(alpha=3.0))
    assert result.metadata["alpha"] == 1.0
    result = await manager.search("neural networks", SearchOptions(alpha=-1.0))
    assert result.metadata["alpha"] == 0.0


@pytest.mark.asyncio
async def test_query_is_embedded_when_no_embedding_given(manager, embedder):
    await manager.search("neural networks")
    assert embedder.calls == ["neural networks"]


@pytest.mark.asyncio
async def test_limit_and_recall_window(manager):
    result = await manager.search("neural", SearchOptions(limit=1))
    assert len(result.results) == 1
    assert result.metadata["recall_limit"] == 64

    result = await manager.search("neural", SearchOptions(limit=0))
    assert len(result.results) == 1

    result = await manager.search("neural", SearchOptions(limit=1000))
    assert result.metadata["recall_limit"] == 128


@pytest.mark.asyncio
async def test_metadata_shape(manager):
    result = await manager.search("neural", query_embedding=[1.0, 0.0, 0.0])
    metadata = result.metadata

    assert metadata["total_count"] == len(result.results)
    assert metadata["fusion_method"] == "rrf"
    assert metadata["rrf_k"] == 60
    assert metadata["alpha"] == pytest.approx(0.95)
    assert metadata["lexical_result_count"] == 2
    assert metadata["vector_result_count"] == 3
    assert set(metadata["score_stats"]) == {"min", "max", "avg"}
    assert metadata["execution_time_ms"] >= 0


@pytest.mark.asyncio
async def test_include_metadata_and_explanations(manager):
    result = await manager.search(
        "neural",
        SearchOptions(include_metadata=True, include_explanations=True),
        query_embedding=[1.0, 0.0, 0.0],
    )
    top = result.results[0]

    assert top.fragment_id == 2
    assert top.metadata["tags"] == ["architecture"]
    assert top.metadata["language"] == "en"
    assert top.metadata["document_id"] == 20
    assert top.explanation["fusion_method"] == "rrf"
    assert top.explanation["lexical_rank"] == 1
    assert top.explanation["vector_rank"] == 2
    assert top.explanation["rerank"]["token_score"] == pytest.approx(3.0)
    assert top.content == "A survey of neural architectures"

    data = result.to_dict()
    assert "explanation" in data["results"][0]


@pytest.mark.asyncio
async def test_content_can_be_omitted(manager):
    result = await manager.search("neural", SearchOptions(include_content=False))
    assert all(r.content is None for r in result.results)
    assert "content" not in result.to_dict()["results"][0]


@pytest.mark.asyncio
async def test_rerank_disabled_keeps_fusion_score(manager):
    result = await manager.search("neural", SearchOptions(rerank=False), query_embedding=[1.0, 0.0, 0.0])
    assert result.results
    for r in result.results:
        assert r.combined_score == r.fusion_score
    scores = [r.fusion_score for r in result.results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_weighted_fusion_method(manager):
    result = await manager.search("neural", SearchOptions(fusion_method="weighted"))
    assert result.metadata["fusion_method"] == "weighted"
    assert result.results


@pytest.mark.asyncio
async def test_vector_mode(manager):
    manager.embedder = FakeEmbedder({"home cooking": [0.0, 0.0, 1.0]})
    result = await manager.search("home cooking", SearchOptions(mode="vector"))

    assert [r.fragment_id for r in result.results] == [5]
    assert result.metadata["lexical_result_count"] == 0
    assert result.metadata["mode"] == "vector"


@pytest.mark.asyncio
async def test_fulltext_mode_does_not_embed(manager, embedder):
    result = await manager.search("neural", SearchOptions(mode="fulltext"))

    assert embedder.calls == []
    assert [r.fragment_id for r in result.results] == [2, 1]
    assert result.metadata["vector_result_count"] == 0


@pytest.mark.asyncio
async def test_hybrid_search_overrides_mode(manager, embedder):
    result = await manager.hybrid_search("neural", SearchOptions(mode="fulltext"))
    assert result.metadata["mode"] == "hybrid"
    assert embedder.calls == ["neural"]


@pytest.mark.asyncio
async def test_tags_boost_vector_hits(manager):
    result = await manager.search("pasta", SearchOptions(tags=[3]), query_embedding=[0.0, 0.0, 1.0])
    assert result.results[0].fragment_id == 5
    assert result.results[0].tag_boost == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_filters_apply_to_both_sources(manager):
    from libs.common.models import SearchFilters

    result = await manager.search(
        "neural",
        SearchOptions(filters=SearchFilters.create(document_ids=[20])),
        query_embedding=[1.0, 0.0, 0.0],
    )
    assert [r.fragment_id for r in result.results] == [2]


@pytest.mark.asyncio
async def test_relaxed_retry_when_nothing_matches(manager, metrics):
    result = await manager.search('"neural nets" AND vision', SearchOptions(mode="fulltext"))

    assert result.metadata["relaxed"] is True
    assert [r.fragment_id for r in result.results] == [2, 1]
    assert metrics.registry.get_sample_value("kb_search_relaxed_queries_total") == 1.0


@pytest.mark.parametrize("query", [None, "", "   ", "a", "x" * 1001])
@pytest.mark.asyncio
async def test_invalid_queries_raise_validation_error(manager, query):
    with pytest.raises(ValidationError):
        await manager.search(query)


@pytest.mark.parametrize("options", [
    SearchOptions(mode="semantic"),
    SearchOptions(alpha=float("nan")),
    SearchOptions(fusion_method="borda"),
    SearchOptions(rrf_k=-1),
    SearchOptions(tag_boost_weight=-0.5),
])
@pytest.mark.asyncio
async def test_invalid_options_raise_validation_error(manager, options):
    with pytest.raises(ValidationError):
        await manager.search("neural", options)


@pytest.mark.asyncio
async def test_malformed_embedding_raises_validation_error(manager):
    with pytest.raises(ValidationError):
        await manager.search("neural", query_embedding=[1.0, 0.0])


@pytest.mark.asyncio
async def test_single_source_failure_degrades(config, stores, embedder, metrics):
    manager = create_search_manager(
        config, replace(stores, lexical=FailingLexicalStore()), embedder=embedder, metrics=metrics
    )
    result = await manager.search("neural", query_embedding=[1.0, 0.0, 0.0])

    assert [r.fragment_id for r in result.results]
    assert set(result.metadata["errors"]) == {"fulltext"}
    assert result.metadata["error"].startswith("fulltext:")
    assert result.metadata["lexical_result_count"] == 0
    assert metrics.registry.get_sample_value(
        "kb_search_degraded_sources_total", {"source": "fulltext", "error_type": "SearchBackendError"}
    ) == 1.0
    assert metrics.registry.get_sample_value(
        "kb_search_requests_total", {"mode": "hybrid", "status": "degraded"}
    ) == 1.0


@pytest.mark.asyncio
async def test_embedding_failure_degrades_to_lexical_only(config, stores, metrics):
    manager = create_search_manager(config, stores, embedder=FailingEmbedder(), metrics=metrics)
    result = await manager.search("neural")

    assert [r.fragment_id for r in result.results] == [2, 1]
    assert set(result.metadata["errors"]) == {"vector"}


@pytest.mark.asyncio
async def test_source_timeout_degrades(config, stores, embedder):
    config = config.model_copy(update={"kb_search_source_timeout": 0.05})
    manager = create_search_manager(config, replace(stores, lexical=SlowLexicalStore()), embedder=embedder)
    result = await manager.search("neural", query_embedding=[1.0, 0.0, 0.0])

    assert "timed out" in result.metadata["errors"]["fulltext"]
    assert result.results


@pytest.mark.asyncio
async def test_all_sources_failing_raises_total_failure(config, stores, metrics, sink):
    manager = create_search_manager(
        config, replace(stores, lexical=FailingLexicalStore()), embedder=FailingEmbedder(), metrics=metrics
    )
    with pytest.raises(TotalFailureError) as exc_info:
        await manager.search("neural")

    assert set(exc_info.value.errors) == {"fulltext", "vector"}
    assert metrics.registry.get_sample_value(
        "kb_search_requests_total", {"mode": "hybrid", "status": "TotalFailureError"}
    ) == 1.0

    await manager.search_log.drain()
    assert sink.entries[-1]["error"] == "All search sources failed"
    assert sink.entries[-1]["count"] == 0


@pytest.mark.asyncio
async def test_single_mode_failure_raises_total_failure(config, stores):
    manager = create_search_manager(config, stores, embedder=FailingEmbedder())
    with pytest.raises(TotalFailureError):
        await manager.search("neural", SearchOptions(mode="vector"))


@pytest.mark.asyncio
async def test_every_request_is_logged(manager, sink):
    result = await manager.search("neural", SearchOptions(mode="fulltext"))
    with pytest.raises(ValidationError):
        await manager.search("")
    await manager.search_log.drain()

    assert len(sink.entries) == 2
    success, failure = sink.entries
    assert success["query"] == "neural"
    assert success["mode"] == "fulltext"
    assert success["count"] == len(result.results)
    assert success["error"] is None
    assert failure["error"] == "Query cannot be empty"


@pytest.mark.asyncio
async def test_search_log_records_filters(manager, sink):
    from libs.common.models import SearchFilters

    await manager.search(
        "neural", SearchOptions(filters=SearchFilters.create(document_ids=[20, 10]))
    )
    await manager.search_log.drain()
    assert sink.entries[-1]["filters"] == {"document_ids": [10, 20]}


@pytest.mark.asyncio
async def test_search_log_failure_never_fails_search(config, stores, embedder):
    failing = FailingSink()
    manager = create_search_manager(config, replace(stores, search_log=failing), embedder=embedder)

    result = await manager.search("neural")
    await manager.search_log.drain()

    assert result.results
    assert failing.attempts == 1


@pytest.mark.asyncio
async def test_health_check(manager):
    assert await manager.health_check() == {
        "vector": True,
        "fulltext": True,
        "tags": True,
        "fragments": True,
    }


@pytest.mark.asyncio
async def test_deadline_shorter_than_source_timeout_degrades(config, stores, embedder):
    manager = create_search_manager(config, replace(stores, lexical=SlowLexicalStore()), embedder=embedder)
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await manager.search("neural", query_embedding=[1.0, 0.0, 0.0], deadline=started + 0.05)

    assert loop.time() - started < 0.9
    assert "timed out" in result.metadata["errors"]["fulltext"]
    assert result.metadata["vector_result_count"] > 0
    assert result.results


@pytest.mark.asyncio
async def test_relaxed_retry_lowers_vector_threshold(config, stores, embedder):
    config = config.model_copy(update={"kb_search_fallback_to_nearest": False})
    manager = create_search_manager(config, stores, embedder=embedder)

    # cosine 0.08 against fragments 1 and 2: below both thresholds, above the relaxed one
    result = await manager.search(
        "neural", SearchOptions(mode="vector"), query_embedding=[0.08, 0.0, -0.9968]
    )

    assert result.metadata["relaxed"] is True
    assert {r.fragment_id for r in result.results} == {1, 2}
    assert all(0.05 <= r.vector_score < 0.1 for r in result.results)


@pytest.mark.parametrize("options", [
    SearchOptions(limit="many"),
    SearchOptions(alpha="x"),
    SearchOptions(rrf_k="sixty"),
    SearchOptions(tag_boost_weight=[1]),
    SearchOptions(threshold="high"),
])
@pytest.mark.asyncio
async def test_non_numeric_options_raise_validation_error(manager, sink, options):
    with pytest.raises(ValidationError):
        await manager.search("neural", options)

    await manager.search_log.drain()
    assert sink.entries[-1]["count"] == 0
    assert "must be a number" in sink.entries[-1]["error"]


@pytest.mark.asyncio
async def test_rerank_ignores_boolean_operators(manager):
    result = await manager.search(
        "neural AND survey", SearchOptions(mode="fulltext", include_explanations=True)
    )
    top = result.results[0]

    assert top.fragment_id == 2
    # "neural" and "survey" each appear once in the body and twice-weighted in the title
    assert top.explanation["rerank"]["token_score"] == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_rerank_ignores_negated_terms(manager):
    plain = await manager.search("neural", SearchOptions(mode="fulltext", include_explanations=True))
    negated = await manager.search(
        "neural NOT pasta", SearchOptions(mode="fulltext", include_explanations=True)
    )

    assert [r.fragment_id for r in negated.results] == [r.fragment_id for r in plain.results]
    assert [r.explanation["rerank"]["token_score"] for r in negated.results] == pytest.approx(
        [r.explanation["rerank"]["token_score"] for r in plain.results]
    )


@pytest.mark.asyncio
async def test_statistics_without_query_analytics(manager):
    stats = await manager.statistics()

    assert stats["total_indexed"] == 5
    assert stats["language_distribution"] == {"en": 4, "zh": 1}
    assert stats["search_performance"] is None
    assert stats["popular_queries"] == []


@pytest.mark.asyncio
async def test_statistics_include_query_analytics(config, stores, embedder):
    manager = create_search_manager(config, replace(stores, search_log=InMemorySearchLogSink()), embedder=embedder)
    await manager.search("neural", SearchOptions(mode="fulltext"))
    await manager.search("neural", SearchOptions(mode="fulltext"))
    await manager.search("pasta")

    stats = await manager.statistics()

    assert stats["popular_queries"][0] == {"query": "neural", "count": 2}
    assert stats["search_performance"]["total_searches"] == 3
    assert stats["search_performance"]["searches_by_mode"] == {"fulltext": 2, "hybrid": 1}
