"""Tests for rank fusion and the token-overlap rerank."""

import pytest

from libs.common.models import RawLexicalHit, RawVectorHit
from service_search.app.models import FusedResult
from service_search.app.ranking.fusion import (
    ReciprocalRankFusion,
    WeightedScoreFusion,
    create_fusion_algorithm,
    deduplicate_by_document,
    min_max_normalize,
)
from service_search.app.ranking.rerank import TokenOverlapReranker, rerank_tokens, weighted_query_tokens


def vhit(fragment_id, document_id=None, similarity=0.9, tag_boost=0.0):
    return RawVectorHit(
        fragment_id=fragment_id,
        document_id=document_id if document_id is not None else fragment_id,
        similarity=similarity,
        score=similarity + tag_boost,
        tag_boost=tag_boost,
    )


def lhit(fragment_id, document_id=None, score=1.0):
    return RawLexicalHit(
        fragment_id=fragment_id,
        document_id=document_id if document_id is not None else fragment_id,
        score=score,
        language="en",
    )


@pytest.mark.parametrize("alpha", [0.0, 0.3, 0.5, 0.95, 1.0])
def test_rrf_formula(alpha):
    fusion = ReciprocalRankFusion(k=60)
    fused = fusion.fuse_results([vhit(1), vhit(2)], [lhit(2), lhit(1)], alpha)
    scores = {r.fragment_id: r.fusion_score for r in fused}

    assert scores[1] == pytest.approx(alpha / (60 + 1) + (1 - alpha) / (60 + 2), rel=1e-12)
    assert scores[2] == pytest.approx(alpha / (60 + 2) + (1 - alpha) / (60 + 1), rel=1e-12)


def test_rrf_missing_list_contributes_nothing():
    fused = ReciprocalRankFusion(k=60).fuse_results([vhit(1)], [lhit(2)], 0.5)
    by_id = {r.fragment_id: r for r in fused}
    assert by_id[1].contributions == {"text": 0.0, "vector": pytest.approx(0.5 / 61)}
    assert by_id[2].contributions == {"text": pytest.approx(0.5 / 61), "vector": 0.0}
    assert by_id[1].lexical_rank is None
    assert by_id[2].vector_rank is None


def test_alpha_monotonicity_favours_vector_only_match():
    fusion = ReciprocalRankFusion(k=60)
    positions = []
    for alpha in [0.0, 0.25, 0.5, 0.75, 1.0]:
        fused = fusion.fuse_results([vhit(1)], [lhit(2)], alpha)
        order = [r.fragment_id for r in fused]
        positions.append(order.index(1) - order.index(2))
    assert positions == sorted(positions, reverse=True)
    assert positions[0] > 0 > positions[-1]


def test_fragments_in_both_lists_merge():
    fused = ReciprocalRankFusion().fuse_results(
        [vhit(1, similarity=0.8)], [lhit(1, score=2.5)], 0.5
    )
    assert len(fused) == 1
    result = fused[0]
    assert result.vector_score == 0.8
    assert result.lexical_score == 2.5
    assert (result.vector_rank, result.lexical_rank) == (1, 1)


def test_deduplicates_by_document_keeping_best_fragment():
    fused = ReciprocalRankFusion().fuse_results(
        [vhit(1, document_id=7), vhit(2, document_id=7), vhit(3, document_id=8)],
        [lhit(2, document_id=7)],
        0.5,
    )
    assert [r.fragment_id for r in fused] == [2, 3]
    assert len({r.document_id for r in fused}) == len(fused)


def test_deduplicate_ties_prefer_lower_fragment_id():
    results = [
        FusedResult(fragment_id=5, document_id=1, fusion_score=0.5),
        FusedResult(fragment_id=3, document_id=1, fusion_score=0.5),
        FusedResult(fragment_id=4, document_id=2, fusion_score=0.7),
    ]
    assert [r.fragment_id for r in deduplicate_by_document(results)] == [4, 3]


def test_tag_boost_is_opt_in():
    hits = [vhit(1, similarity=0.5, tag_boost=0.2), vhit(2, similarity=0.6)]
    plain = ReciprocalRankFusion().fuse_results(hits, [], 1.0)
    boosted = ReciprocalRankFusion().fuse_results(hits, [], 1.0, tag_boost=True)

    assert plain[0].fusion_score == pytest.approx(1.0 / 61)
    assert boosted[0].fusion_score == pytest.approx(1.0 / 61 + 0.2)
    assert boosted[0].tag_boost == 0.2


def test_min_max_normalize():
    assert min_max_normalize({1: 2.0, 2: 4.0, 3: 3.0}) == {1: 0.0, 2: 1.0, 3: 0.5}
    assert min_max_normalize({1: 0.7, 2: 0.7}) == {1: 1.0, 2: 1.0}
    assert min_max_normalize({1: 0.0}) == {1: 0.0}
    assert min_max_normalize({}) == {}


def test_weighted_fusion():
    fused = WeightedScoreFusion().fuse_results(
        [vhit(1, similarity=0.9), vhit(2, similarity=0.5)],
        [lhit(2, score=3.0), lhit(3, score=1.0)],
        0.6,
    )
    scores = {r.fragment_id: r.fusion_score for r in fused}
    assert scores[1] == pytest.approx(0.6)
    assert scores[2] == pytest.approx(0.4)
    assert scores[3] == pytest.approx(0.0)


def test_create_fusion_algorithm():
    assert isinstance(create_fusion_algorithm("rrf", k=10.0), ReciprocalRankFusion)
    assert create_fusion_algorithm(None).k == 60.0
    assert isinstance(create_fusion_algorithm("weighted"), WeightedScoreFusion)
    with pytest.raises(ValueError):
        create_fusion_algorithm("borda")


def test_rerank_tokens_shingle_long_cjk_runs():
    assert rerank_tokens("Deep 机器学习") == ["deep", "机器学习", "机器", "器学", "学习"]
    assert rerank_tokens("学习") == ["学习"]


def test_weighted_query_tokens():
    assert weighted_query_tokens("Deep deep 机器学习") == [
        ("deep", 1.0),
        ("机器学习", 1.0),
        ("机器", 0.5),
        ("器学", 0.5),
        ("学习", 0.5),
    ]


def fused(fragment_id, content, title=None, vector_score=0.0):
    return FusedResult(
        fragment_id=fragment_id,
        document_id=fragment_id,
        fusion_score=0.0,
        vector_score=vector_score,
        title=title,
        content=content,
    )


def test_rerank_blends_token_overlap_and_similarity():
    reranker = TokenOverlapReranker()
    ranked = reranker.rerank(
        [fused(1, "survey of neural nets", vector_score=0.9), fused(2, "deep learning", vector_score=0.5)],
        "deep learning",
        vector_weight=0.5,
    )
    assert [r.fragment_id for r, _ in ranked] == [2, 1]
    score = ranked[0][1]
    assert score.token_score == pytest.approx(1.0)
    assert score.combined_score == pytest.approx(0.5 * 1.0 + 0.5 * 0.5)


def test_rerank_title_and_tag_factors():
    reranker = TokenOverlapReranker()
    ranked = reranker.rerank(
        [fused(1, "neural", title="neural"), fused(2, "other")],
        "neural",
        vector_weight=0.0,
        tag_names={2: ["Neural"]},
    )
    scores = {r.fragment_id: s for r, s in ranked}
    assert scores[1].token_score == pytest.approx(3.0)
    assert scores[2].token_score == pytest.approx(5.0)
    assert scores[2].rank_feature == pytest.approx(1.0)
    assert scores[1].rank_feature == 0.0


def test_rerank_caps_vector_weight_for_long_queries():
    reranker = TokenOverlapReranker()
    ranked = reranker.rerank(
        [fused(1, "one two three four five six", vector_score=1.0)],
        "one two three four five six",
        vector_weight=0.95,
    )
    assert ranked[0][1].vector_weight == pytest.approx(0.2)
    assert ranked[0][1].token_weight == pytest.approx(0.8)


def test_rerank_damps_vector_evidence_without_overlap():
    reranker = TokenOverlapReranker()
    ranked = reranker.rerank(
        [fused(1, "unrelated", vector_score=1.0)], "alpha beta gamma", vector_weight=1.0
    )
    assert ranked[0][1].vector_score == pytest.approx(0.3)
    assert ranked[0][1].combined_score == pytest.approx(0.3)


def test_rerank_ignores_negative_similarity():
    ranked = TokenOverlapReranker().rerank([fused(1, "x", vector_score=-0.4)], "y", vector_weight=1.0)
    assert ranked[0][1].combined_score == 0.0
