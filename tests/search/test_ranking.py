# ハイブリッドランキングモジュールのテスト
"""
HybridRanker の単体テスト

テスト観点:
- min-max 正規化（同値・空リスト）
- 語彙・意味スコアの線形結合
- 意味スコアがない候補の扱い
- 劣化モード（use_semantic=False）
- 同点時の並び（updated_at の新しい順 → agent_id 昇順）
- 重みの検証
"""

from datetime import datetime, timedelta

import pytest

from src.config.directory_config import DirectoryConfig
from src.errors import ValidationError
from src.models.agent import AgentId, AgentRecord
from src.search.ranking import HybridRanker, ScoredAgent, min_max_normalize, resolve_weights
from src.search.retrieval import SearchCandidate


BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


def _candidate(agent_id, lexical, semantic=None, updated_at=None, stale=False) -> SearchCandidate:
    agent = AgentRecord(
        agent_id=AgentId(agent_id),
        display_name=agent_id.title(),
        frontmatter=f"{agent_id} agent",
        embedding_stale=stale,
        updated_at=updated_at or BASE_TIME,
    )
    return SearchCandidate(agent=agent, lexical_score=lexical, semantic_score=semantic)


class TestMinMaxNormalize:
    """min_max_normalize() のテスト"""

    def test_scales_to_unit_interval(self):
        assert min_max_normalize([0.2, 0.6, 1.0]) == pytest.approx([0.0, 0.5, 1.0])

    def test_empty(self):
        assert min_max_normalize([]) == []

    def test_constant_positive_values(self):
        """全候補が同じ正の値なら 1.0"""
        assert min_max_normalize([0.4, 0.4]) == [1.0, 1.0]

    def test_constant_zero_values(self):
        """全候補が 0 なら 0.0"""
        assert min_max_normalize([0.0, 0.0, 0.0]) == [0.0, 0.0, 0.0]


class TestResolveWeights:
    """resolve_weights() のテスト"""

    @pytest.fixture
    def config(self) -> DirectoryConfig:
        return DirectoryConfig(lexical_weight=0.3, semantic_weight=0.7)

    def test_defaults_from_config(self, config):
        assert resolve_weights(None, config) == {"lexical": 0.3, "semantic": 0.7}

    def test_partial_override(self, config):
        assert resolve_weights({"semantic": 0.0}, config) == {"lexical": 0.3, "semantic": 0.0}

    @pytest.mark.parametrize(
        "weights",
        [
            {"recency": 0.5},
            {"lexical": -0.1},
            {"lexical": 0.0, "semantic": 0.0},
        ],
    )
    def test_invalid_weights_raise(self, config, weights):
        with pytest.raises(ValidationError):
            resolve_weights(weights, config)


class TestHybridRanker:
    """HybridRanker.rank() のテスト"""

    @pytest.fixture
    def config(self) -> DirectoryConfig:
        return DirectoryConfig(lexical_weight=0.3, semantic_weight=0.7)

    @pytest.fixture
    def ranker(self, config: DirectoryConfig) -> HybridRanker:
        return HybridRanker(config)

    def test_empty_candidates(self, ranker):
        assert ranker.rank([], top_k=5) == []

    def test_linear_combination(self, ranker):
        """final_score = lexical_norm * 0.3 + semantic_norm * 0.7"""
        # Arrange
        candidates = [
            _candidate("billing", lexical=1.0, semantic=0.2),
            _candidate("refund", lexical=0.5, semantic=0.9),
            _candidate("support", lexical=0.0, semantic=0.55),
        ]

        # Act
        result = ranker.rank(candidates, top_k=5)

        # Assert
        scores = {r.agent.agent_id: r.final_score for r in result}
        assert scores["refund"] == pytest.approx(0.5 * 0.3 + 1.0 * 0.7)
        assert scores["support"] == pytest.approx(0.0 * 0.3 + 0.5 * 0.7)
        assert scores["billing"] == pytest.approx(1.0 * 0.3 + 0.0 * 0.7)
        assert [r.agent.agent_id for r in result] == ["refund", "support", "billing"]

    def test_result_type_and_breakdown(self, ranker):
        result = ranker.rank([_candidate("refund", lexical=0.4, semantic=0.8)], top_k=1)

        assert isinstance(result[0], ScoredAgent)
        breakdown = result[0].score_breakdown
        assert breakdown["lexical_raw"] == 0.4
        assert breakdown["semantic_raw"] == 0.8
        assert breakdown["total"] == pytest.approx(result[0].final_score)

    def test_top_k_limits_results(self, ranker):
        candidates = [_candidate(f"agent{i}", lexical=float(i), semantic=float(i)) for i in range(5)]

        result = ranker.rank(candidates, top_k=2)

        assert [r.agent.agent_id for r in result] == ["agent4", "agent3"]

    def test_missing_semantic_score_counts_as_zero(self, ranker):
        """エンベディング未計算の候補は意味スコア 0 として扱う"""
        candidates = [
            _candidate("fresh", lexical=0.5, semantic=0.9),
            _candidate("pending", lexical=0.5, semantic=None, stale=True),
            _candidate("other", lexical=0.5, semantic=0.1),
        ]

        result = ranker.rank(candidates, top_k=3)

        by_id = {r.agent.agent_id: r for r in result}
        assert by_id["pending"].semantic_score == 0.0
        assert by_id["pending"].embedding_stale is True
        assert by_id["pending"].score_breakdown["semantic_raw"] == 0.0
        assert by_id["fresh"].semantic_score == 1.0

    def test_degraded_mode_ranks_by_lexical_only(self, ranker):
        """use_semantic=False では意味スコアを無視する"""
        candidates = [
            _candidate("semantic_match", lexical=0.1, semantic=1.0),
            _candidate("lexical_match", lexical=0.9, semantic=0.0),
        ]

        result = ranker.rank(candidates, top_k=2, use_semantic=False)

        assert [r.agent.agent_id for r in result] == ["lexical_match", "semantic_match"]
        assert all(r.semantic_score == 0.0 for r in result)
        assert result[0].final_score == pytest.approx(0.3)

    def test_weights_override(self, ranker):
        candidates = [
            _candidate("semantic_match", lexical=0.1, semantic=1.0),
            _candidate("lexical_match", lexical=0.9, semantic=0.0),
        ]

        result = ranker.rank(candidates, top_k=2, weights={"lexical": 1.0, "semantic": 0.0})

        assert result[0].agent.agent_id == "lexical_match"

    def test_ties_prefer_recently_updated(self, ranker):
        """同点の場合は updated_at の新しい順"""
        candidates = [
            _candidate("older", lexical=0.5, semantic=0.5, updated_at=BASE_TIME),
            _candidate("newer", lexical=0.5, semantic=0.5, updated_at=BASE_TIME + timedelta(hours=1)),
        ]

        result = ranker.rank(candidates, top_k=2)

        assert [r.agent.agent_id for r in result] == ["newer", "older"]

    def test_ties_then_agent_id_ascending(self, ranker):
        """スコアも updated_at も同じ場合は agent_id の昇順"""
        candidates = [
            _candidate("zeta", lexical=0.5, semantic=0.5),
            _candidate("alpha", lexical=0.5, semantic=0.5),
            _candidate("mu", lexical=0.5, semantic=0.5),
        ]

        result = ranker.rank(candidates, top_k=3)

        assert [r.agent.agent_id for r in result] == ["alpha", "mu", "zeta"]

    def test_to_dict_contains_scores(self, ranker):
        result = ranker.rank([_candidate("refund", lexical=0.4, semantic=0.8)], top_k=1)

        data = result[0].to_dict()

        assert data["id"] == "refund"
        assert data["display_name"] == "Refund"
        assert data["score"] == pytest.approx(1.0)
        assert data["embedding_stale"] is False
