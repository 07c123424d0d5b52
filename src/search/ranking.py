# ハイブリッドランキングモジュール（Stage 2: スコア合成）
"""
ハイブリッドランキングモジュール

Stage 1 で取得した候補の語彙スコアと意味スコアを、候補集合内の
最小値・最大値で [0, 1] に正規化してから線形結合する。

    final_score = lexical_norm * w_lexical + semantic_norm * w_semantic

- 正規化: (v - min) / (max - min)。全候補が同値なら正の値は 1.0、0 以下は 0.0
- 意味スコアがない候補（エンベディング未計算）は semantic_norm = 0
- 劣化モード（クエリのエンベディングなし）では意味項を 0 として扱う
- 同点: updated_at の新しい順 → agent_id の昇順
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from src.config.directory_config import DirectoryConfig, config as default_config
from src.errors import ValidationError
from src.models.agent import AgentRecord
from src.search.retrieval import SearchCandidate


logger = logging.getLogger(__name__)


@dataclass
class ScoredAgent:
    """スコア計算済みのエージェント"""

    agent: AgentRecord
    final_score: float
    lexical_score: float
    """正規化済み語彙スコア（0-1）"""

    semantic_score: float
    """正規化済み意味スコア（0-1）"""

    score_breakdown: Dict[str, float]
    """スコア内訳（デバッグ用）"""

    @property
    def embedding_stale(self) -> bool:
        return self.agent.embedding_stale

    def to_dict(self) -> Dict:
        data = self.agent.to_summary()
        data.update({
            "score": self.final_score,
            "lexical_score": self.lexical_score,
            "semantic_score": self.semantic_score,
            "embedding_stale": self.embedding_stale,
        })
        return data

    def __repr__(self) -> str:
        return (
            f"ScoredAgent("
            f"agent_id={self.agent.agent_id!r}, "
            f"final_score={self.final_score:.3f}, "
            f"breakdown={self.score_breakdown})"
        )


def min_max_normalize(values: Sequence[float]) -> List[float]:
    """値を [0, 1] に正規化する"""
    if not values:
        return []
    low = min(values)
    high = max(values)
    if high - low < 1e-12:
        return [1.0 if high > 0 else 0.0 for _ in values]
    return [(v - low) / (high - low) for v in values]


def resolve_weights(
    weights: Optional[Dict[str, float]],
    config: DirectoryConfig,
) -> Dict[str, float]:
    """呼び出し側の重みと設定値をマージして検証する

    Raises:
        ValidationError: 未知のキー、負の重み、両方 0 の場合
    """
    resolved = dict(config.search_weights)
    if weights:
        unknown = set(weights) - set(resolved)
        if unknown:
            raise ValidationError(f"未知の重みです: {', '.join(sorted(unknown))}")
        resolved.update({k: float(v) for k, v in weights.items()})

    if resolved["lexical"] < 0 or resolved["semantic"] < 0:
        raise ValidationError(f"重みは非負である必要があります: {resolved}")
    if resolved["lexical"] == 0 and resolved["semantic"] == 0:
        raise ValidationError("lexical と semantic の重みを両方 0 にはできません")
    return resolved


class HybridRanker:
    """ハイブリッドランキングエンジン（Stage 2）

    使用例:
        ranker = HybridRanker(config)
        hits = ranker.rank(candidates, top_k=5)
    """

    def __init__(self, config: Optional[DirectoryConfig] = None):
        self.config = config or default_config

        weights = self.config.search_weights
        total_weight = sum(weights.values())
        if abs(total_weight - 1.0) > 0.001:
            logger.warning(f"検索重みの合計が 1.0 ではありません: {total_weight:.3f}")

    def rank(
        self,
        candidates: List[SearchCandidate],
        top_k: int,
        weights: Optional[Dict[str, float]] = None,
        use_semantic: bool = True,
    ) -> List[ScoredAgent]:
        """候補をスコア合成してランキング

        Args:
            candidates: Stage 1 の候補
            top_k: 返却する最大件数
            weights: {"lexical": w, "semantic": w}（省略時は設定値）
            use_semantic: False の場合は意味項の寄与を 0 にする（劣化モード）

        Returns:
            ScoredAgent のリスト（スコア降順、最大 top_k 件）
        """
        if not candidates:
            return []

        resolved = resolve_weights(weights, self.config)
        w_lexical = resolved["lexical"]
        w_semantic = resolved["semantic"] if use_semantic else 0.0

        lexical_norm = min_max_normalize([c.lexical_score for c in candidates])

        semantic_raw = [c.semantic_score for c in candidates if c.semantic_score is not None]
        semantic_iter = iter(min_max_normalize(semantic_raw))
        semantic_norm = [
            next(semantic_iter) if c.semantic_score is not None else 0.0
            for c in candidates
        ]
        if not use_semantic:
            semantic_norm = [0.0] * len(candidates)

        scored: List[ScoredAgent] = []
        for candidate, lex, sem in zip(candidates, lexical_norm, semantic_norm):
            final_score = lex * w_lexical + sem * w_semantic
            scored.append(
                ScoredAgent(
                    agent=candidate.agent,
                    final_score=final_score,
                    lexical_score=lex,
                    semantic_score=sem,
                    score_breakdown={
                        "lexical_raw": candidate.lexical_score,
                        "lexical_normalized": lex,
                        "lexical_weighted": lex * w_lexical,
                        "semantic_raw": candidate.semantic_score if candidate.semantic_score is not None else 0.0,
                        "semantic_normalized": sem,
                        "semantic_weighted": sem * w_semantic,
                        "total": final_score,
                    },
                )
            )

        scored.sort(key=self._sort_key)
        result = scored[:top_k]

        if result:
            logger.debug(
                f"トップスコア: {result[0].final_score:.3f}, "
                f"ボトムスコア: {result[-1].final_score:.3f}"
            )
        return result

    @staticmethod
    def _sort_key(scored: ScoredAgent):
        updated_at = scored.agent.updated_at
        recency = updated_at.timestamp() if updated_at else float("-inf")
        return (-round(scored.final_score, 12), -recency, scored.agent.agent_id)
