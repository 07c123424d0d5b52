# ハイブリッド検索エンジン
"""
ハイブリッド検索エンジン

Stage 1（CandidateRetriever）で語彙・意味の候補を集め、
Stage 2（HybridRanker）で正規化スコアを線形結合して順位付けする。

クエリのエンベディングが取得できない場合は語彙スコアのみで順位付けし、
結果に degraded=True を付けて返す（エラーにはしない）。
劣化した結果はキャッシュしない。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection
from src.embedding.azure_client import AzureEmbeddingClient, AzureEmbeddingError
from src.errors import ValidationError
from src.search.cache import SearchCache
from src.search.lexical import LexicalAnalyzer
from src.search.ranking import HybridRanker, ScoredAgent, resolve_weights
from src.search.retrieval import CandidateRetriever


logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """検索結果"""

    query: str
    hits: List[ScoredAgent] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None
    weights: Dict[str, float] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.hits)

    def to_dict(self) -> Dict:
        data = {
            "agents": [hit.to_dict() for hit in self.hits],
            "count": self.count,
            "degraded": self.degraded,
        }
        if self.degraded_reason:
            data["degraded_reason"] = self.degraded_reason
        return data


class HybridSearch:
    """語彙 + 意味のハイブリッド検索

    使用例:
        search = HybridSearch(db, embedding_client)
        store.add_invalidation_listener(search.invalidate)

        result = search.search("refund agent", top_k=5)
        for hit in result.hits:
            print(hit.agent.display_name, hit.final_score)

    Attributes:
        db: DatabaseConnection インスタンス
        embedding_client: クエリのエンベディングに使うクライアント（None の場合は常に劣化）
        config: DirectoryConfig インスタンス
        retriever: Stage 1 の候補取得
        ranker: Stage 2 のランキング
        cache: 検索結果キャッシュ
    """

    def __init__(
        self,
        db: DatabaseConnection,
        embedding_client: Optional[AzureEmbeddingClient] = None,
        config: Optional[DirectoryConfig] = None,
        retriever: Optional[CandidateRetriever] = None,
        ranker: Optional[HybridRanker] = None,
        cache: Optional[SearchCache] = None,
        analyzer: Optional[LexicalAnalyzer] = None,
    ):
        self.db = db
        self.embedding_client = embedding_client
        self.config = config or default_config
        self.retriever = retriever or CandidateRetriever(db, self.config)
        self.ranker = ranker or HybridRanker(self.config)
        self.cache = cache if cache is not None else SearchCache(self.config.search_cache_size)
        self.analyzer = analyzer or LexicalAnalyzer()

        logger.info(
            f"HybridSearch 初期化完了: weights={self.config.search_weights}, "
            f"candidate_limit={self.config.candidate_limit}, "
            f"cache_size={self.config.search_cache_size}"
        )

    def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        weights: Optional[Dict[str, float]] = None,
    ) -> SearchResult:
        """エージェントを検索

        Args:
            query: 自然言語のクエリ
            top_k: 返却する最大件数（省略時は default_top_k）
            weights: {"lexical": w, "semantic": w} の上書き

        Returns:
            SearchResult（クエリのエンベディングに失敗した場合は degraded=True）

        Raises:
            ValidationError: top_k が 1..max_top_k の範囲外、重みが不正
        """
        if top_k is None:
            top_k = self.config.default_top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int) or not 1 <= top_k <= self.config.max_top_k:
            raise ValidationError(
                f"top_k は 1 から {self.config.max_top_k} の整数である必要があります: {top_k}"
            )
        resolved = resolve_weights(weights, self.config)

        terms = self.analyzer.query_terms(query)
        if not terms:
            logger.debug("空のクエリのため空の結果を返します")
            return SearchResult(query=query or "", weights=resolved)

        cache_key = (tuple(terms), top_k, resolved["lexical"], resolved["semantic"])
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"検索キャッシュヒット: query={query!r}")
            return cached

        # 検索中に無効化が入った場合は put で破棄される
        generation = self.cache.generation

        query_embedding: Optional[List[float]] = None
        degraded_reason: Optional[str] = None
        if resolved["semantic"] > 0:
            query_embedding, degraded_reason = self._embed_query(query)
        degraded = degraded_reason is not None

        candidates = self.retriever.fetch(self.analyzer.tsquery_text(query), query_embedding)
        hits = self.ranker.rank(
            candidates,
            top_k=top_k,
            weights=resolved,
            use_semantic=query_embedding is not None,
        )

        result = SearchResult(
            query=query,
            hits=hits,
            degraded=degraded,
            degraded_reason=degraded_reason,
            weights=resolved,
        )

        if degraded:
            logger.warning(
                f"劣化モードで検索しました（語彙のみ）: query={query!r}, reason={degraded_reason}"
            )
        else:
            self.cache.put(cache_key, result, {hit.agent.agent_id for hit in hits}, generation)

        logger.info(
            f"検索完了: query={query!r}, candidates={len(candidates)}, "
            f"hits={len(hits)}, degraded={degraded}"
        )
        return result

    def _embed_query(self, query: str):
        """クエリのエンベディングを取得

        Returns:
            (embedding, None) または (None, 劣化理由)
        """
        if self.embedding_client is None:
            return None, "embedding provider not configured"
        try:
            return self.embedding_client.get_embedding(query), None
        except AzureEmbeddingError as e:
            return None, f"embedding provider unavailable: {e}"

    def invalidate(self, agent_id: str, candidates_changed: bool) -> None:
        """AgentStore の無効化リスナーとして登録する"""
        self.cache.invalidate(agent_id, candidates_changed)
