# 候補取得モジュール（Stage 1: 語彙 + ベクトルの和集合）
"""
候補取得モジュール

全文検索（tsv @@ tsquery）とベクトル近傍検索（pgvector の cosine 距離）の
それぞれ上位 candidate_limit 件を取り、和集合の全候補について
両方の生スコアを1つの SQL で計算して返す。

- 語彙スコア: ts_rank_cd（一致しない候補は 0）
- 意味スコア: 1 - cosine 距離（エンベディングがない候補は NULL）
- クエリのエンベディングがない場合は語彙側のみで候補を取る（劣化モード）

1文の SELECT なので、コミット済みの最新スナップショットに対して読まれる。
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection, format_vector
from src.models.agent import AgentRecord


logger = logging.getLogger(__name__)


class RetrievalError(Exception):
    """候補取得のエラー"""
    pass


@dataclass
class SearchCandidate:
    """Stage 1 の候補（生スコア付き）"""

    agent: AgentRecord
    lexical_score: float
    """ts_rank_cd の値（0 以上）"""

    semantic_score: Optional[float]
    """1 - cosine 距離（-1〜1）。エンベディングがない場合やクエリが劣化した場合は None"""


class CandidateRetriever:
    """語彙検索とベクトル検索の候補を取得する

    使用例:
        retriever = CandidateRetriever(db, config)
        candidates = retriever.fetch("refund | agent", query_embedding)
    """

    # embedding 本体は転送しない（検索結果には不要）
    _COLUMNS = """
        a.id, a.agent_key, a.display_name, a.frontmatter, a.search_text_hash,
        NULL AS embedding, a.embedding_stale, a.status, a.created_at, a.updated_at
    """

    _HYBRID_SQL = """
        WITH q AS (
            SELECT to_tsquery(%(ts_config)s::regconfig, %(tsquery)s) AS tsq
        ),
        lexical AS (
            SELECT a.id
            FROM agents a, q
            WHERE a.status = 'active' AND a.tsv @@ q.tsq
            ORDER BY ts_rank_cd(a.tsv, q.tsq) DESC
            LIMIT %(limit)s
        ),
        semantic AS (
            SELECT a.id
            FROM agents a
            WHERE a.status = 'active' AND a.embedding IS NOT NULL
            ORDER BY a.embedding <=> %(embedding)s::vector
            LIMIT %(limit)s
        )
        SELECT {columns},
            ts_rank_cd(a.tsv, q.tsq) AS lexical_score,
            CASE WHEN a.embedding IS NULL THEN NULL
                 ELSE 1 - (a.embedding <=> %(embedding)s::vector)
            END AS semantic_score
        FROM agents a, q
        WHERE a.id IN (SELECT id FROM lexical UNION SELECT id FROM semantic)
    """.format(columns=_COLUMNS)

    _LEXICAL_SQL = """
        WITH q AS (
            SELECT to_tsquery(%(ts_config)s::regconfig, %(tsquery)s) AS tsq
        )
        SELECT {columns},
            ts_rank_cd(a.tsv, q.tsq) AS lexical_score,
            NULL AS semantic_score
        FROM agents a, q
        WHERE a.status = 'active' AND a.tsv @@ q.tsq
        ORDER BY lexical_score DESC
        LIMIT %(limit)s
    """.format(columns=_COLUMNS)

    def __init__(self, db: DatabaseConnection, config: Optional[DirectoryConfig] = None):
        self.db = db
        self.config = config or default_config

    def fetch(
        self,
        tsquery: str,
        query_embedding: Optional[List[float]] = None,
        candidate_limit: Optional[int] = None,
    ) -> List[SearchCandidate]:
        """候補を取得

        Args:
            tsquery: to_tsquery に渡すクエリ文字列（"refund | agent" 形式）
            query_embedding: クエリのエンベディング（None の場合は語彙のみ）
            candidate_limit: 各検索の最大候補数（省略時は設定値）

        Returns:
            SearchCandidate のリスト（順序は未定義、ランキングは Stage 2 で行う）

        Raises:
            RetrievalError: DB検索に失敗した場合
        """
        params = {
            "ts_config": self.config.text_search_config,
            "tsquery": tsquery,
            "limit": candidate_limit or self.config.candidate_limit,
        }
        if query_embedding is not None:
            sql = self._HYBRID_SQL
            params["embedding"] = format_vector(query_embedding)
        else:
            sql = self._LEXICAL_SQL

        try:
            with self.db.get_cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        except Exception as e:
            logger.error(f"候補取得に失敗: {e}")
            raise RetrievalError(f"候補取得に失敗しました: {e}") from e

        candidates = [
            SearchCandidate(
                agent=AgentRecord.from_row(row[:-2]),
                lexical_score=float(row[-2] or 0.0),
                semantic_score=float(row[-1]) if row[-1] is not None else None,
            )
            for row in rows
        ]

        logger.debug(
            f"候補取得完了: tsquery={tsquery!r}, "
            f"semantic={'あり' if query_embedding is not None else 'なし'}, "
            f"candidates={len(candidates)}"
        )
        return candidates
