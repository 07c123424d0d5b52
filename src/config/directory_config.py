# エージェントディレクトリ パラメータ設定
# 検索の重み・エンベディング・削除ポリシー・トランザクション再試行を一元管理する

import os
from dataclasses import dataclass, field
from typing import Dict


EMBEDDING_MODES = ("sync", "background")
DELETE_POLICIES = ("block", "cascade")


@dataclass
class DirectoryConfig:
    """エージェントディレクトリ & タスク依存エンジンの設定

    区分:
    - ハイブリッド検索: 語彙スコアと意味スコアの重み、候補数
    - エンベディング: モデル、次元数、タイムアウト、再計算方式
    - エージェント削除: 参照が残っている場合のポリシー
    - トランザクション: 直列化失敗・デッドロック時の再試行

    環境変数による上書き:
        AGENT_SEARCH_LEXICAL_WEIGHT: 語彙スコアの重み
        AGENT_SEARCH_SEMANTIC_WEIGHT: 意味スコアの重み
        AGENT_EMBEDDING_MODE: "sync" | "background"
        AGENT_DELETE_POLICY: "block" | "cascade"
    """

    # === ハイブリッド検索 ===
    lexical_weight: float = 0.3
    """正規化済み語彙スコア（ts_rank_cd）の重み"""

    semantic_weight: float = 0.7
    """正規化済み意味スコア（cosine 類似度）の重み"""

    candidate_limit: int = 50
    """語彙・ベクトル各検索で取得する最大候補数"""

    default_top_k: int = 10
    """top_k 未指定時の返却件数"""

    max_top_k: int = 100
    """top_k の上限"""

    text_search_config: str = "simple"
    """PostgreSQL の全文検索設定名（to_tsvector の第1引数）"""

    search_cache_size: int = 256
    """ランキング結果キャッシュの最大件数（0 で無効）"""

    # === エンベディング ===
    embedding_model: str = "text-embedding-3-small"
    """Azure OpenAI Embedding モデル名"""

    embedding_dimension: int = 1536
    """エンベディング次元数（agents.embedding vector(1536) と一致させる）"""

    embedding_timeout_seconds: float = 10.0
    """エンベディング API 呼び出し1回あたりのタイムアウト（秒）"""

    embedding_mode: str = "sync"
    """再計算方式: "sync"（upsert 内で計算）| "background"（スレッドプールで後追い計算）"""

    raise_on_embedding_failure: bool = False
    """True の場合、劣化状態で書き込みをコミットした後に EmbeddingUnavailable を送出する"""

    backfill_batch_size: int = 100
    """1回のバックフィルで処理する stale エンベディングの最大件数"""

    background_workers: int = 2
    """background モードでのエンベディング計算スレッド数"""

    # === エージェント削除 ===
    agent_delete_policy: str = "block"
    """参照が残るエージェントの削除: "block"（拒否）| "cascade"（参照を解除して削除）"""

    # === トランザクション ===
    transaction_max_retries: int = 3
    """直列化失敗・デッドロック時の最大再試行回数"""

    transaction_retry_backoff_seconds: float = 0.05
    """再試行の待機時間の基準値（試行回数に比例して伸ばす）"""

    extra: Dict[str, str] = field(default_factory=dict)
    """拡張用の任意設定"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を上書き"""
        env_lexical = os.getenv("AGENT_SEARCH_LEXICAL_WEIGHT")
        if env_lexical:
            self.lexical_weight = float(env_lexical)

        env_semantic = os.getenv("AGENT_SEARCH_SEMANTIC_WEIGHT")
        if env_semantic:
            self.semantic_weight = float(env_semantic)

        env_mode = os.getenv("AGENT_EMBEDDING_MODE")
        if env_mode:
            self.embedding_mode = env_mode

        env_policy = os.getenv("AGENT_DELETE_POLICY")
        if env_policy:
            self.agent_delete_policy = env_policy

    @property
    def search_weights(self) -> Dict[str, float]:
        """検索重みを辞書形式で返す"""
        return {
            "lexical": self.lexical_weight,
            "semantic": self.semantic_weight,
        }

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 値が無効な場合
        """
        if self.lexical_weight < 0 or self.semantic_weight < 0:
            raise ValueError(
                f"検索重みは非負である必要があります: "
                f"lexical={self.lexical_weight}, semantic={self.semantic_weight}"
            )
        if self.lexical_weight == 0 and self.semantic_weight == 0:
            raise ValueError("lexical_weight と semantic_weight の両方を 0 にはできません")

        if self.candidate_limit <= 0:
            raise ValueError(f"candidate_limit は正の整数である必要があります: {self.candidate_limit}")
        if self.default_top_k <= 0 or self.max_top_k <= 0:
            raise ValueError("default_top_k / max_top_k は正の整数である必要があります")
        if self.default_top_k > self.max_top_k:
            raise ValueError(
                f"default_top_k ({self.default_top_k}) は max_top_k ({self.max_top_k}) 以下である必要があります"
            )
        if self.search_cache_size < 0:
            raise ValueError(f"search_cache_size は非負である必要があります: {self.search_cache_size}")

        if self.embedding_mode not in EMBEDDING_MODES:
            raise ValueError(f"embedding_mode は sync/background のいずれかです: {self.embedding_mode}")
        if self.embedding_timeout_seconds <= 0:
            raise ValueError(
                f"embedding_timeout_seconds は正の値である必要があります: {self.embedding_timeout_seconds}"
            )
        if self.backfill_batch_size <= 0:
            raise ValueError(f"backfill_batch_size は正の整数である必要があります: {self.backfill_batch_size}")
        if self.background_workers <= 0:
            raise ValueError(f"background_workers は正の整数である必要があります: {self.background_workers}")

        if self.agent_delete_policy not in DELETE_POLICIES:
            raise ValueError(
                f"agent_delete_policy は block/cascade のいずれかです: {self.agent_delete_policy}"
            )

        if self.transaction_max_retries < 0:
            raise ValueError(
                f"transaction_max_retries は非負の整数である必要があります: {self.transaction_max_retries}"
            )


# デフォルト設定のインスタンス
config = DirectoryConfig()
