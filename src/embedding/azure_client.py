# Azure OpenAI Embedding クライアント
# 環境変数:
#   - AZURE_OPENAI_ENDPOINT または OpenAIEmbeddingURI: Azure OpenAIのエンドポイント
#   - AZURE_OPENAI_API_KEY または OpenAIEmbeddingKey: Azure OpenAIのAPIキー
#   - AZURE_OPENAI_EMBEDDING_DEPLOYMENT: デプロイメント名 (デフォルト: text-embedding-3-small)

import os
import logging
from typing import List, Optional

from openai import AzureOpenAI

from src.config.directory_config import DirectoryConfig, config as default_config

logger = logging.getLogger(__name__)


class AzureEmbeddingError(Exception):
    """Azure Embeddingクライアントのエラー"""
    pass


class AzureEmbeddingClient:
    """Azure OpenAI Embedding クライアント

    エージェントの表示名 + frontmatter、および検索クエリをベクトル化する。
    呼び出しは embedding_timeout_seconds で打ち切られ、SDK 側の自動リトライは行わない
    （失敗時の再計算はバックフィルで行う）。

    使用例:
        client = AzureEmbeddingClient()
        embedding = client.get_embedding("返金対応を担当するエージェント")
    """

    # Azure OpenAI APIバージョン
    API_VERSION = "2024-02-01"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        deployment: Optional[str] = None,
        config: Optional[DirectoryConfig] = None,
    ):
        """Azure OpenAI Embedding クライアントを初期化

        Args:
            endpoint: Azure OpenAI エンドポイント (省略時は環境変数から取得)
            api_key: Azure OpenAI APIキー (省略時は環境変数から取得)
            deployment: デプロイメント名 (省略時は環境変数または設定から取得)
            config: ディレクトリ設定（省略時はデフォルト設定）

        Raises:
            AzureEmbeddingError: エンドポイントまたはAPIキーが設定されていない場合
        """
        self.config = config or default_config

        self.endpoint = endpoint or os.getenv("AZURE_OPENAI_ENDPOINT") or os.getenv("OpenAIEmbeddingURI")
        if not self.endpoint:
            raise AzureEmbeddingError(
                "Azure OpenAI エンドポイントが設定されていません。"
                "AZURE_OPENAI_ENDPOINT または OpenAIEmbeddingURI 環境変数を設定してください。"
            )

        self.api_key = api_key or os.getenv("AZURE_OPENAI_API_KEY") or os.getenv("OpenAIEmbeddingKey")
        if not self.api_key:
            raise AzureEmbeddingError(
                "Azure OpenAI APIキーが設定されていません。"
                "AZURE_OPENAI_API_KEY または OpenAIEmbeddingKey 環境変数を設定してください。"
            )

        self.deployment = (
            deployment
            or os.getenv("AZURE_OPENAI_EMBEDDING_DEPLOYMENT")
            or self.config.embedding_model
        )

        self.expected_dimension = self.config.embedding_dimension
        self.timeout_seconds = self.config.embedding_timeout_seconds

        self._client = AzureOpenAI(
            azure_endpoint=self.endpoint,
            api_key=self.api_key,
            api_version=self.API_VERSION,
            timeout=self.timeout_seconds,
            max_retries=0,
        )

        logger.info(
            f"AzureEmbeddingClient 初期化完了: "
            f"endpoint={self._mask_endpoint(self.endpoint)}, "
            f"deployment={self.deployment}, timeout={self.timeout_seconds}s"
        )

    def _mask_endpoint(self, endpoint: str) -> str:
        """エンドポイントをログ用にマスク"""
        if len(endpoint) > 30:
            return endpoint[:15] + "..." + endpoint[-10:]
        return endpoint

    def get_embedding(self, text: str) -> List[float]:
        """単一テキストのエンベディングを取得

        Args:
            text: エンベディングを取得するテキスト

        Returns:
            expected_dimension 次元のベクトル

        Raises:
            AzureEmbeddingError: API呼び出しに失敗した場合、タイムアウトした場合、
                                 または次元数が一致しない場合
        """
        if not text or not text.strip():
            raise AzureEmbeddingError("空のテキストはエンベディングできません")

        try:
            response = self._client.embeddings.create(
                model=self.deployment,
                input=text,
            )
            embedding = response.data[0].embedding
        except Exception as e:
            logger.error(f"エンベディング取得に失敗: {e}")
            raise AzureEmbeddingError(f"エンベディング取得に失敗しました: {e}") from e

        # vector(1536) 列に保存できない次元は受け付けない
        if len(embedding) != self.expected_dimension:
            raise AzureEmbeddingError(
                f"エンベディング次元数が期待値と異なります: "
                f"got={len(embedding)}, expected={self.expected_dimension}"
            )

        return embedding

    def get_embeddings(self, texts: List[str]) -> List[List[float]]:
        """複数テキストのエンベディングをバッチ取得（バックフィル用）

        Args:
            texts: エンベディングを取得するテキストのリスト（空文字列は不可）

        Returns:
            各テキストに対応するベクトルのリスト（入力順）

        Raises:
            AzureEmbeddingError: API呼び出しに失敗した場合、入力が不正な場合、
                                 または件数・次元数が一致しない場合
        """
        if not texts:
            raise AzureEmbeddingError("テキストリストが空です")
        if any(not t or not t.strip() for t in texts):
            raise AzureEmbeddingError("空のテキストはエンベディングできません")

        try:
            response = self._client.embeddings.create(
                model=self.deployment,
                input=texts,
            )
        except Exception as e:
            logger.error(f"バッチエンベディング取得に失敗: {e}")
            raise AzureEmbeddingError(f"バッチエンベディング取得に失敗しました: {e}") from e

        embeddings_data = sorted(response.data, key=lambda x: x.index)
        if len(embeddings_data) != len(texts):
            raise AzureEmbeddingError(
                f"エンベディング件数が入力と一致しません: got={len(embeddings_data)}, expected={len(texts)}"
            )

        embeddings = [item.embedding for item in embeddings_data]
        for embedding in embeddings:
            if len(embedding) != self.expected_dimension:
                raise AzureEmbeddingError(
                    f"エンベディング次元数が期待値と異なります: "
                    f"got={len(embedding)}, expected={self.expected_dimension}"
                )
        return embeddings

    def is_available(self) -> bool:
        """クライアントが利用可能かテスト"""
        try:
            self.get_embedding("test")
            return True
        except AzureEmbeddingError:
            return False


# シングルトンインスタンス（遅延初期化）
_client_instance: Optional[AzureEmbeddingClient] = None


def get_embedding_client() -> AzureEmbeddingClient:
    """グローバルなエンベディングクライアントを取得

    Raises:
        AzureEmbeddingError: クライアントの初期化に失敗した場合
    """
    global _client_instance
    if _client_instance is None:
        _client_instance = AzureEmbeddingClient()
    return _client_instance


def reset_client() -> None:
    """グローバルクライアントをリセット（テスト用）"""
    global _client_instance
    _client_instance = None
