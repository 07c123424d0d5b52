# エージェント管理モジュール
"""
エージェント管理モジュール

エージェントレコード（識別情報 + 検索用テキスト）と
エージェント間リンク（委譲・監督・ピア）の保存を提供。

設計方針:
- 派生インデックス（tsv / embedding）は保存時に同じテキストから再生成
- 参照が残るエージェントの削除はポリシー（block / cascade）で制御
"""

from src.agents.agent_store import AgentStore
from src.agents.link_store import AgentLinkStore
from src.models.agent import AgentLink, AgentRecord

__all__ = ["AgentLink", "AgentLinkStore", "AgentRecord", "AgentStore"]
