# エージェントモデル定義
# agents / agent_links テーブルに対応するデータクラス

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, NewType, Optional
from uuid import UUID, uuid4

from src.db.connection import parse_vector


AgentId = NewType("AgentId", str)
"""エージェントの不透明な識別子

チーム・トレース・リンク・タスクはこの ID だけを保持し、
エージェントの実体は AgentStore 経由で引く。
"""

AGENT_STATUSES = ("active", "disabled")

LINK_KINDS = ("delegation", "supervision", "peer")
LINK_DIRECTIONS = ("outbound", "inbound", "bidirectional")
LINK_STATUSES = ("active", "disabled")


@dataclass
class AgentRecord:
    """agents テーブルに対応するデータクラス

    tsv（語彙ベクトル）は DB 側にのみ保持し、Python 側では
    search_text_hash で「最後にインデックスしたテキスト」を識別する。
    embedding が None かつ embedding_stale=True の場合、
    エンベディングは再計算待ち（検索では意味スコア 0 として扱われる）。
    """

    agent_id: AgentId
    """エージェントの一意識別子"""

    display_name: str
    """表示名（検索対象）"""

    frontmatter: str = ""
    """専門性・能力の要約（検索対象、委譲先選択と UI 表示に使用）"""

    agent_key: Optional[str] = None
    """人間向けの一意キー（省略時は agent_id と同じ）"""

    status: str = "active"
    """状態: active / disabled"""

    embedding: Optional[List[float]] = None
    """display_name + frontmatter のエンベディング vector(1536)"""

    embedding_stale: bool = False
    """エンベディングが最新テキストを反映していない（再計算待ち）"""

    search_text_hash: Optional[str] = None
    """最後にインデックスした正規化テキストの SHA-256"""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.agent_key is None:
            self.agent_key = self.agent_id
        if self.frontmatter is None:
            self.frontmatter = ""

    @classmethod
    def from_row(cls, row: tuple) -> "AgentRecord":
        """DBの行からインスタンス生成

        カラム順序: id, agent_key, display_name, frontmatter, search_text_hash,
                    embedding, embedding_stale, status, created_at, updated_at
        """
        return cls(
            agent_id=AgentId(row[0]),
            agent_key=row[1],
            display_name=row[2],
            frontmatter=row[3] or "",
            search_text_hash=row[4],
            embedding=parse_vector(row[5]),
            embedding_stale=bool(row[6]),
            status=row[7],
            created_at=row[8],
            updated_at=row[9],
        )

    def to_dict(self) -> Dict[str, Any]:
        """辞書に変換（embedding は含めない）"""
        return {
            "id": self.agent_id,
            "agent_key": self.agent_key,
            "display_name": self.display_name,
            "frontmatter": self.frontmatter,
            "status": self.status,
            "embedding_stale": self.embedding_stale,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_summary(self) -> Dict[str, Any]:
        """検索結果用のサマリー"""
        return {
            "id": self.agent_id,
            "agent_key": self.agent_key,
            "display_name": self.display_name,
            "frontmatter": self.frontmatter,
        }


@dataclass
class AgentLink:
    """agent_links テーブルに対応するデータクラス

    有向エッジ（source → target）。循環（相互監督など）は許容する。
    """

    source_agent_id: AgentId
    target_agent_id: AgentId
    kind: str = "delegation"
    """リンク種別: delegation / supervision / peer"""

    direction: str = "outbound"
    """委譲方向: outbound / inbound / bidirectional"""

    description: str = ""
    max_concurrent: int = 3
    """同時委譲数の上限"""

    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    team_id: Optional[UUID] = None
    """チーム作成時に自動生成されたリンクの場合のみ設定"""

    created_by: str = ""
    link_id: UUID = field(default_factory=uuid4)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: tuple) -> "AgentLink":
        """DBの行からインスタンス生成

        カラム順序: id, source_agent_id, target_agent_id, kind, direction,
                    description, max_concurrent, metadata, status, team_id,
                    created_by, created_at, updated_at
        """
        return cls(
            link_id=UUID(str(row[0])),
            source_agent_id=AgentId(row[1]),
            target_agent_id=AgentId(row[2]),
            kind=row[3],
            direction=row[4],
            description=row[5] or "",
            max_concurrent=row[6],
            metadata=row[7] or {},
            status=row[8],
            team_id=UUID(str(row[9])) if row[9] else None,
            created_by=row[10] or "",
            created_at=row[11],
            updated_at=row[12],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.link_id),
            "source_agent_id": self.source_agent_id,
            "target_agent_id": self.target_agent_id,
            "kind": self.kind,
            "direction": self.direction,
            "description": self.description,
            "max_concurrent": self.max_concurrent,
            "metadata": self.metadata,
            "status": self.status,
            "team_id": str(self.team_id) if self.team_id else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
