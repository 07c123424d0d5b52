# トレースモデル定義
# traces テーブルに対応するデータクラス

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID, uuid4


@dataclass
class Trace:
    """traces テーブルに対応するデータクラス

    parent_trace_id は作成時にのみ設定でき、以後変更されない。
    親を持たないトレースがルートになる。
    """

    trace_id: UUID = field(default_factory=uuid4)
    parent_trace_id: Optional[UUID] = None
    agent_id: Optional[str] = None
    """実行したエージェント（非所有参照）"""

    name: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    """実行メタデータ（内容は解釈しない）"""

    created_at: Optional[datetime] = None

    @property
    def is_root(self) -> bool:
        return self.parent_trace_id is None

    @classmethod
    def from_row(cls, row: tuple) -> "Trace":
        """DBの行からインスタンス生成

        カラム順序: id, parent_trace_id, agent_id, name, payload, created_at
        """
        return cls(
            trace_id=UUID(str(row[0])),
            parent_trace_id=UUID(str(row[1])) if row[1] else None,
            agent_id=row[2],
            name=row[3],
            payload=row[4] or {},
            created_at=row[5],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.trace_id),
            "parent_trace_id": str(self.parent_trace_id) if self.parent_trace_id else None,
            "agent_id": self.agent_id,
            "name": self.name,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
