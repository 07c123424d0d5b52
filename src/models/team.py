# チームモデル定義
# agent_teams / agent_team_members / team_tasks テーブルに対応するデータクラス
#
# to_dict() の出力キーは CLI の JSON 出力と共通。

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4


class TeamStatus(Enum):
    """チームの状態"""
    ACTIVE = "active"
    ARCHIVED = "archived"


class TeamRole(Enum):
    """チームメンバーの役割（チームごとに lead はちょうど1人）"""
    LEAD = "lead"
    MEMBER = "member"


class TaskStatus(Enum):
    """チームタスクの状態

    状態遷移:
        PENDING → IN_PROGRESS → COMPLETED（終端）
        PENDING / IN_PROGRESS ⇄ BLOCKED
        BLOCKED から抜けるときは常に PENDING に戻る
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


def _uuid_or_none(value: Any) -> Optional[UUID]:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Team:
    """agent_teams テーブルの1行"""

    name: str
    lead_agent_id: str
    created_by: str
    team_id: UUID = field(default_factory=uuid4)
    description: str = ""
    status: TeamStatus = TeamStatus.ACTIVE
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # JOIN で取得する項目
    lead_agent_key: Optional[str] = None

    @classmethod
    def from_row(cls, row: tuple) -> "Team":
        """DBの行からインスタンス生成

        カラム順序: id, name, lead_agent_id, description, status, settings,
                    created_by, created_at, updated_at[, lead_agent_key]
        """
        return cls(
            team_id=_uuid_or_none(row[0]),
            name=row[1],
            lead_agent_id=row[2],
            description=row[3] or "",
            status=TeamStatus(row[4]),
            settings=row[5] or {},
            created_by=row[6],
            created_at=row[7],
            updated_at=row[8],
            lead_agent_key=row[9] if len(row) > 9 else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": str(self.team_id),
            "name": self.name,
            "lead_agent_id": self.lead_agent_id,
            "description": self.description,
            "status": self.status.value,
            "settings": self.settings,
            "created_by": self.created_by,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
        if self.lead_agent_key:
            data["lead_agent_key"] = self.lead_agent_key
        return data


@dataclass
class TeamMember:
    """agent_team_members テーブルの1行"""

    team_id: UUID
    agent_id: str
    role: TeamRole = TeamRole.MEMBER
    joined_at: Optional[datetime] = None

    # JOIN で取得する項目
    agent_key: Optional[str] = None
    display_name: Optional[str] = None
    frontmatter: Optional[str] = None

    @classmethod
    def from_row(cls, row: tuple) -> "TeamMember":
        """DBの行からインスタンス生成

        カラム順序: team_id, agent_id, role, joined_at
                    [, agent_key, display_name, frontmatter]
        """
        return cls(
            team_id=_uuid_or_none(row[0]),
            agent_id=row[1],
            role=TeamRole(row[2]),
            joined_at=row[3],
            agent_key=row[4] if len(row) > 4 else None,
            display_name=row[5] if len(row) > 5 else None,
            frontmatter=row[6] if len(row) > 6 else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "team_id": str(self.team_id),
            "agent_id": self.agent_id,
            "role": self.role.value,
            "joined_at": _isoformat(self.joined_at),
        }
        if self.agent_key:
            data["agent_key"] = self.agent_key
        if self.display_name:
            data["display_name"] = self.display_name
        if self.frontmatter:
            data["frontmatter"] = self.frontmatter
        return data


@dataclass
class TeamTask:
    """team_tasks テーブルの1行

    blocked_by は同じチーム内のタスク ID のみを含む。
    ブロッカーが完了しても blocked_by からは取り除かず、状態の再評価だけを行う。
    """

    team_id: UUID
    subject: str
    task_id: UUID = field(default_factory=uuid4)
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    owner_agent_id: Optional[str] = None
    blocked_by: List[UUID] = field(default_factory=list)
    priority: int = 0
    """優先度（大きいほど重要）"""

    result: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # JOIN で取得する項目
    owner_agent_key: Optional[str] = None
    owner_display_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: tuple) -> "TeamTask":
        """DBの行からインスタンス生成

        カラム順序: id, team_id, subject, description, status, owner_agent_id,
                    blocked_by, priority, result, created_at, updated_at
                    [, owner_agent_key, owner_display_name]
        """
        return cls(
            task_id=_uuid_or_none(row[0]),
            team_id=_uuid_or_none(row[1]),
            subject=row[2],
            description=row[3] or "",
            status=TaskStatus(row[4]),
            owner_agent_id=row[5],
            blocked_by=[_uuid_or_none(b) for b in (row[6] or [])],
            priority=row[7],
            result=row[8],
            created_at=row[9],
            updated_at=row[10],
            owner_agent_key=row[11] if len(row) > 11 else None,
            owner_display_name=row[12] if len(row) > 12 else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": str(self.task_id),
            "team_id": str(self.team_id),
            "subject": self.subject,
            "description": self.description,
            "status": self.status.value,
            "owner_agent_id": self.owner_agent_id,
            "blocked_by": [str(b) for b in self.blocked_by],
            "priority": self.priority,
            "result": self.result,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }
        if self.owner_agent_key:
            data["owner_agent_key"] = self.owner_agent_key
        if self.owner_display_name:
            data["owner_display_name"] = self.owner_display_name
        return data
