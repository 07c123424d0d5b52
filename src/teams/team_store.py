# チームストア
# agent_teams / agent_team_members テーブルに対する CRUD

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection, run_in_transaction
from src.errors import NotFoundError, ValidationError
from src.models.team import Team, TeamMember, TeamRole, TeamStatus


logger = logging.getLogger(__name__)


class TeamStore:
    """チームとメンバーシップを管理する

    チームには常にちょうど1人の lead がいて、agent_teams.lead_agent_id と一致する。
    lead の変更は set_lead() で、降格と昇格を同じトランザクションで行う。

    使用例:
        teams = TeamStore(db)
        team = teams.create_team(Team(
            name="Refunds",
            lead_agent_id="triage-agent",
            created_by="ops",
        ))
        teams.add_member(team.team_id, "refund-agent")
    """

    _COLUMNS = """
        t.id, t.name, t.lead_agent_id, t.description, t.status, t.settings,
        t.created_by, t.created_at, t.updated_at
    """

    _INSERT_TEAM_SQL = """
        INSERT INTO agent_teams AS t (
            id, name, lead_agent_id, description, status, settings,
            created_by, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _INSERT_MEMBER_SQL = """
        INSERT INTO agent_team_members (team_id, agent_id, role, joined_at)
        VALUES (%s, %s, %s, %s)
        RETURNING team_id, agent_id, role, joined_at
    """

    _SELECT_BY_ID_SQL = """
        SELECT {columns}, a.agent_key
        FROM agent_teams t
        LEFT JOIN agents a ON a.id = t.lead_agent_id
        WHERE t.id = %s
    """.format(columns=_COLUMNS)

    _SELECT_FOR_UPDATE_SQL = """
        SELECT {columns}
        FROM agent_teams t
        WHERE t.id = %s
        FOR UPDATE
    """.format(columns=_COLUMNS)

    _LIST_SQL = """
        SELECT {columns}, a.agent_key
        FROM agent_teams t
        LEFT JOIN agents a ON a.id = t.lead_agent_id
        WHERE (%s::text IS NULL OR t.status = %s)
        ORDER BY t.created_at DESC, t.id
    """.format(columns=_COLUMNS)

    _SELECT_FOR_AGENT_SQL = """
        SELECT {columns}, a.agent_key
        FROM agent_teams t
        JOIN agent_team_members m ON m.team_id = t.id
        LEFT JOIN agents a ON a.id = t.lead_agent_id
        WHERE m.agent_id = %s
        ORDER BY t.created_at DESC, t.id
    """.format(columns=_COLUMNS)

    _UPDATE_STATUS_SQL = """
        UPDATE agent_teams SET status = %s, updated_at = %s
        WHERE id = %s
    """

    _DELETE_TEAM_SQL = """
        DELETE FROM agent_teams
        WHERE id = %s
    """

    _SELECT_MEMBER_SQL = """
        SELECT team_id, agent_id, role, joined_at
        FROM agent_team_members
        WHERE team_id = %s AND agent_id = %s
    """

    _LIST_MEMBERS_SQL = """
        SELECT m.team_id, m.agent_id, m.role, m.joined_at,
               a.agent_key, a.display_name, a.frontmatter
        FROM agent_team_members m
        JOIN agents a ON a.id = m.agent_id
        WHERE m.team_id = %s
        ORDER BY (m.role = 'lead') DESC, m.joined_at, m.agent_id
    """

    _DELETE_MEMBER_SQL = """
        DELETE FROM agent_team_members
        WHERE team_id = %s AND agent_id = %s
    """

    _UPDATE_ROLE_SQL = """
        UPDATE agent_team_members SET role = %s
        WHERE team_id = %s AND agent_id = %s
    """

    _UPDATE_LEAD_SQL = """
        UPDATE agent_teams SET lead_agent_id = %s, updated_at = %s
        WHERE id = %s
    """

    _SELECT_AGENT_SQL = """
        SELECT id
        FROM agents
        WHERE id = %s
    """

    def __init__(self, db: DatabaseConnection, config: Optional[DirectoryConfig] = None):
        self.db = db
        self.config = config or default_config

    def _transaction(self, fn):
        return run_in_transaction(
            self.db,
            fn,
            max_retries=self.config.transaction_max_retries,
            backoff_seconds=self.config.transaction_retry_backoff_seconds,
        )

    # === チーム ===
    def create_team(self, team: Team) -> Team:
        """チームと lead のメンバーシップを作成

        Raises:
            ValidationError: name / lead_agent_id / created_by が空
            NotFoundError: lead のエージェントが存在しない
        """
        if not team.name or not team.name.strip():
            raise ValidationError("name は必須です")
        if not team.lead_agent_id:
            raise ValidationError("lead_agent_id は必須です")
        if not team.created_by:
            raise ValidationError("created_by は必須です")

        def _insert(cur) -> Team:
            self._require_agent(cur, team.lead_agent_id)
            now = datetime.now()
            cur.execute(
                self._INSERT_TEAM_SQL,
                (
                    team.team_id,
                    team.name,
                    team.lead_agent_id,
                    team.description,
                    team.status.value,
                    Json(team.settings),
                    team.created_by,
                    now,
                    now,
                ),
            )
            created = Team.from_row(cur.fetchone())
            cur.execute(
                self._INSERT_MEMBER_SQL,
                (created.team_id, team.lead_agent_id, TeamRole.LEAD.value, now),
            )
            return created

        created = self._transaction(_insert)
        logger.info(f"チーム作成完了: team_id={created.team_id}, lead={created.lead_agent_id}")
        return created

    def get_team(self, team_id: UUID) -> Optional[Team]:
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_ID_SQL, (team_id,))
            row = cur.fetchone()
            return Team.from_row(row) if row else None

    def list_teams(self, status: Optional[TeamStatus] = None) -> List[Team]:
        """チーム一覧（lead の agent_key 付き、新しい順）"""
        status_value = status.value if status else None
        with self.db.get_cursor() as cur:
            cur.execute(self._LIST_SQL, (status_value, status_value))
            return [Team.from_row(row) for row in cur.fetchall()]

    def get_team_for_agent(self, agent_id: str) -> List[Team]:
        """エージェントが所属するチーム一覧"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_FOR_AGENT_SQL, (agent_id,))
            return [Team.from_row(row) for row in cur.fetchall()]

    def archive_team(self, team_id: UUID) -> bool:
        with self.db.get_cursor() as cur:
            cur.execute(
                self._UPDATE_STATUS_SQL,
                (TeamStatus.ARCHIVED.value, datetime.now(), team_id),
            )
            archived = cur.rowcount > 0
        if archived:
            logger.info(f"チームをアーカイブ: team_id={team_id}")
        return archived

    def delete_team(self, team_id: UUID) -> bool:
        """チームを削除（メンバーシップとタスクは外部キーで連鎖削除）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._DELETE_TEAM_SQL, (team_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info(f"チーム削除完了: team_id={team_id}")
        return deleted

    # === メンバー ===
    def add_member(self, team_id: UUID, agent_id: str) -> TeamMember:
        """member としてエージェントを追加（lead の変更は set_lead を使う）

        Raises:
            NotFoundError: チームまたはエージェントが存在しない
            ValidationError: 既にメンバー
        """

        def _insert(cur) -> TeamMember:
            self._lock_team(cur, team_id)
            self._require_agent(cur, agent_id)
            cur.execute(
                self._INSERT_MEMBER_SQL,
                (team_id, agent_id, TeamRole.MEMBER.value, datetime.now()),
            )
            return TeamMember.from_row(cur.fetchone())

        try:
            member = self._transaction(_insert)
        except pg_errors.UniqueViolation as e:
            raise ValidationError(f"エージェント {agent_id} は既にチーム {team_id} のメンバーです") from e

        logger.info(f"メンバー追加: team_id={team_id}, agent_id={agent_id}")
        return member

    def remove_member(self, team_id: UUID, agent_id: str) -> bool:
        """メンバーを外す

        Raises:
            ValidationError: lead は外せない（先に set_lead で交代する）
        """

        def _delete(cur) -> bool:
            cur.execute(self._SELECT_MEMBER_SQL, (team_id, agent_id))
            row = cur.fetchone()
            if row is None:
                return False
            if TeamRole(row[2]) == TeamRole.LEAD:
                raise ValidationError(
                    f"エージェント {agent_id} はチーム {team_id} の lead のため外せません"
                )
            cur.execute(self._DELETE_MEMBER_SQL, (team_id, agent_id))
            return cur.rowcount > 0

        removed = self._transaction(_delete)
        if removed:
            logger.info(f"メンバー削除: team_id={team_id}, agent_id={agent_id}")
        return removed

    def list_members(self, team_id: UUID) -> List[TeamMember]:
        """メンバー一覧（lead が先頭、表示名と frontmatter 付き）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._LIST_MEMBERS_SQL, (team_id,))
            return [TeamMember.from_row(row) for row in cur.fetchall()]

    def set_lead(self, team_id: UUID, agent_id: str) -> Team:
        """lead を交代する

        旧 lead を member に降格し、agent_id を lead に昇格（未所属なら追加）して
        agent_teams.lead_agent_id を更新する。すべて1トランザクション。

        Raises:
            NotFoundError: チームまたはエージェントが存在しない
        """

        def _swap(cur) -> None:
            team = self._lock_team(cur, team_id)
            if team.lead_agent_id == agent_id:
                return
            self._require_agent(cur, agent_id)
            now = datetime.now()

            # 1チーム1 lead の一意インデックスがあるので降格を先に行う
            cur.execute(self._UPDATE_ROLE_SQL, (TeamRole.MEMBER.value, team_id, team.lead_agent_id))
            cur.execute(self._SELECT_MEMBER_SQL, (team_id, agent_id))
            if cur.fetchone() is None:
                cur.execute(self._INSERT_MEMBER_SQL, (team_id, agent_id, TeamRole.LEAD.value, now))
            else:
                cur.execute(self._UPDATE_ROLE_SQL, (TeamRole.LEAD.value, team_id, agent_id))
            cur.execute(self._UPDATE_LEAD_SQL, (agent_id, now, team_id))

        self._transaction(_swap)
        logger.info(f"lead 交代: team_id={team_id}, lead={agent_id}")
        return self.get_team(team_id)

    # === ヘルパー ===
    def _lock_team(self, cur, team_id: UUID) -> Team:
        cur.execute(self._SELECT_FOR_UPDATE_SQL, (team_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"チームが存在しません: {team_id}")
        return Team.from_row(row)

    def _require_agent(self, cur, agent_id: str) -> None:
        cur.execute(self._SELECT_AGENT_SQL, (agent_id,))
        if cur.fetchone() is None:
            raise NotFoundError(f"エージェントが存在しません: {agent_id}")
