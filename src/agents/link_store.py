# エージェントリンクテーブル
# agent_links テーブルに対する CRUD（委譲・監督などの有向関係）

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection, run_in_transaction
from src.errors import NotFoundError, ValidationError
from src.models.agent import LINK_DIRECTIONS, LINK_KINDS, LINK_STATUSES, AgentLink


logger = logging.getLogger(__name__)


class AgentLinkStore:
    """エージェント間の有向リンクを管理する

    リンクはトレースの実行とは独立した関係で、循環（相互監督など）を許容する。
    自己リンクのみ拒否する。

    使用例:
        links = AgentLinkStore(db)
        links.create_link(AgentLink(
            source_agent_id="triage-agent",
            target_agent_id="refund-agent",
            kind="delegation",
        ))
        links.can_delegate("triage-agent", "refund-agent")  # True
    """

    _COLUMNS = """
        id, source_agent_id, target_agent_id, kind, direction,
        description, max_concurrent, metadata, status, team_id,
        created_by, created_at, updated_at
    """

    _INSERT_SQL = """
        INSERT INTO agent_links (
            id, source_agent_id, target_agent_id, kind, direction,
            description, max_concurrent, metadata, status, team_id,
            created_by, created_at, updated_at
        ) VALUES (
            %s, %s, %s, %s, %s,
            %s, %s, %s, %s, %s,
            %s, %s, %s
        )
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _SELECT_BY_ID_SQL = """
        SELECT {columns}
        FROM agent_links
        WHERE id = %s
    """.format(columns=_COLUMNS)

    _SELECT_FROM_SQL = """
        SELECT {columns}
        FROM agent_links
        WHERE source_agent_id = %s
        ORDER BY created_at
    """.format(columns=_COLUMNS)

    _SELECT_TO_SQL = """
        SELECT {columns}
        FROM agent_links
        WHERE target_agent_id = %s
        ORDER BY created_at
    """.format(columns=_COLUMNS)

    _SELECT_AGENTS_SQL = """
        SELECT id
        FROM agents
        WHERE id IN (%s, %s)
    """

    # bidirectional リンクは逆方向の委譲も許可する
    _CAN_DELEGATE_SQL = """
        SELECT 1
        FROM agent_links
        WHERE status = 'active'
          AND kind = 'delegation'
          AND (
            (source_agent_id = %s AND target_agent_id = %s AND direction IN ('outbound', 'bidirectional'))
            OR (source_agent_id = %s AND target_agent_id = %s AND direction IN ('inbound', 'bidirectional'))
          )
        LIMIT 1
    """

    _DELETE_SQL = """
        DELETE FROM agent_links
        WHERE id = %s
    """

    _UPDATABLE_FIELDS = ("direction", "description", "max_concurrent", "metadata", "status")

    def __init__(self, db: DatabaseConnection, config: Optional[DirectoryConfig] = None):
        self.db = db
        self.config = config or default_config

    def create_link(self, link: AgentLink) -> AgentLink:
        """リンクを作成

        Raises:
            ValidationError: 自己リンク、種別・方向・状態が不正、同じ (source, target, kind) が既存
            NotFoundError: source / target のエージェントが存在しない
        """
        self._validate(link)
        if link.source_agent_id == link.target_agent_id:
            raise ValidationError("source と target は異なるエージェントである必要があります")

        now = datetime.now()

        def _insert(cur) -> AgentLink:
            cur.execute(self._SELECT_AGENTS_SQL, (link.source_agent_id, link.target_agent_id))
            found = {row[0] for row in cur.fetchall()}
            missing = [a for a in (link.source_agent_id, link.target_agent_id) if a not in found]
            if missing:
                raise NotFoundError(f"エージェントが存在しません: {', '.join(missing)}")

            cur.execute(
                self._INSERT_SQL,
                (
                    str(link.link_id),
                    link.source_agent_id,
                    link.target_agent_id,
                    link.kind,
                    link.direction,
                    link.description,
                    link.max_concurrent,
                    Json(link.metadata),
                    link.status,
                    str(link.team_id) if link.team_id else None,
                    link.created_by,
                    now,
                    now,
                ),
            )
            return AgentLink.from_row(cur.fetchone())

        try:
            created = run_in_transaction(
                self.db,
                _insert,
                max_retries=self.config.transaction_max_retries,
                backoff_seconds=self.config.transaction_retry_backoff_seconds,
            )
        except pg_errors.UniqueViolation as e:
            raise ValidationError(
                f"同じリンクが既に存在します: {link.source_agent_id} -> {link.target_agent_id} ({link.kind})"
            ) from e

        logger.info(
            f"リンク作成完了: {created.source_agent_id} -> {created.target_agent_id} "
            f"kind={created.kind}, direction={created.direction}"
        )
        return created

    def _validate(self, link: AgentLink) -> None:
        if not link.source_agent_id or not link.target_agent_id:
            raise ValidationError("source_agent_id と target_agent_id は必須です")
        if link.kind not in LINK_KINDS:
            raise ValidationError(f"kind は {'/'.join(LINK_KINDS)} のいずれかです: {link.kind}")
        if link.direction not in LINK_DIRECTIONS:
            raise ValidationError(
                f"direction は {'/'.join(LINK_DIRECTIONS)} のいずれかです: {link.direction}"
            )
        if link.status not in LINK_STATUSES:
            raise ValidationError(f"status は {'/'.join(LINK_STATUSES)} のいずれかです: {link.status}")
        if link.max_concurrent <= 0:
            raise ValidationError(f"max_concurrent は正の整数である必要があります: {link.max_concurrent}")

    def get_link(self, link_id: UUID) -> Optional[AgentLink]:
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_ID_SQL, (str(link_id),))
            row = cur.fetchone()
            return AgentLink.from_row(row) if row else None

    def update_link(self, link_id: UUID, updates: Dict[str, Any]) -> AgentLink:
        """リンクの属性を部分更新

        source / target / kind は変更できない（削除して作り直す）。

        Raises:
            ValidationError: 更新できない項目を含む、または値が不正
            NotFoundError: リンクが存在しない
        """
        unknown = set(updates) - set(self._UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"更新できない項目です: {', '.join(sorted(unknown))}")

        current = self.get_link(link_id)
        if current is None:
            raise NotFoundError(f"リンクが存在しません: {link_id}")
        for key, value in updates.items():
            setattr(current, key, value)
        self._validate(current)

        if not updates:
            return current

        columns = sorted(updates)
        assignments = ", ".join(f"{col} = %s" for col in columns)
        values = [Json(updates[c]) if c == "metadata" else updates[c] for c in columns]

        sql = f"""
            UPDATE agent_links SET {assignments}, updated_at = %s
            WHERE id = %s
            RETURNING {self._COLUMNS}
        """
        with self.db.get_cursor() as cur:
            cur.execute(sql, (*values, datetime.now(), str(link_id)))
            row = cur.fetchone()
            if row is None:
                raise NotFoundError(f"リンクが存在しません: {link_id}")
            return AgentLink.from_row(row)

    def delete_link(self, link_id: UUID) -> bool:
        with self.db.get_cursor() as cur:
            cur.execute(self._DELETE_SQL, (str(link_id),))
            return cur.rowcount > 0

    def list_links(self, agent_id: str, direction: str = "from") -> List[AgentLink]:
        """エージェントのリンク一覧

        Args:
            agent_id: 対象エージェント
            direction: "from"（発リンク）| "to"（着リンク）| "all"
        """
        if direction not in ("from", "to", "all"):
            raise ValidationError(f"direction は from/to/all のいずれかです: {direction}")

        with self.db.get_cursor() as cur:
            links: List[AgentLink] = []
            if direction in ("from", "all"):
                cur.execute(self._SELECT_FROM_SQL, (agent_id,))
                links.extend(AgentLink.from_row(row) for row in cur.fetchall())
            if direction in ("to", "all"):
                cur.execute(self._SELECT_TO_SQL, (agent_id,))
                links.extend(AgentLink.from_row(row) for row in cur.fetchall())
            return links

    def can_delegate(self, source_agent_id: str, target_agent_id: str) -> bool:
        """source から target への委譲が有効なリンクで許可されているか"""
        with self.db.get_cursor() as cur:
            cur.execute(
                self._CAN_DELEGATE_SQL,
                (source_agent_id, target_agent_id, target_agent_id, source_agent_id),
            )
            return cur.fetchone() is not None
