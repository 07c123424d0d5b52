# チームタスクストア
# team_tasks テーブルに対する状態遷移とブロッキング依存の維持
"""
チームタスクストア

タスクの状態遷移とブロッキング依存を、1操作 = 1トランザクションで適用する。

方針:
- 完了時の連鎖: 完了したタスクと、それをブロッカーに持つ依存タスクの再評価を
  同じトランザクションで書く。依存タスクは ID 順に FOR UPDATE でロックし、
  ブロッカーの状態はトランザクション内で読み直す（キャッシュしない）
- 兄弟ブロッカーの同時完了は依存タスクの行ロックで直列化される
- 整合性違反（自己ブロック、別チーム、存在しない、循環）は何も書かずに拒否
- 直列化失敗・デッドロックは run_in_transaction がトランザクションごと再実行
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from src.config.directory_config import DirectoryConfig, config as default_config
from src.db.connection import DatabaseConnection, run_in_transaction
from src.errors import CycleDetected, InvalidTransition, NotFoundError, ValidationError
from src.models.team import TaskStatus, TeamTask
from src.teams.task_graph import (
    cascade_after_completion,
    evaluate_status,
    find_blocking_cycle,
    validate_blockers,
)


logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """complete_task() の結果"""

    task: TeamTask
    unblocked: List[TeamTask] = field(default_factory=list)
    """同じトランザクションで blocked から pending に戻ったタスク"""


class TeamTaskStore:
    """チームタスクの作成・状態遷移・ブロッキング依存を管理する

    使用例:
        tasks = TeamTaskStore(db)
        t1 = tasks.create_task(TeamTask(team_id=team.team_id, subject="Collect receipts"))
        t2 = tasks.create_task(TeamTask(
            team_id=team.team_id,
            subject="Issue refund",
            blocked_by=[t1.task_id],
        ))
        # t2.status == TaskStatus.BLOCKED

        result = tasks.complete_task(t1.task_id, result="done")
        # result.unblocked[0].task_id == t2.task_id (status: pending)
    """

    _COLUMNS = """
        t.id, t.team_id, t.subject, t.description, t.status, t.owner_agent_id,
        t.blocked_by, t.priority, t.result, t.created_at, t.updated_at
    """

    _INSERT_SQL = """
        INSERT INTO team_tasks AS t (
            id, team_id, subject, description, status, owner_agent_id,
            blocked_by, priority, result, created_at, updated_at
        ) VALUES (
            %s, %s, %s, %s, %s, %s,
            %s::uuid[], %s, %s, %s, %s
        )
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _SELECT_BY_ID_SQL = """
        SELECT {columns}, a.agent_key, a.display_name
        FROM team_tasks t
        LEFT JOIN agents a ON a.id = t.owner_agent_id
        WHERE t.id = %s
    """.format(columns=_COLUMNS)

    _SELECT_FOR_UPDATE_SQL = """
        SELECT {columns}
        FROM team_tasks t
        WHERE t.id = %s
        FOR UPDATE
    """.format(columns=_COLUMNS)

    _LIST_SQL = """
        SELECT {columns}, a.agent_key, a.display_name
        FROM team_tasks t
        LEFT JOIN agents a ON a.id = t.owner_agent_id
        WHERE t.team_id = %s
          AND (%s::text IS NULL OR t.status = %s)
        ORDER BY {order}
    """

    _ORDERINGS = {
        "priority": "t.priority DESC, t.created_at ASC, t.id",
        "newest": "t.created_at DESC, t.id",
    }

    _SELECT_TEAM_SQL = """
        SELECT id
        FROM agent_teams
        WHERE id = %s
    """

    _SELECT_AGENT_SQL = """
        SELECT id
        FROM agents
        WHERE id = %s
    """

    # ブロッカーは削除されないよう共有ロックで読む
    _SELECT_BLOCKERS_SQL = """
        SELECT id, team_id, status
        FROM team_tasks
        WHERE id = ANY(%s::uuid[])
        FOR SHARE
    """

    _SELECT_BLOCKER_STATUS_SQL = """
        SELECT id, status
        FROM team_tasks
        WHERE id = ANY(%s::uuid[])
    """

    _SELECT_BLOCKED_BY_SQL = """
        SELECT blocked_by
        FROM team_tasks
        WHERE id = %s
    """

    _SELECT_DEPENDENTS_SQL = """
        SELECT {columns}
        FROM team_tasks t
        WHERE t.team_id = %s AND %s = ANY(t.blocked_by)
        ORDER BY t.id
        FOR UPDATE
    """.format(columns=_COLUMNS)

    _UPDATE_BLOCKERS_SQL = """
        UPDATE team_tasks AS t SET
            blocked_by = %s::uuid[],
            status = %s,
            updated_at = %s
        WHERE t.id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_STATUS_SQL = """
        UPDATE team_tasks AS t SET
            status = %s,
            updated_at = %s
        WHERE t.id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_CLAIM_SQL = """
        UPDATE team_tasks AS t SET
            owner_agent_id = %s,
            status = %s,
            updated_at = %s
        WHERE t.id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_COMPLETE_SQL = """
        UPDATE team_tasks AS t SET
            status = %s,
            result = %s,
            updated_at = %s
        WHERE t.id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

    _UPDATE_OWNER_SQL = """
        UPDATE team_tasks AS t SET
            owner_agent_id = %s,
            updated_at = %s
        WHERE t.id = %s
        RETURNING {columns}
    """.format(columns=_COLUMNS)

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

    # === 作成・参照 ===
    def create_task(self, task: TeamTask) -> TeamTask:
        """タスクを作成

        未完了のブロッカーがあれば blocked、なければ pending で作成する。

        Raises:
            ValidationError: subject が空、status が pending 以外、priority が整数でない
            NotFoundError: チームまたは所有エージェントが存在しない
            SelfBlock / UnknownBlocker / CrossTeamBlock: ブロッカー指定が不正
        """
        if not task.subject or not task.subject.strip():
            raise ValidationError("subject は必須です")
        if task.status != TaskStatus.PENDING:
            raise ValidationError(f"新しいタスクは pending で作成します: {task.status.value}")
        if isinstance(task.priority, bool) or not isinstance(task.priority, int):
            raise ValidationError(f"priority は整数である必要があります: {task.priority!r}")

        def _insert(cur) -> TeamTask:
            cur.execute(self._SELECT_TEAM_SQL, (task.team_id,))
            if cur.fetchone() is None:
                raise NotFoundError(f"チームが存在しません: {task.team_id}")
            if task.owner_agent_id is not None:
                self._require_agent(cur, task.owner_agent_id)

            blockers, statuses = self._load_blockers(cur, task.task_id, task.team_id, task.blocked_by)
            status = evaluate_status(TaskStatus.PENDING, statuses.values())
            now = datetime.now()

            cur.execute(
                self._INSERT_SQL,
                (
                    task.task_id,
                    task.team_id,
                    task.subject,
                    task.description,
                    status.value,
                    task.owner_agent_id,
                    blockers,
                    task.priority,
                    task.result,
                    now,
                    now,
                ),
            )
            return TeamTask.from_row(cur.fetchone())

        created = self._transaction(_insert)
        logger.info(
            f"タスク作成完了: task_id={created.task_id}, team_id={created.team_id}, "
            f"status={created.status.value}, blockers={len(created.blocked_by)}"
        )
        return created

    def get_task(self, task_id: UUID) -> Optional[TeamTask]:
        """ID でタスクを取得（所有エージェントの表示名付き）"""
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_ID_SQL, (task_id,))
            row = cur.fetchone()
            return TeamTask.from_row(row) if row else None

    def list_tasks(
        self,
        team_id: UUID,
        order_by: str = "priority",
        status: Optional[TaskStatus] = None,
    ) -> List[TeamTask]:
        """チームのタスク一覧（所有エージェントの表示名付き）

        Args:
            team_id: チーム ID
            order_by: "priority"（優先度の高い順）| "newest"（新しい順）
            status: 状態で絞り込む場合に指定
        """
        order = self._ORDERINGS.get(order_by)
        if order is None:
            raise ValidationError(f"order_by は {'/'.join(self._ORDERINGS)} のいずれかです: {order_by}")

        status_value = status.value if status else None
        sql = self._LIST_SQL.format(columns=self._COLUMNS, order=order)
        with self.db.get_cursor() as cur:
            cur.execute(sql, (team_id, status_value, status_value))
            return [TeamTask.from_row(row) for row in cur.fetchall()]

    # === ブロッキング依存 ===
    def set_blockers(self, task_id: UUID, blocker_ids: Iterable[UUID]) -> TeamTask:
        """ブロッカーを置き換えて状態を再評価する

        完了済みタスクの状態は変更しない。

        Raises:
            NotFoundError: タスクが存在しない
            SelfBlock / UnknownBlocker / CrossTeamBlock: ブロッカー指定が不正
            CycleDetected: ブロッキング関係が循環する
        """
        requested = list(blocker_ids)

        def _update(cur) -> TeamTask:
            task = self._lock_task(cur, task_id)
            blockers, statuses = self._load_blockers(cur, task.task_id, task.team_id, requested)

            cycle = find_blocking_cycle(task.task_id, blockers, self._blocked_by_lookup(cur))
            if cycle:
                raise CycleDetected(
                    f"ブロッキング関係が循環します: {' -> '.join(str(t) for t in cycle)}",
                    path=cycle,
                )

            status = evaluate_status(task.status, statuses.values())
            cur.execute(
                self._UPDATE_BLOCKERS_SQL,
                (blockers, status.value, datetime.now(), task.task_id),
            )
            return TeamTask.from_row(cur.fetchone())

        updated = self._transaction(_update)
        logger.info(
            f"ブロッカー更新完了: task_id={task_id}, blockers={len(updated.blocked_by)}, "
            f"status={updated.status.value}"
        )
        return updated

    def _load_blockers(
        self,
        cur,
        task_id: UUID,
        team_id: UUID,
        blocker_ids: Iterable[UUID],
    ):
        """ブロッカーを読み込んで検証する

        Returns:
            (重複を除いたブロッカー ID, ブロッカー ID → 状態)
        """
        requested = list(blocker_ids)
        if not requested:
            return [], {}

        cur.execute(self._SELECT_BLOCKERS_SQL, (requested,))
        rows = cur.fetchall()
        teams = {row[0]: row[1] for row in rows}
        statuses = {row[0]: TaskStatus(row[2]) for row in rows}

        blockers = validate_blockers(task_id, team_id, requested, teams)
        return blockers, {b: statuses[b] for b in blockers}

    def _blocked_by_lookup(self, cur):
        def blocked_by_of(node_id: UUID) -> List[UUID]:
            cur.execute(self._SELECT_BLOCKED_BY_SQL, (node_id,))
            row = cur.fetchone()
            return list(row[0] or []) if row else []
        return blocked_by_of

    # === 状態遷移 ===
    def claim_task(self, task_id: UUID, agent_id: str) -> TeamTask:
        """pending のタスクを引き受けて in_progress にする

        未割り当て、または agent_id 自身に割り当て済みの場合のみ成功する。

        Raises:
            InvalidTransition: pending 以外のタスク
            ValidationError: 別のエージェントに割り当て済み
            NotFoundError: タスクまたはエージェントが存在しない
        """

        def _claim(cur) -> TeamTask:
            task = self._lock_task(cur, task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidTransition(task_id, task.status.value, TaskStatus.IN_PROGRESS.value)
            if task.owner_agent_id not in (None, agent_id):
                raise ValidationError(
                    f"タスク {task_id} は {task.owner_agent_id} に割り当て済みです"
                )
            self._require_agent(cur, agent_id)

            cur.execute(
                self._UPDATE_CLAIM_SQL,
                (agent_id, TaskStatus.IN_PROGRESS.value, datetime.now(), task_id),
            )
            return TeamTask.from_row(cur.fetchone())

        claimed = self._transaction(_claim)
        logger.info(f"タスク引き受け: task_id={task_id}, agent_id={agent_id}")
        return claimed

    def start_task(self, task_id: UUID) -> TeamTask:
        """pending のタスクを in_progress にする（所有者は変更しない）

        Raises:
            InvalidTransition: pending 以外のタスク
            NotFoundError: タスクが存在しない
        """

        def _start(cur) -> TeamTask:
            task = self._lock_task(cur, task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidTransition(task_id, task.status.value, TaskStatus.IN_PROGRESS.value)
            cur.execute(
                self._UPDATE_STATUS_SQL,
                (TaskStatus.IN_PROGRESS.value, datetime.now(), task_id),
            )
            return TeamTask.from_row(cur.fetchone())

        started = self._transaction(_start)
        logger.info(f"タスク開始: task_id={task_id}")
        return started

    def complete_task(self, task_id: UUID, result: Optional[str] = None) -> CompletionResult:
        """タスクを完了し、依存タスクを同じトランザクションで再評価する

        Args:
            task_id: 完了するタスク
            result: 結果テキスト

        Returns:
            CompletionResult（完了したタスクと、blocked から pending に戻ったタスク）

        Raises:
            InvalidTransition: blocked / completed のタスク
            NotFoundError: タスクが存在しない
        """

        def _complete(cur) -> CompletionResult:
            task = self._lock_task(cur, task_id)
            if task.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                raise InvalidTransition(task_id, task.status.value, TaskStatus.COMPLETED.value)

            now = datetime.now()
            cur.execute(
                self._UPDATE_COMPLETE_SQL,
                (TaskStatus.COMPLETED.value, result, now, task_id),
            )
            completed = TeamTask.from_row(cur.fetchone())

            cur.execute(self._SELECT_DEPENDENTS_SQL, (task.team_id, task_id))
            dependents = [TeamTask.from_row(row) for row in cur.fetchall()]
            if not dependents:
                return CompletionResult(task=completed)

            blocker_ids = sorted({b for d in dependents for b in d.blocked_by}, key=str)
            cur.execute(self._SELECT_BLOCKER_STATUS_SQL, (blocker_ids,))
            statuses: Dict[UUID, TaskStatus] = {
                row[0]: TaskStatus(row[1]) for row in cur.fetchall()
            }

            changes = cascade_after_completion(task_id, dependents, statuses)
            unblocked: List[TeamTask] = []
            for dependent in dependents:
                new_status = changes.get(dependent.task_id)
                if new_status is None:
                    continue
                cur.execute(
                    self._UPDATE_STATUS_SQL,
                    (new_status.value, now, dependent.task_id),
                )
                unblocked.append(TeamTask.from_row(cur.fetchone()))

            return CompletionResult(task=completed, unblocked=unblocked)

        outcome = self._transaction(_complete)
        logger.info(
            f"タスク完了: task_id={task_id}, "
            f"unblocked={[str(t.task_id) for t in outcome.unblocked]}"
        )
        return outcome

    def reassign(self, task_id: UUID, owner_agent_id: Optional[str]) -> TeamTask:
        """所有エージェントを変更する（None で割り当て解除、状態は変更しない）

        Raises:
            NotFoundError: タスクまたはエージェントが存在しない
        """

        def _reassign(cur) -> TeamTask:
            self._lock_task(cur, task_id)
            if owner_agent_id is not None:
                self._require_agent(cur, owner_agent_id)
            cur.execute(self._UPDATE_OWNER_SQL, (owner_agent_id, datetime.now(), task_id))
            return TeamTask.from_row(cur.fetchone())

        updated = self._transaction(_reassign)
        logger.info(f"タスク再割り当て: task_id={task_id}, owner={owner_agent_id}")
        return updated

    # === ヘルパー ===
    def _lock_task(self, cur, task_id: UUID) -> TeamTask:
        cur.execute(self._SELECT_FOR_UPDATE_SQL, (task_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"タスクが存在しません: {task_id}")
        return TeamTask.from_row(row)

    def _require_agent(self, cur, agent_id: str) -> None:
        cur.execute(self._SELECT_AGENT_SQL, (agent_id,))
        if cur.fetchone() is None:
            raise NotFoundError(f"エージェントが存在しません: {agent_id}")
