# チームタスクのブロッキンググラフ（純粋ロジック）
"""
タスクのブロッキング関係と状態遷移の判定（DB非依存）

TeamTaskStore はトランザクション内で読み直した状態をこれらの関数に渡し、
返ってきた状態を同じトランザクションで書き戻す。

状態遷移:
    pending → in_progress → completed（終端）
    pending / in_progress → blocked（未完了のブロッカーがある間）
    blocked → pending（ブロッカーがすべて完了したとき）
"""

from typing import Callable, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from src.errors import CrossTeamBlock, SelfBlock, UnknownBlocker
from src.models.team import TaskStatus, TeamTask


def evaluate_status(current: TaskStatus, blocker_statuses: Iterable[TaskStatus]) -> TaskStatus:
    """ブロッカーの状態からタスクの状態を再評価する

    - completed は変更しない
    - 未完了のブロッカーが1つでもあれば blocked
    - ブロッカーがすべて完了していれば blocked は pending に戻し、それ以外はそのまま
    """
    if current == TaskStatus.COMPLETED:
        return current
    if any(status != TaskStatus.COMPLETED for status in blocker_statuses):
        return TaskStatus.BLOCKED
    if current == TaskStatus.BLOCKED:
        return TaskStatus.PENDING
    return current


def validate_blockers(
    task_id: UUID,
    team_id: UUID,
    blocker_ids: Iterable[UUID],
    blocker_teams: Mapping[UUID, UUID],
) -> List[UUID]:
    """ブロッカー指定を検証し、重複を除いたリストを返す

    Args:
        task_id: ブロックされるタスク
        team_id: task_id のチーム
        blocker_ids: 指定されたブロッカー
        blocker_teams: 存在するブロッカーの ID → チーム ID

    Raises:
        SelfBlock: 自分自身を含む
        UnknownBlocker: 存在しないタスクを含む
        CrossTeamBlock: 別チームのタスクを含む
    """
    unique: List[UUID] = []
    for blocker_id in blocker_ids:
        if blocker_id not in unique:
            unique.append(blocker_id)

    if task_id in unique:
        raise SelfBlock(task_id)

    missing = [b for b in unique if b not in blocker_teams]
    if missing:
        raise UnknownBlocker(missing)

    foreign = [b for b in unique if blocker_teams[b] != team_id]
    if foreign:
        raise CrossTeamBlock(task_id, foreign)

    return unique


def find_blocking_cycle(
    task_id: UUID,
    blocker_ids: Iterable[UUID],
    blocked_by_of: Callable[[UUID], Iterable[UUID]],
) -> Optional[List[UUID]]:
    """task_id に blocker_ids を設定したときにできる循環を探す

    ブロッカーから blocked_by を辿って task_id に戻れれば循環。

    Returns:
        循環の経路 [task_id, ..., task_id]、循環しなければ None
    """
    visited = set()
    for start in blocker_ids:
        stack = [(start, [task_id, start])]
        while stack:
            node, path = stack.pop()
            if node == task_id:
                return path
            if node in visited:
                continue
            visited.add(node)
            for next_id in blocked_by_of(node):
                stack.append((next_id, path + [next_id]))
    return None


def cascade_after_completion(
    completed_id: UUID,
    dependents: Iterable[TeamTask],
    blocker_statuses: Mapping[UUID, TaskStatus],
) -> Dict[UUID, TaskStatus]:
    """タスク完了後に直接の依存タスクを再評価する

    Args:
        completed_id: 完了したタスク
        dependents: blocked_by に completed_id を含むタスク
        blocker_statuses: 依存タスクのブロッカーの現在の状態
            （存在しないブロッカーは解決済みとして扱う）

    Returns:
        状態が変わるタスクの ID → 新しい状態
    """
    statuses = dict(blocker_statuses)
    statuses[completed_id] = TaskStatus.COMPLETED

    changes: Dict[UUID, TaskStatus] = {}
    for task in dependents:
        new_status = evaluate_status(
            task.status,
            (statuses.get(b, TaskStatus.COMPLETED) for b in task.blocked_by),
        )
        if new_status != task.status:
            changes[task.task_id] = new_status
    return changes
