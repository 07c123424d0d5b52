# チームモジュール
"""
チームモジュール

チーム・メンバーシップと、チーム内タスクのブロッキング依存を管理する。

設計方針:
- ブロッキング関係は同じチーム内に限定し、循環を許さない
- タスク完了と依存タスクの再評価は1トランザクションで適用
- 状態判定（task_graph）は DB から独立した純粋関数
"""

from src.models.team import TaskStatus, Team, TeamMember, TeamRole, TeamStatus, TeamTask
from src.teams.task_graph import (
    cascade_after_completion,
    evaluate_status,
    find_blocking_cycle,
    validate_blockers,
)
from src.teams.task_store import CompletionResult, TeamTaskStore
from src.teams.team_store import TeamStore

__all__ = [
    "CompletionResult",
    "TaskStatus",
    "Team",
    "TeamMember",
    "TeamRole",
    "TeamStatus",
    "TeamStore",
    "TeamTask",
    "TeamTaskStore",
    "cascade_after_completion",
    "evaluate_status",
    "find_blocking_cycle",
    "validate_blockers",
]
