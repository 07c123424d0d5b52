# ブロッキンググラフの純粋ロジックのテスト
"""
task_graph の単体テスト

テスト観点:
- evaluate_status: 未完了ブロッカー → blocked、解消 → pending、completed は不変
- validate_blockers: 自己ブロック、存在しないブロッカー、別チーム、重複除去
- find_blocking_cycle: 直接・間接の循環
- cascade_after_completion: 兄弟ブロッカー、存在しないブロッカー
"""

from uuid import uuid4

import pytest

from src.errors import CrossTeamBlock, SelfBlock, UnknownBlocker
from src.models.team import TaskStatus, TeamTask
from src.teams.task_graph import (
    cascade_after_completion,
    evaluate_status,
    find_blocking_cycle,
    validate_blockers,
)


TEAM = uuid4()
OTHER_TEAM = uuid4()


class TestEvaluateStatus:
    """evaluate_status() のテスト"""

    @pytest.mark.parametrize("current", [TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED])
    def test_open_blocker_blocks(self, current):
        assert evaluate_status(current, [TaskStatus.COMPLETED, TaskStatus.PENDING]) == TaskStatus.BLOCKED

    def test_resolved_blockers_return_to_pending(self):
        assert evaluate_status(TaskStatus.BLOCKED, [TaskStatus.COMPLETED]) == TaskStatus.PENDING

    @pytest.mark.parametrize("current", [TaskStatus.PENDING, TaskStatus.IN_PROGRESS])
    def test_unblocked_task_keeps_status(self, current):
        assert evaluate_status(current, []) == current

    def test_completed_is_terminal(self):
        assert evaluate_status(TaskStatus.COMPLETED, [TaskStatus.PENDING]) == TaskStatus.COMPLETED


class TestValidateBlockers:
    """validate_blockers() のテスト"""

    def test_deduplicates_in_order(self):
        task, b1, b2 = uuid4(), uuid4(), uuid4()

        result = validate_blockers(task, TEAM, [b1, b2, b1], {b1: TEAM, b2: TEAM})

        assert result == [b1, b2]

    def test_self_block(self):
        task = uuid4()

        with pytest.raises(SelfBlock):
            validate_blockers(task, TEAM, [task], {task: TEAM})

    def test_unknown_blocker(self):
        task, known, missing = uuid4(), uuid4(), uuid4()

        with pytest.raises(UnknownBlocker) as exc_info:
            validate_blockers(task, TEAM, [known, missing], {known: TEAM})

        assert exc_info.value.blocker_ids == [missing]

    def test_cross_team_blocker(self):
        task, foreign = uuid4(), uuid4()

        with pytest.raises(CrossTeamBlock) as exc_info:
            validate_blockers(task, TEAM, [foreign], {foreign: OTHER_TEAM})

        assert exc_info.value.blocker_ids == [foreign]

    def test_empty(self):
        assert validate_blockers(uuid4(), TEAM, [], {}) == []


class TestFindBlockingCycle:
    """find_blocking_cycle() のテスト"""

    def test_direct_cycle(self):
        """t1 が t2 にブロックされているとき、t2 を t1 でブロックすると循環"""
        t1, t2 = uuid4(), uuid4()
        graph = {t1: [t2], t2: []}

        path = find_blocking_cycle(t2, [t1], lambda n: graph.get(n, []))

        assert path == [t2, t1, t2]

    def test_indirect_cycle(self):
        t1, t2, t3 = uuid4(), uuid4(), uuid4()
        graph = {t1: [], t2: [t1], t3: [t2]}

        path = find_blocking_cycle(t1, [t3], lambda n: graph.get(n, []))

        assert path == [t1, t3, t2, t1]

    def test_diamond_is_not_a_cycle(self):
        t1, t2, t3, t4 = uuid4(), uuid4(), uuid4(), uuid4()
        graph = {t2: [t1], t3: [t1], t1: []}

        assert find_blocking_cycle(t4, [t2, t3], lambda n: graph.get(n, [])) is None


class TestCascadeAfterCompletion:
    """cascade_after_completion() のテスト"""

    def _task(self, status, blocked_by):
        return TeamTask(team_id=TEAM, subject="dependent", status=status, blocked_by=blocked_by)

    def test_single_blocker_unblocks(self):
        """T1 の完了で T2 (blocked_by=[T1]) が pending に戻る"""
        t1 = uuid4()
        t2 = self._task(TaskStatus.BLOCKED, [t1])

        changes = cascade_after_completion(t1, [t2], {t1: TaskStatus.IN_PROGRESS})

        assert changes == {t2.task_id: TaskStatus.PENDING}

    def test_sibling_blocker_still_open(self):
        t1, t3 = uuid4(), uuid4()
        t2 = self._task(TaskStatus.BLOCKED, [t1, t3])

        changes = cascade_after_completion(t1, [t2], {t1: TaskStatus.COMPLETED, t3: TaskStatus.PENDING})

        assert changes == {}

    def test_missing_blocker_counts_as_resolved(self):
        t1, deleted = uuid4(), uuid4()
        t2 = self._task(TaskStatus.BLOCKED, [t1, deleted])

        changes = cascade_after_completion(t1, [t2], {})

        assert changes == {t2.task_id: TaskStatus.PENDING}

    def test_completed_dependent_is_untouched(self):
        t1 = uuid4()
        done = self._task(TaskStatus.COMPLETED, [t1])

        assert cascade_after_completion(t1, [done], {}) == {}
