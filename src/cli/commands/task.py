"""
チームタスクコマンド実装
"""

from typing import Optional

import click

from src.cli.utils.output import echo_json, echo_table, fail, parse_uuid
from src.models.team import TaskStatus


def task_command(directory_group, pass_context):
    """task サブグループを directory グループに追加"""

    @directory_group.group()
    def task():
        """チームタスクを確認・完了する"""
        pass

    @task.command(name='list')
    @click.argument('team_id')
    @click.option('--status', type=click.Choice([s.value for s in TaskStatus]), default=None, help='状態でフィルタ')
    @click.option('--order', 'order_by', type=click.Choice(['priority', 'newest']), default='priority', help='並び順')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @pass_context
    def list_tasks(ctx, team_id: str, status: Optional[str], order_by: str, output_format: str):
        """チームのタスク一覧を表示する"""
        ctx.initialize()

        try:
            tasks = ctx.task_store.list_tasks(
                parse_uuid(team_id),
                order_by=order_by,
                status=TaskStatus(status) if status else None,
            )
        except Exception as e:
            fail("タスク一覧の取得", e)

        if output_format == 'json':
            echo_json([t.to_dict() for t in tasks])
            return

        if not tasks:
            click.echo("タスクはありません。")
            return

        rows = []
        for t in tasks:
            owner = t.owner_display_name or t.owner_agent_id or "-"
            rows.append([
                str(t.task_id)[:8],
                t.subject[:32],
                t.status.value,
                owner,
                t.priority,
                len(t.blocked_by),
            ])
        echo_table(["ID", "件名", "状態", "担当", "優先度", "ブロッカー"], rows)

    @task.command()
    @click.argument('task_id')
    @click.option('--result', 'result_text', default=None, help='結果テキスト')
    @pass_context
    def complete(ctx, task_id: str, result_text: Optional[str]):
        """タスクを完了し、依存タスクのブロックを解除する"""
        ctx.initialize()

        try:
            outcome = ctx.task_store.complete_task(parse_uuid(task_id), result=result_text)
        except Exception as e:
            fail("タスク完了", e)

        click.echo(f"タスクを完了しました: {outcome.task.subject} ({outcome.task.task_id})")
        for unblocked in outcome.unblocked:
            click.echo(f"  → ブロック解除: {unblocked.subject} ({unblocked.task_id})")

