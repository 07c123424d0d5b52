"""
トレース確認コマンド実装
"""

import click

from src.cli.utils.output import echo_json, echo_table, fail, parse_uuid


def trace_command(directory_group, pass_context):
    """trace サブグループを directory グループに追加"""

    @directory_group.group()
    def trace():
        """トレースの親子関係を確認する"""
        pass

    @trace.command()
    @click.argument('trace_id')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @pass_context
    def ancestors(ctx, trace_id: str, output_format: str):
        """トレースの祖先を親からルートまで表示する"""
        ctx.initialize()

        try:
            chain = list(ctx.trace_store.ancestors(parse_uuid(trace_id)))
        except Exception as e:
            fail("祖先トレースの取得", e)

        if output_format == 'json':
            echo_json([t.to_dict() for t in chain])
            return

        if not chain:
            click.echo("ルートトレースです（祖先はありません）。")
            return

        rows = [
            [depth, str(t.trace_id), t.name or "-", t.agent_id or "-"]
            for depth, t in enumerate(chain, start=1)
        ]
        echo_table(["深さ", "ID", "名前", "エージェント"], rows)
