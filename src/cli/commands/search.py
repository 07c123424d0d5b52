"""
エージェント検索コマンド実装
"""

from typing import Optional

import click

from src.cli.utils.output import echo_json, echo_table, fail


def search_command(directory_group, pass_context):
    """search コマンドを directory グループに追加"""

    @directory_group.command()
    @click.argument('query')
    @click.option('--top-k', type=int, default=None, help='表示する最大件数')
    @click.option('--lexical-weight', type=float, default=None, help='語彙スコアの重み')
    @click.option('--semantic-weight', type=float, default=None, help='意味スコアの重み')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @click.option('--verbose', is_flag=True, help='スコア内訳を表示')
    @pass_context
    def search(ctx, query: str, top_k: Optional[int], lexical_weight: Optional[float],
               semantic_weight: Optional[float], output_format: str, verbose: bool):
        """エージェントをハイブリッド検索する"""
        ctx.initialize()

        weights = {}
        if lexical_weight is not None:
            weights["lexical"] = lexical_weight
        if semantic_weight is not None:
            weights["semantic"] = semantic_weight

        try:
            result = ctx.search.search(query, top_k=top_k, weights=weights or None)
        except Exception as e:
            fail("検索", e)

        if output_format == 'json':
            echo_json(result.to_dict())
            return

        if result.degraded:
            click.echo(f"⚠ 語彙スコアのみで検索しました（{result.degraded_reason}）", err=True)

        if not result.hits:
            click.echo("該当するエージェントはありません。")
            return

        click.echo(f"検索結果 ({result.count}件):\n")
        rows = []
        for rank, hit in enumerate(result.hits, start=1):
            rows.append([
                rank,
                hit.agent.agent_id,
                hit.agent.display_name[:28],
                f"{hit.final_score:.3f}",
                "stale" if hit.embedding_stale else "",
            ])
        echo_table(["#", "ID", "表示名", "スコア", "備考"], rows)

        if verbose:
            for hit in result.hits:
                click.echo("")
                click.echo(f"[{hit.agent.agent_id}]")
                for key, value in hit.score_breakdown.items():
                    click.echo(f"  {key}: {value:.4f}")
