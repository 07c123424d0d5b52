"""
エージェント管理コマンド実装
"""

import sys
from typing import List, Optional

import click

from src.cli.utils.output import EXIT_REJECTED, echo_json, echo_table, fail
from src.cli.utils.yaml_loader import YamlValidationError, load_yaml, validate_agent_record
from src.errors import EmbeddingUnavailable
from src.models.agent import AgentRecord


def agent_command(directory_group, pass_context):
    """agent サブグループを directory グループに追加"""

    @directory_group.group()
    def agent():
        """エージェントレコードを登録・確認・削除する"""
        pass

    @agent.command()
    @click.option('-f', '--file', 'files', multiple=True, type=click.Path(exists=True), help='エージェント定義YAMLファイル')
    @click.option('--id', 'agent_id', help='エージェントID（CLI登録用）')
    @click.option('--name', 'display_name', help='表示名（CLI登録用）')
    @click.option('--key', 'agent_key', help='agent_key（省略時は登録済みの値、新規は ID）')
    @click.option('--frontmatter', help='専門性・能力の要約')
    @click.option('--status', type=click.Choice(['active', 'disabled']), default=None, help='状態')
    @pass_context
    def upsert(ctx, files: List[str], agent_id: Optional[str], display_name: Optional[str],
               agent_key: Optional[str], frontmatter: Optional[str], status: Optional[str]):
        """エージェントを作成または更新する"""
        ctx.initialize()

        try:
            if files and any([agent_id, display_name, agent_key, frontmatter]):
                click.echo("[エラー] --file とCLI直接指定は同時に使用できません", err=True)
                sys.exit(EXIT_REJECTED)

            if files:
                records = []
                for file_path in files:
                    data = load_yaml(file_path)
                    validate_agent_record(data)
                    records.append(data)
            else:
                if not agent_id or not display_name:
                    click.echo("[エラー] CLI登録は --id と --name が必須です", err=True)
                    sys.exit(EXIT_REJECTED)
                records = [{
                    "agent_id": agent_id,
                    "display_name": display_name,
                    "agent_key": agent_key,
                    "frontmatter": frontmatter,
                    "status": status,
                }]
                validate_agent_record(records[0])

            for data in records:
                _upsert_record(ctx, data, status)

        except YamlValidationError as e:
            click.echo(f"[エラー] YAML検証に失敗しました: {e}", err=True)
            sys.exit(EXIT_REJECTED)
        except Exception as e:
            fail("エージェント登録", e)

    @agent.command()
    @click.argument('id_or_key')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @pass_context
    def show(ctx, id_or_key: str, output_format: str):
        """エージェントの詳細を表示する"""
        ctx.initialize()

        try:
            record = ctx.agent_store.resolve(id_or_key)
            if record is None:
                click.echo(f"[エラー] エージェント '{id_or_key}' が見つかりません", err=True)
                sys.exit(EXIT_REJECTED)

            if output_format == 'json':
                data = record.to_dict()
                data["references"] = ctx.agent_store.find_references(record.agent_id)
                data["links"] = [
                    link.to_dict() for link in ctx.link_store.list_links(record.agent_id, direction="all")
                ]
                echo_json(data)
                return

            click.echo(f"ID: {record.agent_id}")
            click.echo(f"  キー: {record.agent_key}")
            click.echo(f"  表示名: {record.display_name}")
            click.echo(f"  状態: {record.status}")
            click.echo(f"  エンベディング: {_embedding_state(record)}")
            if record.frontmatter:
                click.echo(f"  frontmatter: {record.frontmatter[:200]}{'...' if len(record.frontmatter) > 200 else ''}")
            if record.updated_at:
                click.echo(f"  更新日時: {record.updated_at.strftime('%Y-%m-%d %H:%M')}")

        except Exception as e:
            fail("エージェント取得", e)

    @agent.command(name='list')
    @click.option('--status', type=click.Choice(['active', 'disabled', 'all']), default='active', help='ステータスでフィルタ')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @pass_context
    def list_agents(ctx, status: str, output_format: str):
        """登録済みエージェントの一覧を表示する"""
        ctx.initialize()

        try:
            records = ctx.agent_store.list(status=None if status == 'all' else status)

            if output_format == 'json':
                echo_json([r.to_dict() for r in records])
                return

            if not records:
                click.echo("登録済みエージェントはありません。")
                click.echo("\nヒント: directory agent upsert -f <agent.yaml> でエージェントを登録してください")
                return

            click.echo(f"登録済みエージェント ({len(records)}件):\n")
            echo_table(
                ["ID", "表示名", "状態", "エンベディング"],
                [[r.agent_id, r.display_name[:28], r.status, _embedding_state(r)] for r in records],
            )

        except Exception as e:
            fail("エージェント一覧の取得", e)

    @agent.command()
    @click.argument('agent_id')
    @click.option('--cascade', is_flag=True, help='リンク・メンバーシップを削除し、タスクとトレースの参照を外す')
    @click.option('--yes', is_flag=True, help='確認をスキップ')
    @pass_context
    def delete(ctx, agent_id: str, cascade: bool, yes: bool):
        """エージェントを削除する（参照が残る場合は既定で拒否）"""
        ctx.initialize()

        try:
            if not yes and not click.confirm(f"エージェント {agent_id} を削除しますか？"):
                click.echo("削除をキャンセルしました")
                return

            policy = "cascade" if cascade else None
            if not ctx.agent_store.delete(agent_id, policy=policy):
                click.echo(f"[エラー] エージェント '{agent_id}' が見つかりません", err=True)
                sys.exit(EXIT_REJECTED)
            click.echo(f"エージェントを削除しました: {agent_id}")

        except Exception as e:
            references = getattr(e, "references", None)
            if references:
                click.echo("  参照:", err=True)
                for table, count in references.items():
                    click.echo(f"    {table}: {count}", err=True)
            fail("エージェント削除", e)

    @agent.command()
    @click.option('--limit', type=int, default=None, help='処理件数の上限')
    @pass_context
    def backfill(ctx, limit: Optional[int]):
        """エンベディング未計算（stale）のエージェントを再計算する"""
        ctx.initialize()

        try:
            updated = ctx.agent_store.backfill_embeddings(limit=limit)
            click.echo(f"エンベディングを更新しました: {updated} 件")
        except Exception as e:
            fail("エンベディングのバックフィル", e)


def _upsert_record(ctx, data: dict, status_override: Optional[str]) -> None:
    """登録処理を実行

    指定されなかった項目は登録済みレコードの値を引き継ぐ。
    """
    existing = ctx.agent_store.get(data["agent_id"])

    def _field(name: str, default):
        value = data.get(name)
        if value is not None:
            return value
        if existing is not None:
            return getattr(existing, name)
        return default

    record = AgentRecord(
        agent_id=data["agent_id"],
        display_name=data["display_name"],
        frontmatter=_field("frontmatter", ""),
        agent_key=_field("agent_key", None),
        status=status_override or _field("status", "active"),
    )

    try:
        saved = ctx.agent_store.upsert(record)
    except EmbeddingUnavailable as e:
        if e.record is None:
            raise
        saved = e.record
        click.echo(f"  ⚠ エンベディングを計算できませんでした（バックフィル待ち）: {e}", err=True)

    click.echo(f"エージェントを保存しました: {saved.agent_id}")
    click.echo(f"  表示名: {saved.display_name}")
    click.echo(f"  エンベディング: {_embedding_state(saved)}")


def _embedding_state(record: AgentRecord) -> str:
    if record.embedding_stale:
        return "再計算待ち"
    if record.embedding is not None:
        return "最新"
    return "-"
