#!/usr/bin/env python3
from __future__ import annotations
"""
エージェントディレクトリ CLI メインエントリーポイント

エージェントレコードの登録・検索、チームタスクの完了、トレースの確認を
Python コードを書かずに行うための CLI インターフェース。
"""

import logging
import os
import re
import sys
from typing import Optional

import click
from dotenv import load_dotenv

from src.agents.agent_store import AgentStore
from src.agents.link_store import AgentLinkStore
from src.cli.utils.output import EXIT_UNEXPECTED
from src.config.directory_config import DirectoryConfig
from src.db.connection import DatabaseConnection
from src.embedding.azure_client import AzureEmbeddingClient, AzureEmbeddingError
from src.search.hybrid_search import HybridSearch
from src.teams.task_store import TeamTaskStore
from src.teams.team_store import TeamStore
from src.tracing.trace_store import TraceStore

# コマンドモジュールインポート
from src.cli.commands.agent import agent_command
from src.cli.commands.search import search_command
from src.cli.commands.task import task_command
from src.cli.commands.trace import trace_command


logger = logging.getLogger(__name__)


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.db: Optional[DatabaseConnection] = None
        self.config: Optional[DirectoryConfig] = None
        self.embedding_client: Optional[AzureEmbeddingClient] = None
        self.agent_store: Optional[AgentStore] = None
        self.link_store: Optional[AgentLinkStore] = None
        self.search: Optional[HybridSearch] = None
        self.trace_store: Optional[TraceStore] = None
        self.team_store: Optional[TeamStore] = None
        self.task_store: Optional[TeamTaskStore] = None
        self._initialized = False

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        try:
            self.db = DatabaseConnection()
            self.config = DirectoryConfig()
            self.config.validate()

            try:
                self.embedding_client = AzureEmbeddingClient(config=self.config)
            except AzureEmbeddingError as e:
                # エンベディングなしでも語彙検索と書き込みは使える
                click.echo(f"⚠ エンベディングを使用できません（語彙のみで動作します）: {e}", err=True)
                self.embedding_client = None

            self.agent_store = AgentStore(self.db, self.embedding_client, self.config)
            self.link_store = AgentLinkStore(self.db, self.config)
            self.search = HybridSearch(self.db, self.embedding_client, self.config)
            self.agent_store.add_invalidation_listener(self.search.invalidate)
            self.trace_store = TraceStore(self.db, self.config)
            self.team_store = TeamStore(self.db, self.config)
            self.task_store = TeamTaskStore(self.db, self.config)

            self._initialized = True

        except Exception as e:
            click.echo(f"[初期化エラー] システムの初期化に失敗しました: {e}", err=True)
            sys.exit(EXIT_UNEXPECTED)

    def close(self):
        if self.agent_store is not None:
            self.agent_store.close()
        if self.db is not None:
            self.db.close()


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version="1.0.0", prog_name="directory")
@click.option('--verbose', '-v', is_flag=True, help='詳細ログを表示')
@click.pass_context
def directory(click_ctx: click.Context, verbose: bool):
    """
    エージェントディレクトリ CLI

    エージェントの登録・ハイブリッド検索、チームタスクの完了、
    トレースの確認をターミナルから行えます。
    """
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cli_ctx = click_ctx.ensure_object(CLIContext)
    click_ctx.call_on_close(cli_ctx.close)


@directory.command()
@click.option('--check-only', is_flag=True, help='接続確認のみ（変更なし）')
@pass_context
def init(ctx: CLIContext, check_only: bool):
    """スキーマを適用し、システムが使える状態にする"""
    click.echo("システムを初期化中...")

    try:
        ctx.initialize()

        with ctx.db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT version()")
                version = cur.fetchone()[0]
                click.echo(f"✓ データベースに接続しました ({' '.join(version.split()[:2])})")

        table_names = _load_schema_table_names()
        with ctx.db.get_connection() as conn:
            existing_tables = _fetch_existing_tables(conn)

        missing_tables = [t for t in table_names if t not in existing_tables]
        if missing_tables:
            click.echo(f"⚠ 必要なテーブルが不足しています: {', '.join(missing_tables)}", err=True)
        else:
            click.echo("✓ 必要なテーブルが存在します")

        if check_only:
            click.echo("\nチェックのみ完了しました。")
            return

        if missing_tables:
            # スキーマは IF NOT EXISTS で書かれているので再適用できる
            with ctx.db.get_connection() as conn:
                _apply_schema(conn)
            click.echo("✓ スキーマを適用しました")

        with ctx.db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                result = cur.fetchone()
                if result:
                    click.echo(f"✓ pgvector 拡張が有効です ({result[0]})")
                else:
                    click.echo("⚠ pgvector 拡張が見つかりません", err=True)

        if ctx.embedding_client is not None and ctx.embedding_client.is_available():
            click.echo("✓ Azure OpenAI Embedding に接続できます")
        else:
            click.echo("⚠ Azure OpenAI Embedding に接続できません（検索は語彙のみになります）", err=True)

        click.echo("\nシステムは使用可能です。")

    except Exception as e:
        click.echo(f"[エラー] 初期化に失敗しました: {e}", err=True)
        sys.exit(EXIT_UNEXPECTED)


def _schema_path() -> str:
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "../db/schema.sql"))


def _load_schema_table_names() -> list[str]:
    with open(_schema_path(), "r", encoding="utf-8") as f:
        sql = f.read()
    return re.findall(r"CREATE TABLE IF NOT EXISTS\s+([a-zA-Z0-9_]+)", sql)


def _fetch_existing_tables(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
        )
        return {row[0] for row in cur.fetchall()}


def _apply_schema(conn) -> None:
    with open(_schema_path(), "r", encoding="utf-8") as f:
        sql = f.read()
    with conn.cursor() as cur:
        cur.execute(sql)
    conn.commit()


# 各コマンドを追加
agent_command(directory, pass_context)
search_command(directory, pass_context)
task_command(directory, pass_context)
trace_command(directory, pass_context)


if __name__ == '__main__':
    directory()
