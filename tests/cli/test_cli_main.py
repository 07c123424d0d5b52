import json
from datetime import datetime
from unittest.mock import MagicMock
from uuid import uuid4

from click.testing import CliRunner

from src.cli.main import _load_schema_table_names, directory
from src.config.directory_config import DirectoryConfig
from src.errors import EmbeddingUnavailable, ReferentialConflict
from src.models.agent import AgentId, AgentRecord
from src.models.team import TaskStatus, TeamTask
from src.models.trace import Trace
from src.search.hybrid_search import HybridSearch
from src.search.retrieval import CandidateRetriever, SearchCandidate
from src.teams.task_store import CompletionResult


NOW = datetime(2026, 1, 1, 9, 0, 0)


def _agent(agent_id="refund-agent", display_name="Refund Agent", **kwargs) -> AgentRecord:
    return AgentRecord(
        agent_id=AgentId(agent_id),
        display_name=display_name,
        frontmatter=kwargs.pop("frontmatter", "Handles refunds"),
        updated_at=NOW,
        **kwargs,
    )


def _patch_context(monkeypatch, **overrides):
    stores = {
        "agent_store": MagicMock(),
        "link_store": MagicMock(),
        "search": MagicMock(),
        "trace_store": MagicMock(),
        "team_store": MagicMock(),
        "task_store": MagicMock(),
    }
    stores["agent_store"].get.return_value = None
    stores.update(overrides)

    def _init(self):
        self.db = None
        self.config = DirectoryConfig()
        self.embedding_client = None
        for name, value in stores.items():
            setattr(self, name, value)
        self._initialized = True

    monkeypatch.setattr("src.cli.main.CLIContext.initialize", _init, raising=False)
    return stores


def test_agent_list_json_output(monkeypatch):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].list.return_value = [_agent(), _agent("billing-agent", "Billing Agent")]

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "list", "--format", "json", "--status", "all"])
    assert result.exit_code == 0

    payload = json.loads(result.stdout)
    assert [a["id"] for a in payload] == ["refund-agent", "billing-agent"]
    stores["agent_store"].list.assert_called_once_with(status=None)


def test_agent_upsert_direct(monkeypatch):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].upsert.side_effect = lambda record: record

    runner = CliRunner()
    result = runner.invoke(
        directory,
        ["agent", "upsert", "--id", "refund-agent", "--name", "Refund Agent", "--frontmatter", "Handles refunds"],
    )
    assert result.exit_code == 0
    assert "エージェントを保存しました: refund-agent" in result.output

    saved = stores["agent_store"].upsert.call_args.args[0]
    assert saved.agent_key == "refund-agent"
    assert saved.status == "active"


def test_agent_upsert_from_yaml(monkeypatch, tmp_path):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].upsert.side_effect = lambda record: record

    yaml_content = """
    agent_id: refund-agent
    display_name: Refund Agent
    agent_key: refund
    frontmatter:
      expertise: refunds
      languages: [en, ja]
    """
    file_path = tmp_path / "agent.yaml"
    file_path.write_text(yaml_content, encoding="utf-8")

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "upsert", "-f", str(file_path)])
    assert result.exit_code == 0

    saved = stores["agent_store"].upsert.call_args.args[0]
    assert saved.agent_key == "refund"
    assert "expertise: refunds" in saved.frontmatter


def test_agent_upsert_keeps_omitted_fields(monkeypatch):
    """--key / --frontmatter を省略した更新は登録済みの値を引き継ぐ"""
    stores = _patch_context(monkeypatch)
    stores["agent_store"].get.return_value = _agent(agent_key="refund", status="disabled")
    stores["agent_store"].upsert.side_effect = lambda record: record

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "upsert", "--id", "refund-agent", "--name", "Refund Agent v2"])
    assert result.exit_code == 0

    saved = stores["agent_store"].upsert.call_args.args[0]
    assert saved.display_name == "Refund Agent v2"
    assert saved.agent_key == "refund"
    assert saved.frontmatter == "Handles refunds"
    assert saved.status == "disabled"
    stores["agent_store"].get.assert_called_once_with("refund-agent")


def test_agent_upsert_options_override_existing(monkeypatch):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].get.return_value = _agent(agent_key="refund")
    stores["agent_store"].upsert.side_effect = lambda record: record

    runner = CliRunner()
    result = runner.invoke(
        directory,
        ["agent", "upsert", "--id", "refund-agent", "--name", "Refund Agent", "--key", "refunds", "--frontmatter", "Chargebacks"],
    )
    assert result.exit_code == 0

    saved = stores["agent_store"].upsert.call_args.args[0]
    assert saved.agent_key == "refunds"
    assert saved.frontmatter == "Chargebacks"
    assert saved.status == "active"


def test_agent_upsert_missing_name(monkeypatch):
    _patch_context(monkeypatch)

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "upsert", "--id", "refund-agent"])
    assert result.exit_code == 2


def test_agent_upsert_degraded_embedding(monkeypatch):
    stores = _patch_context(monkeypatch)
    stale = _agent(embedding_stale=True)
    stores["agent_store"].upsert.side_effect = EmbeddingUnavailable("timeout", record=stale)

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "upsert", "--id", "refund-agent", "--name", "Refund Agent"])
    assert result.exit_code == 0
    assert "再計算待ち" in result.output


def test_agent_delete_blocked(monkeypatch):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].delete.side_effect = ReferentialConflict(
        "referenced", references={"links": 2}
    )

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "delete", "refund-agent", "--yes"])
    assert result.exit_code == 2
    stores["agent_store"].delete.assert_called_once_with("refund-agent", policy=None)


def test_agent_delete_cascade(monkeypatch):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].delete.return_value = True

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "delete", "refund-agent", "--cascade", "--yes"])
    assert result.exit_code == 0
    stores["agent_store"].delete.assert_called_once_with("refund-agent", policy="cascade")


def test_unexpected_error_exit_code(monkeypatch):
    stores = _patch_context(monkeypatch)
    stores["agent_store"].list.side_effect = RuntimeError("connection reset")

    runner = CliRunner()
    result = runner.invoke(directory, ["agent", "list"])
    assert result.exit_code == 1


def test_search_degraded_json(monkeypatch):
    """エンベディングなしの検索は語彙スコアのみで順位付けされ degraded になる"""
    retriever = MagicMock(spec=CandidateRetriever)
    retriever.fetch.return_value = [
        SearchCandidate(agent=_agent("general-agent", "General Agent"), lexical_score=0.1, semantic_score=None),
        SearchCandidate(agent=_agent(), lexical_score=0.9, semantic_score=None),
    ]
    search = HybridSearch(db=MagicMock(), embedding_client=None, config=DirectoryConfig(), retriever=retriever)
    _patch_context(monkeypatch, search=search)

    runner = CliRunner()
    result = runner.invoke(directory, ["search", "refund agent", "--top-k", "5", "--format", "json"])
    assert result.exit_code == 0

    payload = json.loads(result.stdout)
    assert payload["degraded"] is True
    assert [a["id"] for a in payload["agents"]] == ["refund-agent", "general-agent"]


def test_search_invalid_top_k(monkeypatch):
    search = HybridSearch(db=MagicMock(), config=DirectoryConfig(), retriever=MagicMock(spec=CandidateRetriever))
    _patch_context(monkeypatch, search=search)

    runner = CliRunner()
    result = runner.invoke(directory, ["search", "refund", "--top-k", "0"])
    assert result.exit_code == 2


def test_task_complete_reports_unblocked(monkeypatch):
    stores = _patch_context(monkeypatch)
    team_id = uuid4()
    t1 = TeamTask(team_id=team_id, subject="Collect receipts", status=TaskStatus.COMPLETED)
    t2 = TeamTask(team_id=team_id, subject="Issue refund", blocked_by=[t1.task_id])
    stores["task_store"].complete_task.return_value = CompletionResult(task=t1, unblocked=[t2])

    runner = CliRunner()
    result = runner.invoke(directory, ["task", "complete", str(t1.task_id), "--result", "done"])
    assert result.exit_code == 0
    assert "ブロック解除: Issue refund" in result.output
    stores["task_store"].complete_task.assert_called_once_with(t1.task_id, result="done")


def test_task_list_invalid_uuid(monkeypatch):
    _patch_context(monkeypatch)

    runner = CliRunner()
    result = runner.invoke(directory, ["task", "list", "not-a-uuid"])
    assert result.exit_code == 2


def test_trace_ancestors_json(monkeypatch):
    stores = _patch_context(monkeypatch)
    root = Trace(name="request", agent_id="triage-agent")
    parent = Trace(name="lookup", parent_trace_id=root.trace_id)
    stores["trace_store"].ancestors.return_value = iter([parent, root])

    runner = CliRunner()
    result = runner.invoke(directory, ["trace", "ancestors", str(uuid4()), "--format", "json"])
    assert result.exit_code == 0

    payload = json.loads(result.stdout)
    assert [t["name"] for t in payload] == ["lookup", "request"]
    assert payload[-1]["parent_trace_id"] is None


def test_init_check_only(monkeypatch):
    """接続済みならテーブルの確認だけを行い、環境変数の警告は出さない"""
    db = MagicMock()
    conn = db.get_connection.return_value.__enter__.return_value
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchone.return_value = ("PostgreSQL 16.2 on x86_64",)
    cursor.fetchall.return_value = [(name,) for name in _load_schema_table_names()]
    _patch_context(monkeypatch, db=db)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    runner = CliRunner()
    result = runner.invoke(directory, ["init", "--check-only"])
    assert result.exit_code == 0
    assert "✓ データベースに接続しました (PostgreSQL 16.2)" in result.output
    assert "✓ 必要なテーブルが存在します" in result.output
    assert "DATABASE_URL" not in result.output
    conn.commit.assert_not_called()
