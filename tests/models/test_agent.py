# エージェントモデルのテスト

from datetime import datetime
from uuid import uuid4

from src.models.agent import AgentId, AgentLink, AgentRecord


NOW = datetime(2026, 1, 1, 9, 0, 0)


class TestAgentRecord:
    """AgentRecord のテスト"""

    def test_defaults(self):
        record = AgentRecord(agent_id=AgentId("refund-agent"), display_name="Refund Agent")

        assert record.agent_key == "refund-agent"
        assert record.frontmatter == ""
        assert record.status == "active"
        assert record.embedding is None
        assert record.embedding_stale is False

    def test_none_frontmatter_becomes_empty(self):
        record = AgentRecord(agent_id=AgentId("a"), display_name="A", frontmatter=None)

        assert record.frontmatter == ""

    def test_from_row_parses_vector(self):
        row = ("refund-agent", "refund", "Refund Agent", None, "hash", "[0.5,0.25]", True, "active", NOW, NOW)

        record = AgentRecord.from_row(row)

        assert record.agent_key == "refund"
        assert record.frontmatter == ""
        assert record.embedding == [0.5, 0.25]
        assert record.embedding_stale is True

    def test_to_dict_hides_embedding(self):
        record = AgentRecord(
            agent_id=AgentId("refund-agent"),
            display_name="Refund Agent",
            embedding=[0.1, 0.2],
            created_at=NOW,
        )

        data = record.to_dict()

        assert "embedding" not in data
        assert data["has_embedding"] is True
        assert data["created_at"] == NOW.isoformat()
        assert data["updated_at"] is None

    def test_to_summary(self):
        record = AgentRecord(agent_id=AgentId("refund-agent"), display_name="Refund Agent", frontmatter="Refunds")

        assert record.to_summary() == {
            "id": "refund-agent",
            "agent_key": "refund-agent",
            "display_name": "Refund Agent",
            "frontmatter": "Refunds",
        }


class TestAgentLink:
    """AgentLink のテスト"""

    def test_defaults(self):
        link = AgentLink(source_agent_id=AgentId("a"), target_agent_id=AgentId("b"))

        assert link.kind == "delegation"
        assert link.direction == "outbound"
        assert link.max_concurrent == 3
        assert link.metadata == {}

    def test_from_row_and_to_dict(self):
        link_id, team_id = uuid4(), uuid4()
        row = (
            str(link_id), "a", "b", "supervision", "bidirectional",
            None, 5, None, "active", str(team_id),
            None, NOW, NOW,
        )

        link = AgentLink.from_row(row)
        data = link.to_dict()

        assert link.link_id == link_id
        assert link.team_id == team_id
        assert link.description == ""
        assert link.metadata == {}
        assert data["id"] == str(link_id)
        assert data["team_id"] == str(team_id)
        assert data["kind"] == "supervision"
