# TeamStore のテスト
"""
TeamStore の単体テスト

テスト観点:
- create_team: lead のメンバーシップを同じトランザクションで作成
- add_member / remove_member: 重複、lead は外せない
- set_lead: 降格 → 昇格 → lead_agent_id 更新の順序
- list_teams: lead の agent_key 付き

注意: DBモック使用（実DB接続不要）
"""

from datetime import datetime
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from psycopg2 import errors as pg_errors

from src.errors import NotFoundError, ValidationError
from src.models.team import Team, TeamMember, TeamRole, TeamStatus
from src.teams.team_store import TeamStore


NOW = datetime(2026, 1, 1, 9, 0, 0)


def _make_team_row(team_id, lead="triage-agent", status="active", lead_key=None):
    row = (team_id, "Refunds", lead, "", status, {}, "ops", NOW, NOW)
    if lead_key is not None:
        row += (lead_key,)
    return row


def _executed_sql(cursor: MagicMock):
    return [c.args[0] for c in cursor.execute.call_args_list]


@pytest.fixture
def mock_cursor() -> MagicMock:
    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=None)
    cursor.rowcount = 1
    return cursor


@pytest.fixture
def mock_db(mock_cursor: MagicMock) -> MagicMock:
    db = MagicMock()
    db.get_cursor = MagicMock(return_value=mock_cursor)
    return db


@pytest.fixture
def teams(mock_db) -> TeamStore:
    return TeamStore(mock_db)


class TestCreateTeam:
    """create_team() のテスト"""

    def test_creates_lead_membership(self, teams, mock_cursor):
        # Arrange
        team = Team(name="Refunds", lead_agent_id="triage-agent", created_by="ops")
        mock_cursor.fetchone.side_effect = [("triage-agent",), _make_team_row(team.team_id)]

        # Act
        created = teams.create_team(team)

        # Assert
        assert created.team_id == team.team_id
        member_sql, member_params = mock_cursor.execute.call_args.args
        assert "INSERT INTO agent_team_members" in member_sql
        assert member_params[:3] == (team.team_id, "triage-agent", "lead")

    @pytest.mark.parametrize(
        "overrides",
        [{"name": " "}, {"lead_agent_id": ""}, {"created_by": ""}],
    )
    def test_invalid_input(self, teams, mock_db, overrides):
        values = {"name": "Refunds", "lead_agent_id": "triage-agent", "created_by": "ops"}
        values.update(overrides)

        with pytest.raises(ValidationError):
            teams.create_team(Team(**values))

        mock_db.get_cursor.assert_not_called()

    def test_unknown_lead(self, teams, mock_cursor):
        mock_cursor.fetchone.return_value = None

        with pytest.raises(NotFoundError):
            teams.create_team(Team(name="Refunds", lead_agent_id="ghost", created_by="ops"))


class TestMembers:
    """add_member / remove_member / list_members のテスト"""

    def test_add_member(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchone.side_effect = [
            _make_team_row(team_id),
            ("refund-agent",),
            (team_id, "refund-agent", "member", NOW),
        ]

        member = teams.add_member(team_id, "refund-agent")

        assert isinstance(member, TeamMember)
        assert member.role == TeamRole.MEMBER

    def test_add_existing_member(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchone.side_effect = [_make_team_row(team_id), ("refund-agent",)]
        mock_cursor.execute.side_effect = [None, None, pg_errors.UniqueViolation("duplicate key")]

        with pytest.raises(ValidationError, match="既に"):
            teams.add_member(team_id, "refund-agent")

    def test_add_member_to_missing_team(self, teams, mock_cursor):
        mock_cursor.fetchone.return_value = None

        with pytest.raises(NotFoundError, match="チーム"):
            teams.add_member(uuid4(), "refund-agent")

    def test_remove_member(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchone.return_value = (team_id, "refund-agent", "member", NOW)

        assert teams.remove_member(team_id, "refund-agent") is True

    def test_remove_lead_is_refused(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchone.return_value = (team_id, "triage-agent", "lead", NOW)

        with pytest.raises(ValidationError):
            teams.remove_member(team_id, "triage-agent")

        assert not any("DELETE" in sql for sql in _executed_sql(mock_cursor))

    def test_remove_non_member(self, teams, mock_cursor):
        mock_cursor.fetchone.return_value = None

        assert teams.remove_member(uuid4(), "refund-agent") is False

    def test_list_members(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchall.return_value = [
            (team_id, "triage-agent", "lead", NOW, "triage", "Triage", "Routes requests"),
            (team_id, "refund-agent", "member", NOW, "refund", "Refund Agent", "Handles refunds"),
        ]

        members = teams.list_members(team_id)

        assert [m.role for m in members] == [TeamRole.LEAD, TeamRole.MEMBER]
        assert members[1].to_dict()["display_name"] == "Refund Agent"


class TestSetLead:
    """set_lead() のテスト"""

    def test_demotes_before_promoting(self, teams, mock_cursor):
        """旧 lead の降格を先に行い、新 lead を追加して lead_agent_id を更新する"""
        # Arrange
        team_id = uuid4()
        mock_cursor.fetchone.side_effect = [
            _make_team_row(team_id, lead="triage-agent"),
            ("refund-agent",),
            None,
            _make_team_row(team_id, lead="refund-agent", lead_key="refund"),
        ]

        # Act
        team = teams.set_lead(team_id, "refund-agent")

        # Assert
        calls = mock_cursor.execute.call_args_list
        assert calls[2].args[1] == ("member", team_id, "triage-agent")
        assert "INSERT INTO agent_team_members" in calls[4].args[0]
        assert calls[4].args[1][:3] == (team_id, "refund-agent", "lead")
        assert calls[5].args[1][0] == "refund-agent"
        assert team.lead_agent_id == "refund-agent"
        assert team.lead_agent_key == "refund"

    def test_promotes_existing_member(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchone.side_effect = [
            _make_team_row(team_id, lead="triage-agent"),
            ("refund-agent",),
            (team_id, "refund-agent", "member", NOW),
            _make_team_row(team_id, lead="refund-agent"),
        ]

        teams.set_lead(team_id, "refund-agent")

        calls = mock_cursor.execute.call_args_list
        assert calls[4].args[1] == ("lead", team_id, "refund-agent")

    def test_same_lead_is_noop(self, teams, mock_cursor):
        team_id = uuid4()
        mock_cursor.fetchone.side_effect = [
            _make_team_row(team_id, lead="triage-agent"),
            _make_team_row(team_id, lead="triage-agent"),
        ]

        teams.set_lead(team_id, "triage-agent")

        assert not any("UPDATE" in sql for sql in _executed_sql(mock_cursor)[1:])


class TestQueries:
    """list_teams / get_team_for_agent / archive / delete のテスト"""

    def test_list_teams_with_lead_key(self, teams, mock_cursor):
        mock_cursor.fetchall.return_value = [_make_team_row(uuid4(), lead_key="triage")]

        result = teams.list_teams(TeamStatus.ACTIVE)

        assert mock_cursor.execute.call_args.args[1] == ("active", "active")
        assert result[0].to_dict()["lead_agent_key"] == "triage"

    def test_get_team_for_agent(self, teams, mock_cursor):
        mock_cursor.fetchall.return_value = [_make_team_row(uuid4())]

        assert len(teams.get_team_for_agent("refund-agent")) == 1

    def test_archive_team(self, teams, mock_cursor):
        assert teams.archive_team(uuid4()) is True
        assert mock_cursor.execute.call_args.args[1][0] == "archived"

    def test_delete_missing_team(self, teams, mock_cursor):
        mock_cursor.rowcount = 0

        assert teams.delete_team(uuid4()) is False
