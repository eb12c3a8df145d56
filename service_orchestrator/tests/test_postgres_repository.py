"""
Unit tests for the PostgreSQL repositories.
"""

import pytest
import asyncpg
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from service_orchestrator.app.persistence.base import FlowRecord, PolicyRecord, RecordStatus
from service_orchestrator.app.persistence.postgres import (
    PostgresFlowRepository, PostgresPolicyRepository, create_postgres_repositories
)
from shared.errors import NotFoundError, PolicyError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeDatabase:
    """Stands in for PostgresDatabase, handing out one mocked connection."""

    def __init__(self):
        self.conn = MagicMock()
        self.conn.fetchrow = AsyncMock()
        self.conn.fetch = AsyncMock()
        self.conn.execute = AsyncMock()
        self.conn.transaction = MagicMock(side_effect=self._transaction)
        self.health_check = AsyncMock(return_value=True)

    @asynccontextmanager
    async def _transaction(self):
        yield

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def policy_row(**overrides):
    row = {
        "record_id": "rec-1",
        "base_id": "base-1",
        "name": "Age check",
        "version": None,
        "status": "draft",
        "description": "Adults only",
        "tests": [],
        "rule": "A person is eligible if their age is at least 18.",
        "data_model": {"type": "object"},
        "created_at": NOW,
        "updated_at": NOW,
        "published_at": None,
    }
    row.update(overrides)
    return row


class TestPostgresRepository:
    """Test cases for PostgresPolicyRepository and PostgresFlowRepository."""

    @pytest.fixture
    def database(self):
        """Mocked database."""
        return FakeDatabase()

    @pytest.fixture
    def repository(self, database):
        """Create a policy repository over the mocked database."""
        return PostgresPolicyRepository(database)

    def test_schema(self, repository):
        """Test the DDL enforces one draft and unique versions per lineage."""
        schema = repository.schema()

        assert "CREATE TABLE IF NOT EXISTS policies" in schema
        assert "rule TEXT" in schema
        assert "data_model JSONB" in schema
        assert "ON policies(base_id) WHERE status = 'draft'" in schema
        assert "ON policies(base_id, version) WHERE status = 'published'" in schema
        assert "BEFORE UPDATE ON policies" in schema

    def test_flow_schema(self, database):
        """Test flows get their own table and columns."""
        schema = PostgresFlowRepository(database).schema()

        assert "CREATE TABLE IF NOT EXISTS flows" in schema
        assert "nodes JSONB" in schema
        assert "edges JSONB" in schema

    def test_create_repositories_share_database(self):
        """Test both repositories use one pool."""
        policies, flows = create_postgres_repositories("postgres://localhost/test")

        assert policies.database is flows.database
        assert policies.database.pool is None

    @pytest.mark.asyncio
    async def test_create_draft(self, repository, database):
        """Test creating a draft inserts a new lineage."""
        database.conn.fetchrow.return_value = policy_row()

        record = await repository.create_draft(PolicyRecord(
            name="Age check", description="Adults only", tests=[],
            rule="A person is eligible if their age is at least 18.", data_model={"type": "object"}
        ))

        assert isinstance(record, PolicyRecord)
        assert record.record_id == "rec-1"
        assert record.status == RecordStatus.DRAFT
        assert record.version == ""
        assert record.data_model == {"type": "object"}

        args = database.conn.fetchrow.call_args.args
        assert "INSERT INTO policies" in args[0]
        assert args[3:] == ("Age check", "Adults only", [], "A person is eligible if their age is at least 18.",
                            {"type": "object"})

    @pytest.mark.asyncio
    async def test_update_draft_without_draft(self, repository, database):
        """Test updating a lineage with no draft."""
        database.conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await repository.update_draft("base-1", PolicyRecord(name="x"))

    @pytest.mark.asyncio
    async def test_publish(self, repository, database):
        """Test publishing stamps the version."""
        database.conn.fetchrow.return_value = policy_row(
            status="published", version="v1.0", published_at=NOW
        )

        record = await repository.publish("base-1", "1.0", "First release")

        assert record.status == RecordStatus.PUBLISHED
        assert record.last_published_at == NOW
        args = database.conn.fetchrow.call_args.args
        assert args[1:] == ("base-1", "v1.0", "First release")

    @pytest.mark.asyncio
    async def test_publish_duplicate_version(self, repository, database):
        """Test a unique violation becomes a policy error."""
        database.conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(PolicyError):
            await repository.publish("base-1", "1.0")

    @pytest.mark.asyncio
    async def test_publish_with_content(self, repository, database):
        """Test the content update and the publish share one transaction."""
        database.conn.fetchrow.side_effect = [
            policy_row(rule="Age at least 21."),
            policy_row(rule="Age at least 21.", status="published", version="v1.0", published_at=NOW),
        ]

        record = await repository.publish("base-1", "1.0", record=PolicyRecord(rule="Age at least 21."))

        assert record.rule == "Age at least 21."
        assert record.version == "v1.0"
        database.conn.transaction.assert_called_once()
        update, publish = database.conn.fetchrow.call_args_list
        assert "rule = $5" in update.args[0]
        assert "Age at least 21." in update.args
        assert publish.args[1:] == ("base-1", "v1.0", "")

    @pytest.mark.asyncio
    async def test_publish_with_content_without_draft(self, repository, database):
        """Test no publish is attempted when there is no draft to update."""
        database.conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await repository.publish("base-1", "1.0", record=PolicyRecord(rule="x"))

        assert database.conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_publish_without_draft(self, repository, database):
        """Test publishing a lineage with no draft."""
        database.conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await repository.publish("base-1", "1.0")

    @pytest.mark.asyncio
    async def test_draft_from_version(self, repository, database):
        """Test the old draft is removed and the version copied."""
        source = policy_row(record_id="rec-1", status="published", version="v1.0", published_at=NOW)
        database.conn.fetchrow.side_effect = [source, policy_row(record_id="rec-2")]

        record = await repository.draft_from_version("rec-1")

        assert record.record_id == "rec-2"
        assert record.base_id == "base-1"
        delete_sql, base_id = database.conn.execute.call_args.args
        assert "DELETE FROM policies" in delete_sql
        assert base_id == "base-1"
        insert_args = database.conn.fetchrow.call_args.args
        assert insert_args[2] == "base-1"
        assert insert_args[3] == "Age check"

    @pytest.mark.asyncio
    async def test_draft_from_missing_version(self, repository, database):
        """Test creating a draft from an unknown record."""
        database.conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await repository.draft_from_version("missing")

        database.conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_load_not_found(self, repository, database):
        """Test loading an unknown record."""
        database.conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await repository.load("missing")

    @pytest.mark.asyncio
    async def test_database_error(self, repository, database):
        """Test driver errors are reported as policy errors."""
        database.conn.fetchrow.side_effect = OSError("connection reset")

        with pytest.raises(PolicyError):
            await repository.load("rec-1")

    @pytest.mark.asyncio
    async def test_list_versions(self, repository, database):
        """Test rows come back in the database's order."""
        database.conn.fetch.return_value = [
            policy_row(record_id="rec-3"),
            policy_row(record_id="rec-1", status="published", version="v10.0"),
            policy_row(record_id="rec-2", status="published", version="v2.0"),
        ]

        records = await repository.list_versions("base-1")

        assert [r.version for r in records] == ["", "v10.0", "v2.0"]
        sql = database.conn.fetch.call_args.args[0]
        assert 'COLLATE "C"' in sql

    @pytest.mark.asyncio
    async def test_list_all(self, repository, database):
        """Test lineage summaries."""
        database.conn.fetch.return_value = [{
            "base_id": "base-1",
            "current_name": "Age check",
            "version_count": 2,
            "has_draft": True,
            "draft_id": "rec-3",
            "first_created_at": NOW,
            "latest_activity_at": NOW,
            "last_published_at": NOW,
        }]

        summaries = await repository.list_all()

        assert summaries[0].base_id == "base-1"
        assert summaries[0].version_count == 2
        assert summaries[0].draft_id == "rec-3"

    @pytest.mark.asyncio
    async def test_flow_record_mapping(self, database):
        """Test flow rows map onto flow records."""
        repository = PostgresFlowRepository(database)
        database.conn.fetchrow.return_value = {
            "record_id": "flow-1",
            "base_id": "base-9",
            "name": "Eligibility",
            "version": "v1.0",
            "status": "published",
            "description": None,
            "tests": None,
            "flow": "flow:\n  start: []\n",
            "nodes": [{"id": "n1"}],
            "edges": [],
            "created_at": NOW,
            "updated_at": NOW,
            "published_at": NOW,
        }

        record = await repository.load("flow-1")

        assert isinstance(record, FlowRecord)
        assert record.flow == "flow:\n  start: []\n"
        assert record.description == ""
        assert record.nodes == [{"id": "n1"}]

    @pytest.mark.asyncio
    async def test_health_check(self, repository, database):
        """Test health is delegated to the database."""
        assert await repository.health_check() is True
        database.health_check.assert_awaited_once()
