"""
PostgreSQL persistence layer for the Orchestrator Service.
"""

import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

import asyncpg

from shared.logging import get_logger
from shared.errors import NotFoundError, OrchestratorError, PolicyError

from .base import (
    FlowRecord, LineageSummary, PolicyRecord, RecordStatus, RecordT,
    VersionedRepository, format_version
)


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns to Python values and back."""
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog"
    )


class PostgresDatabase:
    """Connection pool shared by the policy and flow repositories."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("orchestrator.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self, schemas: List[str]):
        """Open the pool if needed and create the tables the repositories need."""
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=30,
                    init=_init_connection
                )

            async with self.pool.acquire() as conn:
                for schema in schemas:
                    await conn.execute(schema)

            self.logger.info("PostgreSQL persistence started")

        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise OrchestratorError("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Close the pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    @asynccontextmanager
    async def acquire(self):
        """Borrow a connection for the duration of one repository call."""
        if self.pool is None:
            raise OrchestratorError("POSTGRES_NOT_STARTED", "PostgreSQL persistence has not been started")
        async with self.pool.acquire() as conn:
            yield conn

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (OrchestratorError, asyncpg.PostgresError, OSError):
            return False


class PostgresRepository(VersionedRepository[RecordT]):
    """Draft/publish storage backed by one table per record kind.

    Draft uniqueness per lineage and version uniqueness per lineage are
    enforced by partial unique indexes; published rows are guarded by a
    trigger that rejects any update to them.
    """

    table: ClassVar[str] = ""
    record_type: ClassVar[Type] = PolicyRecord
    # Content columns beyond the common name/description/tests.
    content_columns: ClassVar[Dict[str, str]] = {}
    json_columns: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, database: PostgresDatabase):
        self.database = database
        self.logger = get_logger(f"orchestrator.persistence.postgres.{self.kind}")

    @property
    def columns(self) -> Tuple[str, ...]:
        return ("name", "description", "tests") + tuple(self.content_columns)

    def schema(self) -> str:
        """DDL for this repository's table, indexes and immutability trigger."""
        extra = "".join(f"    {name} {ddl},\n" for name, ddl in self.content_columns.items())
        table = self.table
        return f"""
            CREATE TABLE IF NOT EXISTS {table} (
                record_id VARCHAR(64) PRIMARY KEY,
                base_id VARCHAR(64) NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                version TEXT,
                status VARCHAR(20) NOT NULL DEFAULT 'draft' CHECK (status IN ('draft', 'published')),
                description TEXT NOT NULL DEFAULT '',
                tests JSONB,
            {extra}    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                published_at TIMESTAMP WITH TIME ZONE
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_one_draft
                ON {table}(base_id) WHERE status = 'draft';
            CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_version
                ON {table}(base_id, version) WHERE status = 'published';

            CREATE OR REPLACE FUNCTION {table}_reject_published_update() RETURNS trigger AS $$
            BEGIN
                IF OLD.status = 'published' THEN
                    RAISE EXCEPTION 'published record % is immutable', OLD.record_id;
                END IF;
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;

            DROP TRIGGER IF EXISTS {table}_published_immutable ON {table};
            CREATE TRIGGER {table}_published_immutable
                BEFORE UPDATE ON {table}
                FOR EACH ROW EXECUTE FUNCTION {table}_reject_published_update();
        """

    async def start(self) -> None:
        await self.database.start([self.schema()])

    async def stop(self) -> None:
        await self.database.stop()

    async def health_check(self) -> bool:
        return await self.database.health_check()

    @asynccontextmanager
    async def _connection(self, identifier: str):
        """Acquire a connection, turning driver failures into ``PolicyError``."""
        try:
            async with self.database.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            self.logger.warning("Unique constraint violated", id=identifier, error=str(e))
            raise PolicyError(identifier, f"{self.kind} version already exists") from e
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Database error", id=identifier, error=str(e))
            raise PolicyError(identifier, f"storage failure: {e}") from e

    def _values(self, record: RecordT) -> List[Any]:
        return [getattr(record, column) for column in self.columns]

    def _row_to_record(self, row) -> RecordT:
        """Convert database row to a record."""
        content = {column: row[column] for column in self.columns}
        content["name"] = content["name"] or ""
        content["description"] = content["description"] or ""
        return self.record_type(
            record_id=row["record_id"],
            base_id=row["base_id"],
            version=row["version"] or "",
            status=RecordStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_published_at=row["published_at"],
            **content
        )

    def _insert_sql(self) -> str:
        columns = ", ".join(self.columns)
        placeholders = ", ".join(f"${i}" for i in range(3, len(self.columns) + 3))
        return f"""
            INSERT INTO {self.table} (record_id, base_id, status, {columns})
            VALUES ($1, $2, 'draft', {placeholders})
            RETURNING *
        """

    async def create_draft(self, record: RecordT) -> RecordT:
        record_id = str(uuid.uuid4())
        base_id = str(uuid.uuid4())
        async with self._connection(base_id) as conn:
            row = await conn.fetchrow(self._insert_sql(), record_id, base_id, *self._values(record))

        self.logger.info("Draft created", base_id=base_id, record_id=record_id)
        return self._row_to_record(row)

    def _update_draft_sql(self) -> str:
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(self.columns, start=2))
        return f"""
            UPDATE {self.table} SET {assignments}, updated_at = NOW()
            WHERE base_id = $1 AND status = 'draft'
            RETURNING *
        """

    async def update_draft(self, base_id: str, record: RecordT) -> RecordT:
        async with self._connection(base_id) as conn:
            row = await conn.fetchrow(self._update_draft_sql(), base_id, *self._values(record))

        if row is None:
            raise NotFoundError(f"no draft {self.kind} for lineage {base_id}", details={"baseId": base_id})

        self.logger.info("Draft updated", base_id=base_id, record_id=row["record_id"])
        return self._row_to_record(row)

    async def publish(self, base_id: str, version: str, description: str = "",
                      record: Optional[RecordT] = None) -> RecordT:
        stamped = format_version(version)
        async with self._connection(base_id) as conn:
            # A duplicate version rolls the content update back with it.
            async with conn.transaction():
                row = None
                if record is not None:
                    row = await conn.fetchrow(self._update_draft_sql(), base_id, *self._values(record))
                if record is None or row is not None:
                    row = await conn.fetchrow(f"""
                        UPDATE {self.table} SET
                            status = 'published',
                            version = $2,
                            description = COALESCE(NULLIF($3, ''), description),
                            updated_at = NOW(),
                            published_at = NOW()
                        WHERE base_id = $1 AND status = 'draft'
                        RETURNING *
                    """, base_id, stamped, description or "")

        if row is None:
            raise NotFoundError(f"no draft {self.kind} for lineage {base_id}", details={"baseId": base_id})

        self.logger.info("Version published", base_id=base_id, version=stamped)
        return self._row_to_record(row)

    async def draft_from_version(self, record_id: str) -> RecordT:
        new_id = str(uuid.uuid4())
        async with self._connection(record_id) as conn:
            async with conn.transaction():
                source = await conn.fetchrow(
                    f"SELECT * FROM {self.table} WHERE record_id = $1", record_id
                )
                if source is None:
                    raise NotFoundError(f"{self.kind} {record_id} not found", details={"id": record_id})
                if not source["base_id"]:
                    raise PolicyError(record_id, f"{self.kind} is not part of a lineage")

                source_record = self._row_to_record(source)

                # The previous draft, if any, is superseded.
                await conn.execute(
                    f"DELETE FROM {self.table} WHERE base_id = $1 AND status = 'draft'",
                    source_record.base_id
                )
                row = await conn.fetchrow(
                    self._insert_sql(), new_id, source_record.base_id, *self._values(source_record)
                )

        self.logger.info(
            "Draft created from version",
            base_id=source_record.base_id,
            source_id=record_id,
            version=source_record.version
        )
        return self._row_to_record(row)

    async def load(self, record_id: str) -> RecordT:
        async with self._connection(record_id) as conn:
            row = await conn.fetchrow(f"SELECT * FROM {self.table} WHERE record_id = $1", record_id)

        if row is None:
            raise NotFoundError(f"{self.kind} {record_id} not found", details={"id": record_id})
        return self._row_to_record(row)

    async def list_versions(self, base_id: str) -> List[RecordT]:
        # Versions compare byte-wise, so "v10.0" sorts before "v2.0".
        async with self._connection(base_id) as conn:
            rows = await conn.fetch(f"""
                SELECT * FROM {self.table}
                WHERE base_id = $1
                ORDER BY
                    CASE WHEN status = 'draft' THEN 0 ELSE 1 END,
                    COALESCE(version, '') COLLATE "C"
            """, base_id)

        return [self._row_to_record(row) for row in rows]

    async def list_all(self) -> List[LineageSummary]:
        async with self._connection(self.table) as conn:
            rows = await conn.fetch(f"""
                SELECT
                    base_id,
                    (array_agg(name ORDER BY (status = 'draft') DESC, updated_at DESC))[1] AS current_name,
                    COUNT(*) FILTER (WHERE status = 'published') AS version_count,
                    BOOL_OR(status = 'draft') AS has_draft,
                    MAX(record_id) FILTER (WHERE status = 'draft') AS draft_id,
                    MIN(created_at) AS first_created_at,
                    MAX(updated_at) AS latest_activity_at,
                    MAX(published_at) AS last_published_at
                FROM {self.table}
                GROUP BY base_id
                ORDER BY MIN(created_at)
            """)

        return [
            LineageSummary(
                base_id=row["base_id"],
                name=row["current_name"] or "",
                version_count=row["version_count"],
                has_draft=row["has_draft"],
                draft_id=row["draft_id"],
                first_created_at=row["first_created_at"],
                latest_activity_at=row["latest_activity_at"],
                last_published_at=row["last_published_at"],
            )
            for row in rows
        ]


class PostgresPolicyRepository(PostgresRepository[PolicyRecord]):
    """Policies: rule text and the data model it evaluates."""

    kind = "policy"
    table = "policies"
    record_type = PolicyRecord
    content_columns = {"rule": "TEXT NOT NULL DEFAULT ''", "data_model": "JSONB"}


class PostgresFlowRepository(PostgresRepository[FlowRecord]):
    """Flows: serialised definition and editor layout."""

    kind = "flow"
    table = "flows"
    record_type = FlowRecord
    content_columns = {"flow": "TEXT NOT NULL DEFAULT ''", "nodes": "JSONB", "edges": "JSONB"}


def create_postgres_repositories(dsn: str, min_size: int = 2, max_size: int = 10):
    """Build the policy and flow repositories over one shared pool."""
    database = PostgresDatabase(dsn, min_size=min_size, max_size=max_size)
    return PostgresPolicyRepository(database), PostgresFlowRepository(database)
