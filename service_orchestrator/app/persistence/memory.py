"""
In-memory versioned repository for local runs and tests.
"""

import asyncio
import copy
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Type

from shared.logging import get_logger
from shared.errors import NotFoundError, PolicyError

from .base import (
    FlowRecord, LineageSummary, PolicyRecord, RecordStatus, RecordT,
    VersionedRepository, format_version, utcnow, version_sort_key
)


class InMemoryRepository(VersionedRepository[RecordT]):
    """Keeps every lineage in a dict guarded by a single lock."""

    def __init__(self, record_type: Type[RecordT], kind: str):
        self.record_type = record_type
        self.kind = kind
        self.logger = get_logger(f"orchestrator.persistence.memory.{kind}")
        self._records: Dict[str, RecordT] = {}
        self._lock = asyncio.Lock()

    def _draft_for(self, base_id: str) -> Optional[RecordT]:
        for record in self._records.values():
            if record.base_id == base_id and record.is_draft:
                return record
        return None

    def _lineage(self, base_id: str) -> List[RecordT]:
        return [r for r in self._records.values() if r.base_id == base_id]

    async def create_draft(self, record: RecordT) -> RecordT:
        async with self._lock:
            now = utcnow()
            draft = self.record_type(
                record_id=str(uuid.uuid4()),
                base_id=str(uuid.uuid4()),
                status=RecordStatus.DRAFT,
                created_at=now,
                updated_at=now,
                **record.content()
            )
            self._records[draft.record_id] = draft

        self.logger.info("Draft created", base_id=draft.base_id, record_id=draft.record_id)
        return copy.deepcopy(draft)

    async def update_draft(self, base_id: str, record: RecordT) -> RecordT:
        async with self._lock:
            draft = self._draft_for(base_id)
            if draft is None:
                raise NotFoundError(f"no draft {self.kind} for lineage {base_id}", details={"baseId": base_id})

            updated = replace(draft, updated_at=utcnow(), **record.content())
            self._records[updated.record_id] = updated

        self.logger.info("Draft updated", base_id=base_id, record_id=updated.record_id)
        return copy.deepcopy(updated)

    async def publish(self, base_id: str, version: str, description: str = "",
                      record: Optional[RecordT] = None) -> RecordT:
        async with self._lock:
            draft = self._draft_for(base_id)
            if draft is None:
                raise NotFoundError(f"no draft {self.kind} for lineage {base_id}", details={"baseId": base_id})

            stamped = format_version(version)
            if any(not r.is_draft and r.version == stamped for r in self._lineage(base_id)):
                raise PolicyError(base_id, f"version {stamped} already exists")

            if record is not None:
                draft = draft.with_content(record)

            now = utcnow()
            published = replace(
                draft,
                status=RecordStatus.PUBLISHED,
                version=stamped,
                description=description or draft.description,
                updated_at=now,
                last_published_at=now,
            )
            self._records[published.record_id] = published

        self.logger.info("Version published", base_id=base_id, version=stamped)
        return copy.deepcopy(published)

    async def draft_from_version(self, record_id: str) -> RecordT:
        async with self._lock:
            source = self._records.get(record_id)
            if source is None:
                raise NotFoundError(f"{self.kind} {record_id} not found", details={"id": record_id})
            if not source.base_id:
                raise PolicyError(record_id, f"{self.kind} is not part of a lineage")

            previous = self._draft_for(source.base_id)
            if previous is not None:
                del self._records[previous.record_id]

            now = utcnow()
            draft = self.record_type(
                record_id=str(uuid.uuid4()),
                base_id=source.base_id,
                status=RecordStatus.DRAFT,
                created_at=now,
                updated_at=now,
                **source.content()
            )
            self._records[draft.record_id] = draft

        self.logger.info(
            "Draft created from version",
            base_id=draft.base_id,
            source_id=record_id,
            version=source.version,
            superseded=previous.record_id if previous else None
        )
        return copy.deepcopy(draft)

    async def load(self, record_id: str) -> RecordT:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"{self.kind} {record_id} not found", details={"id": record_id})
        return copy.deepcopy(record)

    async def list_versions(self, base_id: str) -> List[RecordT]:
        return [copy.deepcopy(r) for r in sorted(self._lineage(base_id), key=version_sort_key)]

    async def list_all(self) -> List[LineageSummary]:
        lineages: Dict[str, List[RecordT]] = {}
        for record in self._records.values():
            lineages.setdefault(record.base_id, []).append(record)

        summaries = []
        for base_id, records in lineages.items():
            draft = next((r for r in records if r.is_draft), None)
            published = [r for r in records if not r.is_draft]
            current = draft or max(records, key=lambda r: r.updated_at)
            summaries.append(LineageSummary(
                base_id=base_id,
                name=current.name,
                version_count=len(published),
                has_draft=draft is not None,
                draft_id=draft.record_id if draft else None,
                first_created_at=min(r.created_at for r in records),
                latest_activity_at=max(r.updated_at for r in records),
                last_published_at=max((r.last_published_at for r in published), default=None),
            ))

        summaries.sort(key=lambda s: s.first_created_at)
        return summaries


def create_memory_repositories():
    """Build the in-memory policy and flow repositories."""
    return (
        InMemoryRepository(PolicyRecord, "policy"),
        InMemoryRepository(FlowRecord, "flow"),
    )
