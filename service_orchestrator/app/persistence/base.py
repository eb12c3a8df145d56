"""
Versioned record storage contract for the Orchestrator Service.

Policies and flows share one lifecycle. Every logical policy or flow is a
*lineage* identified by ``base_id``. A lineage holds at most one mutable
draft and any number of immutable published versions. Backends must
guarantee both properties; callers rely on them without re-checking.
"""

import abc
import copy
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Generic, List, Optional, Tuple, TypeVar

from ..engine.models import JSONValue


class RecordStatus(str, Enum):
    """Lifecycle status of a versioned record."""
    DRAFT = "draft"
    PUBLISHED = "published"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_WIRE_NAMES = {"record_id": "id", "data_model": "schema"}


def _wire_name(name: str) -> str:
    if name in _WIRE_NAMES:
        return _WIRE_NAMES[name]
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def format_version(version: str) -> str:
    """Stamp a published version the way it is stored: ``"v" + version``."""
    return f"v{version}"


@dataclass
class VersionedRecord:
    """Fields common to every draft or published record."""
    record_id: str = ""
    base_id: str = ""
    name: str = ""
    version: str = ""
    status: RecordStatus = RecordStatus.DRAFT
    description: str = ""
    tests: JSONValue = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_published_at: Optional[datetime] = None

    # Fields copied by update_draft and draft_from_version.
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("name", "description", "tests")

    @property
    def is_draft(self) -> bool:
        return self.status == RecordStatus.DRAFT

    def content(self) -> dict:
        """Deep copy of the lineage content carried by this record."""
        return {name: copy.deepcopy(getattr(self, name)) for name in self.CONTENT_FIELDS}

    def with_content(self, source: "VersionedRecord") -> "VersionedRecord":
        """Return a copy of this record holding ``source``'s content."""
        return replace(self, **source.content())

    def to_dict(self) -> dict:
        """Serialise with the camelCase keys used on the wire."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[_wire_name(f.name)] = value
        data["draft"] = self.is_draft
        return data


@dataclass
class PolicyRecord(VersionedRecord):
    """A policy: rule text plus the schema of the data it evaluates.

    ``data`` is bound per invocation and never persisted.
    """
    rule: str = ""
    data_model: JSONValue = None
    data: JSONValue = None

    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("name", "description", "tests", "rule", "data_model")

    def bind(self, data: JSONValue) -> "PolicyRecord":
        """Return a copy of this policy carrying its own copy of ``data``."""
        return replace(self, data=copy.deepcopy(data))


@dataclass
class FlowRecord(VersionedRecord):
    """A flow: serialised definition plus the editor layout it was drawn with."""
    flow: str = ""
    nodes: JSONValue = None
    edges: JSONValue = None

    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("name", "description", "tests", "flow", "nodes", "edges")


@dataclass
class LineageSummary:
    """One row per lineage for listings."""
    base_id: str
    name: str = ""
    version_count: int = 0
    has_draft: bool = False
    draft_id: Optional[str] = None
    first_created_at: Optional[datetime] = None
    latest_activity_at: Optional[datetime] = None
    last_published_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "baseId": self.base_id,
            "name": self.name,
            "versionCount": self.version_count,
            "hasDraft": self.has_draft,
            "draftId": self.draft_id,
            "createdAt": self.first_created_at.isoformat() if self.first_created_at else None,
            "updatedAt": self.latest_activity_at.isoformat() if self.latest_activity_at else None,
            "lastPublishedAt": self.last_published_at.isoformat() if self.last_published_at else None,
        }


RecordT = TypeVar("RecordT", bound=VersionedRecord)


class VersionedRepository(abc.ABC, Generic[RecordT]):
    """Draft/publish storage for one kind of record.

    Every method acquires whatever connection it needs and releases it
    before returning.
    """

    kind: ClassVar[str] = "record"

    @abc.abstractmethod
    async def create_draft(self, record: RecordT) -> RecordT:
        """Start a new lineage with ``record``'s content as its draft."""

    @abc.abstractmethod
    async def update_draft(self, base_id: str, record: RecordT) -> RecordT:
        """Overwrite the lineage's draft content. Raises ``NotFoundError`` without a draft."""

    @abc.abstractmethod
    async def publish(self, base_id: str, version: str, description: str = "",
                      record: Optional[RecordT] = None) -> RecordT:
        """Turn the lineage's draft into published version ``"v" + version``.

        When ``record`` is given its content replaces the draft's in the same
        operation, so a rejected publish leaves the draft untouched.

        Raises ``NotFoundError`` without a draft and ``PolicyError`` when the
        version already exists in the lineage.
        """

    @abc.abstractmethod
    async def draft_from_version(self, record_id: str) -> RecordT:
        """Create a fresh draft copied from ``record_id``, superseding any draft."""

    @abc.abstractmethod
    async def load(self, record_id: str) -> RecordT:
        """Load one record. Raises ``NotFoundError`` if it does not exist."""

    @abc.abstractmethod
    async def list_versions(self, base_id: str) -> List[RecordT]:
        """Draft first, then published versions in lexical version order."""

    @abc.abstractmethod
    async def list_all(self) -> List[LineageSummary]:
        """Summarise every lineage."""

    async def start(self) -> None:
        """Acquire backend resources."""

    async def stop(self) -> None:
        """Release backend resources."""

    async def health_check(self) -> bool:
        return True


def version_sort_key(record: VersionedRecord) -> Tuple[int, bytes]:
    """Draft first, then versions compared byte-wise (``"v10.0" < "v2.0"``)."""
    return (0 if record.is_draft else 1, (record.version or "").encode("utf-8"))
