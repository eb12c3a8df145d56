"""
Unit tests for the in-memory versioned repository.
"""

import pytest

from service_orchestrator.app.persistence.base import (
    FlowRecord, PolicyRecord, RecordStatus, format_version, version_sort_key
)
from service_orchestrator.app.persistence.memory import InMemoryRepository, create_memory_repositories
from shared.errors import NotFoundError, PolicyError


class TestInMemoryRepository:
    """Test cases for InMemoryRepository."""

    @pytest.fixture
    def repository(self):
        """Create a policy repository."""
        return InMemoryRepository(PolicyRecord, "policy")

    @pytest.fixture
    def content(self):
        """Policy content as submitted by a client."""
        return PolicyRecord(
            name="Age check",
            description="Adults only",
            rule="A person is eligible if their age is at least 18.",
            data_model={"type": "object", "properties": {"age": {"type": "integer"}}},
            tests=[{"name": "adult", "data": {"age": 30}, "expect": True}],
        )

    @pytest.mark.asyncio
    async def test_create_draft(self, repository, content):
        """Test a new lineage starts with a draft."""
        draft = await repository.create_draft(content)

        assert draft.record_id
        assert draft.base_id
        assert draft.record_id != draft.base_id
        assert draft.status == RecordStatus.DRAFT
        assert draft.is_draft
        assert draft.version == ""
        assert draft.created_at is not None

    @pytest.mark.asyncio
    async def test_round_trip(self, repository, content):
        """Test stored content comes back unchanged."""
        draft = await repository.create_draft(content)

        loaded = await repository.load(draft.record_id)

        assert loaded.content() == content.content()
        assert loaded.record_id == draft.record_id

    @pytest.mark.asyncio
    async def test_load_returns_copies(self, repository, content):
        """Test callers cannot mutate stored records."""
        draft = await repository.create_draft(content)

        loaded = await repository.load(draft.record_id)
        loaded.tests.append({"name": "mutated"})

        reloaded = await repository.load(draft.record_id)
        assert len(reloaded.tests) == 1

    @pytest.mark.asyncio
    async def test_load_missing(self, repository):
        """Test loading an unknown id."""
        with pytest.raises(NotFoundError):
            await repository.load("missing")

    @pytest.mark.asyncio
    async def test_update_draft(self, repository, content):
        """Test the draft is overwritten in place."""
        draft = await repository.create_draft(content)

        updated = await repository.update_draft(draft.base_id, PolicyRecord(name="Renamed", rule="new rule"))

        assert updated.record_id == draft.record_id
        assert updated.name == "Renamed"
        assert updated.rule == "new rule"
        assert updated.updated_at >= draft.updated_at

    @pytest.mark.asyncio
    async def test_update_without_draft(self, repository):
        """Test updating a lineage with no draft."""
        with pytest.raises(NotFoundError):
            await repository.update_draft("missing", PolicyRecord(name="x"))

    @pytest.mark.asyncio
    async def test_publish(self, repository, content):
        """Test publishing turns the draft into a version."""
        draft = await repository.create_draft(content)

        published = await repository.publish(draft.base_id, "1.0", "First release")

        assert published.record_id == draft.record_id
        assert published.status == RecordStatus.PUBLISHED
        assert published.version == "v1.0"
        assert published.description == "First release"
        assert published.last_published_at is not None

        versions = await repository.list_versions(draft.base_id)
        assert [v.is_draft for v in versions] == [False]
        assert versions[0].version == "v1.0"

    @pytest.mark.asyncio
    async def test_publish_keeps_description(self, repository, content):
        """Test an empty publish description keeps the draft's."""
        draft = await repository.create_draft(content)

        published = await repository.publish(draft.base_id, "1.0")

        assert published.description == "Adults only"

    @pytest.mark.asyncio
    async def test_publish_without_draft(self, repository, content):
        """Test publishing a lineage with no draft."""
        draft = await repository.create_draft(content)
        await repository.publish(draft.base_id, "1.0")

        with pytest.raises(NotFoundError):
            await repository.publish(draft.base_id, "2.0")

    @pytest.mark.asyncio
    async def test_publish_duplicate_version(self, repository, content):
        """Test a version cannot be published twice in a lineage."""
        draft = await repository.create_draft(content)
        published = await repository.publish(draft.base_id, "1.0")
        await repository.draft_from_version(published.record_id)

        with pytest.raises(PolicyError):
            await repository.publish(draft.base_id, "1.0")

        versions = await repository.list_versions(draft.base_id)
        assert [v.is_draft for v in versions] == [True, False]

    @pytest.mark.asyncio
    async def test_publish_with_content(self, repository, content):
        """Test content given to publish lands in the published version."""
        draft = await repository.create_draft(content)
        changed = PolicyRecord(name="Adult check", rule="Age at least 21.")

        published = await repository.publish(draft.base_id, "1.0", record=changed)

        assert published.name == "Adult check"
        assert published.rule == "Age at least 21."
        assert (await repository.load(draft.record_id)).rule == "Age at least 21."

    @pytest.mark.asyncio
    async def test_rejected_publish_keeps_draft_content(self, repository, content):
        """Test a duplicate version leaves the draft exactly as it was."""
        draft = await repository.create_draft(content)
        published = await repository.publish(draft.base_id, "1.0")
        new_draft = await repository.draft_from_version(published.record_id)

        with pytest.raises(PolicyError):
            await repository.publish(draft.base_id, "1.0", record=PolicyRecord(rule="CHANGED"))

        assert (await repository.load(new_draft.record_id)).rule == content.rule

    @pytest.mark.asyncio
    async def test_draft_from_version(self, repository, content):
        """Test a draft copied from a version shares its lineage and content."""
        draft = await repository.create_draft(content)
        published = await repository.publish(draft.base_id, "1.0")

        new_draft = await repository.draft_from_version(published.record_id)

        assert new_draft.record_id not in (draft.record_id, published.record_id)
        assert new_draft.base_id == published.base_id
        assert new_draft.status == RecordStatus.DRAFT
        assert new_draft.content() == published.content()

    @pytest.mark.asyncio
    async def test_draft_from_version_supersedes_draft(self, repository, content):
        """Test only one draft survives per lineage."""
        draft = await repository.create_draft(content)
        published = await repository.publish(draft.base_id, "1.0")
        first = await repository.draft_from_version(published.record_id)
        await repository.update_draft(draft.base_id, PolicyRecord(name="work in progress"))

        second = await repository.draft_from_version(published.record_id)

        versions = await repository.list_versions(draft.base_id)
        drafts = [v for v in versions if v.is_draft]
        assert [d.record_id for d in drafts] == [second.record_id]
        assert second.name == "Age check"
        with pytest.raises(NotFoundError):
            await repository.load(first.record_id)

    @pytest.mark.asyncio
    async def test_draft_from_missing_version(self, repository):
        """Test creating a draft from an unknown record."""
        with pytest.raises(NotFoundError):
            await repository.draft_from_version("missing")

    @pytest.mark.asyncio
    async def test_published_versions_unchanged_by_draft_updates(self, repository, content):
        """Test editing the new draft leaves the published version alone."""
        draft = await repository.create_draft(content)
        published = await repository.publish(draft.base_id, "1.0")
        await repository.draft_from_version(published.record_id)

        await repository.update_draft(draft.base_id, PolicyRecord(name="Changed", rule="changed"))

        reloaded = await repository.load(published.record_id)
        assert reloaded.name == "Age check"
        assert reloaded.rule == content.rule

    @pytest.mark.asyncio
    async def test_list_versions_lexical_order(self, repository, content):
        """Test versions sort as strings: v10.0 comes before v2.0.

        This is the established ordering; it is not semantic version order.
        """
        draft = await repository.create_draft(content)
        for version in ("2.0", "10.0", "1.0"):
            published = await repository.publish(draft.base_id, version)
            await repository.draft_from_version(published.record_id)

        versions = await repository.list_versions(draft.base_id)

        assert [v.version for v in versions] == ["", "v1.0", "v10.0", "v2.0"]
        assert versions[0].is_draft

    @pytest.mark.asyncio
    async def test_list_all(self, repository, content):
        """Test one summary per lineage."""
        first = await repository.create_draft(content)
        await repository.publish(first.base_id, "1.0")
        published = (await repository.list_versions(first.base_id))[0]
        draft = await repository.draft_from_version(published.record_id)
        second = await repository.create_draft(PolicyRecord(name="Other"))

        summaries = await repository.list_all()

        assert [s.base_id for s in summaries] == [first.base_id, second.base_id]
        assert summaries[0].version_count == 1
        assert summaries[0].has_draft is True
        assert summaries[0].draft_id == draft.record_id
        assert summaries[0].last_published_at is not None
        assert summaries[1].version_count == 0
        assert summaries[1].name == "Other"
        assert summaries[1].to_dict()["hasDraft"] is True

    @pytest.mark.asyncio
    async def test_flow_repository(self):
        """Test flow records carry their definition and layout."""
        policies, flows = create_memory_repositories()
        draft = await flows.create_draft(FlowRecord(
            name="Eligibility",
            flow="flow:\n  start: []\n",
            nodes=[{"id": "n1"}],
            edges=[],
        ))

        loaded = await flows.load(draft.record_id)

        assert isinstance(loaded, FlowRecord)
        assert loaded.flow == "flow:\n  start: []\n"
        assert loaded.nodes == [{"id": "n1"}]
        assert await policies.list_all() == []

    def test_record_to_dict(self, content):
        """Test the wire form uses camelCase keys."""
        data = content.to_dict()

        assert data["id"] == ""
        assert data["baseId"] == ""
        assert data["schema"] == content.data_model
        assert data["draft"] is True
        assert data["lastPublishedAt"] is None

    def test_version_helpers(self):
        """Test version stamping and ordering keys."""
        assert format_version("1.2") == "v1.2"
        draft = PolicyRecord(status=RecordStatus.DRAFT)
        published = PolicyRecord(status=RecordStatus.PUBLISHED, version="v0.1")
        assert sorted([published, draft], key=version_sort_key) == [draft, published]
