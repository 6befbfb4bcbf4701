from unittest.mock import MagicMock

import pytest

from ledger_migration.exceptions import DestinationUniqueViolation
from ledger_migration.loaders.destination import DestinationStore
from ledger_migration.loaders.entity_writer import EntityWriter, RelationRef
from ledger_migration.models.report import OutcomeStatus
from ledger_migration.models.schema import EntityType


@pytest.fixture
def writer(store):
    return EntityWriter(store)


def storyteller(writer, external_id, name="Ana"):
    return writer.upsert(EntityType.STORYTELLER, external_id, {"full_name": name})


class TestUpsert:
    def test_created_then_skipped(self, writer, store):
        first = storyteller(writer, "rec123")
        second = storyteller(writer, "rec123", name="Ana Renamed")

        assert first.status == OutcomeStatus.CREATED
        assert second.status == OutcomeStatus.SKIPPED_EXISTING
        assert second.destination_id == first.destination_id
        rows = store.find_many("storytellers", {"airtable_record_id": "rec123"})
        assert len(rows) == 1
        assert rows[0]["full_name"] == "Ana"

    def test_concurrent_insert_is_reported_as_skipped(self):
        store = MagicMock(spec=DestinationStore)
        store.find_one.side_effect = [None, {"id": "other-writer"}]
        store.insert.side_effect = DestinationUniqueViolation("duplicate key", code="23505")

        outcome = storyteller(EntityWriter(store), "rec123")

        assert outcome.status == OutcomeStatus.SKIPPED_EXISTING
        assert outcome.destination_id == "other-writer"

    def test_unique_violation_without_row_fails(self):
        store = MagicMock(spec=DestinationStore)
        store.find_one.return_value = None
        store.insert.side_effect = DestinationUniqueViolation("duplicate key on slug", code="23505")

        outcome = storyteller(EntityWriter(store), "rec123")

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason.startswith("DestinationUniqueViolation:")

    def test_validation_failure(self, writer, store):
        outcome = writer.upsert(EntityType.STORYTELLER, "rec1", {"full_name": "   "})

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason == "DestinationValidationError: full_name is required"
        assert store.count("storytellers") == 0


class TestLocks:
    def test_locks_released_after_writes(self, writer):
        for i in range(5):
            storyteller(writer, f"rec{i}")
        storyteller(writer, "rec0")

        assert writer._locks == {}

    def test_lock_released_when_store_raises(self):
        store = MagicMock(spec=DestinationStore)
        store.find_one.side_effect = RuntimeError("pool closed")
        writer = EntityWriter(store)

        with pytest.raises(RuntimeError):
            storyteller(writer, "rec1")

        assert writer._locks == {}

    def test_same_id_waits_for_holder(self, writer):
        with writer._locked(EntityType.STORYTELLER, "rec1"):
            entry = writer._locks[("storyteller", "rec1")]
            assert entry[0].locked()
            assert entry[1] == 1

        assert writer._locks == {}


class TestRelations:
    def test_resolves_foreign_keys(self, writer, store):
        author = storyteller(writer, "recAuthor")

        outcome = writer.upsert(
            EntityType.STORY, "recStory", {"title": "Going home"},
            [RelationRef("storyteller_id", EntityType.STORYTELLER, ["recAuthor"], required=True)],
        )

        assert outcome.status == OutcomeStatus.CREATED
        assert store.find_one("stories")["storyteller_id"] == author.destination_id

    def test_missing_target_is_dependency_failure(self, writer, store):
        outcome = writer.upsert(
            EntityType.STORY, "recStory", {"title": "Going home"},
            [RelationRef("storyteller_id", EntityType.STORYTELLER, ["recNobody"], required=True)],
        )

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason.startswith("DependencyMissing:")
        assert "recNobody" in outcome.reason
        assert store.count("stories") == 0

    def test_required_relation_without_links(self, writer):
        outcome = writer.upsert(
            EntityType.STORY, "recStory", {"title": "Going home"},
            [RelationRef("storyteller_id", EntityType.STORYTELLER, [], required=True)],
        )

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason.startswith("DependencyMissing:")

    def test_optional_relation_without_links(self, writer, store):
        outcome = writer.upsert(
            EntityType.MEDIA, "recMedia", {"title": "Clip"},
            [RelationRef("storyteller_id", EntityType.STORYTELLER, [])],
        )

        assert outcome.status == OutcomeStatus.CREATED
        assert "storyteller_id" not in store.find_one("media")

    def test_many_relation(self, writer):
        a = writer.upsert(EntityType.THEME, "recA", {"name": "Land"})
        b = writer.upsert(EntityType.THEME, "recB", {"name": "Family"})

        resolved = writer.resolve_relations([
            RelationRef("theme_ids", EntityType.THEME, ["recB", "recA", "recB"], many=True),
        ])

        assert resolved == {"theme_ids": [b.destination_id, a.destination_id]}


class TestLegacyRows:
    def test_candidates_are_rows_without_external_id(self, writer, store):
        legacy = store.insert("storytellers", {"full_name": "Cheryl Ann Mara"})
        storyteller(writer, "rec1")

        candidates = writer.load_candidates(EntityType.STORYTELLER)

        assert [(c.destination_id, c.display_name) for c in candidates] == [(legacy, "Cheryl Ann Mara")]

    def test_claim_backfills_external_id(self, writer, store):
        legacy = store.insert("themes", {"name": "Land"})

        outcome = writer.claim(EntityType.THEME, legacy, "recLand")

        assert outcome.status == OutcomeStatus.SKIPPED_EXISTING
        assert outcome.destination_id == legacy
        assert store.find_one("themes", {"id": legacy})["airtable_record_id"] == "recLand"
        assert writer.load_candidates(EntityType.THEME) == []

    def test_claim_when_already_linked(self, writer, store):
        linked = store.insert("themes", {"name": "Land", "airtable_record_id": "recLand"})
        other = store.insert("themes", {"name": "Land (old)"})

        outcome = writer.claim(EntityType.THEME, other, "recLand")

        assert outcome.destination_id == linked
        assert store.find_one("themes", {"id": other}).get("airtable_record_id") is None
