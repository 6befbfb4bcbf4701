"""End-to-end runs of the default stage plan against in-memory stores."""

import json
import logging
import threading
from unittest.mock import MagicMock

import pytest
import requests

from ledger_migration.exceptions import ConfigurationError, FatalSourceError, TransientNetworkError
from ledger_migration.loaders.destination import MemoryDestinationStore
from ledger_migration.models.migration import RunStatus
from ledger_migration.models.report import OutcomeStatus, StageReport
from ledger_migration.models.schema import EntityType, RelationMapping, StageDefinition
from ledger_migration.orchestrator import MigrationOrchestrator
from ledger_migration.stages import build_stages

from fakes import FakeDownloads, FakeSourceClient, attachment, raw

HAS_TRANSCRIPT = "NOT({Transcript} = '')"


def source_tables():
    return {
        "Storytellers": {"Grid view": [
            raw("recSt1", {
                "Name": "Cheryl Ann Mara",
                "Summary (from Media)": ["Elder and keeper of stories from the river country."],
                "File Profile Image": [attachment("https://dl.test/cheryl.jpg")],
            }),
            raw("recSt2", {
                "Name": "Uncle Bob",
                "File Profile Image": [attachment("https://dl.test/missing.jpg", "bob.jpg")],
            }),
        ]},
        "Media": {"Grid view": [
            raw("recM1", {
                "File Name": "Interview 1",
                "Transcript": "Cheryl talks about going home to country.",
                "Storytellers": ["recSt1"],
                "File": [attachment("https://dl.test/interview.mp4", "interview.mp4", 5, "video/mp4")],
            }),
            raw("recM2", {"File Name": "Portrait", "Type": "Photo", "Storytellers": ["recSt2"]}),
        ]},
        "Stories": {"Grid view": [
            raw("recS1", {
                "Title": "Going home",
                "Storytellers": ["recSt1"],
                "Status": "Published",
                "Permissions": "Public",
                "Themes": ["recTh1"],
            }),
            raw("recS2", {"Title": "Orphaned story", "Storytellers": ["recGhost"]}),
        ]},
        "Quotes": {"Grid view": [
            raw("recQ1", {
                "Quote Text": "We are strong",
                "Media": ["recM1"],
                "Themes": ["recTh1", "recTh2"],
                "Impact Score": 8,
            }),
        ]},
        "Themes": {"Grid view": [
            raw("recTh1", {"Name": "Land"}),
            raw("recTh2", {"Name": "Family"}),
            raw("recTh3", {"Name": "Unmatched theme"}),
        ]},
    }


def downloads():
    return FakeDownloads({
        "https://dl.test/cheryl.jpg": b"CHERYL",
        "https://dl.test/interview.mp4": b"VIDEO",
    })


@pytest.fixture
def client():
    return FakeSourceClient(
        source_tables(),
        filters={HAS_TRANSCRIPT: lambda record: bool(record.get_field("Transcript"))},
    )


@pytest.fixture
def legacy_themes(store):
    return {
        "land": store.insert("themes", {"name": "land "}),
        "family": store.insert("themes", {"name": "Family Ties"}),
    }


def make_orchestrator(config, client, store, storage=None, **kwargs):
    return MigrationOrchestrator(
        config,
        source_client=client,
        store=store,
        storage=storage,
        http_session=downloads(),
        **kwargs
    )


def row_counts(store):
    return {table: len(rows) for table, rows in store.tables.items() if rows}


class TestFullRun:
    def test_first_run(self, config, client, store, storage, legacy_themes):
        report = make_orchestrator(config, client, store, storage).run_migration()

        assert report.status == RunStatus.COMPLETED
        assert [s.entity_type for s in report.stages] == [
            "storyteller", "transcript", "media", "story", "quote", "theme",
            "quote.theme_ids", "story.theme_ids",
        ]

        storytellers = report.get_stage("storyteller")
        assert storytellers.created == 2
        assert storytellers.attachments_transferred == 1
        assert len(storytellers.attachment_failures) == 1
        failure = storytellers.attachment_failures[0]
        assert failure["externalId"] == "recSt2"
        assert failure["field"] == "File Profile Image"
        assert failure["reason"].startswith("AttachmentDownloadFailed:")

        cheryl = store.find_one("storytellers", {"airtable_record_id": "recSt1"})
        assert cheryl["full_name"] == "Cheryl Ann Mara"
        assert cheryl["consent_given"] is False
        assert cheryl["profile_image_url"].startswith(f"https://cdn.test/media/storyteller/{cheryl['id']}/")
        bob = store.find_one("storytellers", {"airtable_record_id": "recSt2"})
        assert "profile_image_url" not in bob

        transcripts = store.find_many("transcripts")
        assert [t["airtable_record_id"] for t in transcripts] == ["recM1"]
        assert transcripts[0]["storyteller_id"] == cheryl["id"]

        media = store.find_one("media", {"airtable_record_id": "recM1"})
        assert media["media_type"] == "video"
        assert media["file_url"].endswith(".mp4")
        assert store.find_one("media", {"airtable_record_id": "recM2"})["media_type"] == "image"

        stories = report.get_stage("story")
        assert stories.created == 1
        assert len(stories.failed) == 1
        assert stories.failed[0]["externalId"] == "recS2"
        assert stories.failed[0]["reason"].startswith("DependencyMissing:")
        story = store.find_one("stories")
        assert story["status"] == "published"
        assert story["privacy_level"] == "public"

        quote = store.find_one("quotes")
        assert quote["transcript_id"] == transcripts[0]["id"]
        assert quote["significance_score"] == 8

        themes = report.get_stage("theme")
        assert themes.linked == 2
        assert themes.skipped_existing == 2
        assert themes.skipped_no_match == 0
        assert themes.created == 1
        assert store.count("themes") == 3
        assert store.find_one("themes", {"airtable_record_id": "recTh3"})["name"] == "Unmatched theme"
        assert store.find_one("themes", {"id": legacy_themes["land"]})["airtable_record_id"] == "recTh1"
        assert store.find_one("themes", {"id": legacy_themes["family"]})["airtable_record_id"] == "recTh2"

        assert report.get_stage("quote.theme_ids").created == 1
        assert store.find_one("quotes")["theme_ids"] == [legacy_themes["land"], legacy_themes["family"]]
        assert store.find_one("stories")["theme_ids"] == [legacy_themes["land"]]

        assert report.total_failed == 1

    def test_second_run_changes_nothing(self, config, client, store, storage, legacy_themes):
        make_orchestrator(config, client, store, storage).run_migration()
        counts = row_counts(store)
        objects = dict(storage.objects)

        report = make_orchestrator(config, client, store, storage).run_migration()

        assert report.status == RunStatus.COMPLETED
        assert report.total_created == 0
        assert row_counts(store) == counts
        assert storage.objects == objects
        assert report.get_stage("storyteller").skipped_existing == 2
        assert report.get_stage("theme").linked == 0
        assert report.get_stage("theme").skipped_existing == 3
        assert report.get_stage("quote.theme_ids").skipped_existing == 1
        assert [f["externalId"] for f in report.get_stage("story").failed] == ["recS2"]

    def test_summary_counts_uploads(self, config, client, store, storage, caplog):
        caplog.set_level(logging.INFO, logger="ledger_migration.orchestrator")

        make_orchestrator(config, client, store, storage).run_migration()

        assert "Attachments: 2 uploaded, 0 reused from earlier uploads" in caplog.text

    def test_report_is_saved(self, config, client, store, storage):
        orchestrator = make_orchestrator(config, client, store, storage)
        report = orchestrator.run_migration()

        with open(orchestrator.report_path) as f:
            saved = json.load(f)

        assert orchestrator.report_path.parent.name == "logs"
        assert saved["id"] == report.id
        assert saved["status"] == "completed"
        assert saved["dryRun"] is False
        stage = saved["stages"][0]
        assert set(stage) >= {
            "entityType", "created", "skippedExisting", "skippedNoMatch",
            "failed", "attachmentFailures", "sourceCount", "expectedCount",
        }

    def test_save_extracted(self, config, client, store, storage, tmp_path):
        config.save_extracted = True

        make_orchestrator(config, client, store, storage).run_migration()

        with open(tmp_path / "extracted" / "storyteller.json") as f:
            extracted = json.load(f)
        assert extracted["observed_count"] == 2

    def test_skip_attachments(self, config, client, store, storage):
        config.skip_attachments = True

        report = make_orchestrator(config, client, store, storage).run_migration()

        assert storage.objects == {}
        assert report.total_attachment_failures == 0
        assert report.get_stage("storyteller").created == 2


class TestDryRun:
    def test_real_store_untouched(self, config, client, store, legacy_themes):
        config.dry_run = True

        report = make_orchestrator(config, client, store).run_migration()

        assert report.dry_run is True
        assert report.get_stage("storyteller").created == 2
        assert report.get_stage("theme").linked == 2
        assert report.get_stage("quote.theme_ids").created == 1
        assert row_counts(store) == {"themes": 2}
        assert store.find_many("themes", {"airtable_record_id": None}) == store.find_many("themes")


class TestFailures:
    def test_transform_error_fails_only_that_record(self, config, store, storage):
        client = FakeSourceClient({"Storytellers": {"Grid view": [
            raw("recBad", {"Name": "Ana", "Created": "sometime last spring"}),
            raw("recGood", {"Name": "Bo", "Created": "2023-06-01"}),
        ]}})
        stages = [s for s in build_stages({}) if s.entity_type == EntityType.STORYTELLER]

        report = make_orchestrator(config, client, store, storage, stages=stages, links=[]).run_migration()

        stage = report.get_stage("storyteller")
        assert stage.created == 1
        assert stage.failed[0]["externalId"] == "recBad"
        assert stage.failed[0]["reason"].startswith("DestinationValidationError: created_at:")

    def test_unreadable_table_is_reported(self, config, store, storage):
        class Unreachable(FakeSourceClient):
            def list_view(self, table, view, cursor=None):
                if table == "Quotes":
                    raise FatalSourceError("HTTP 404", status_code=404)
                return super().list_view(table, view, cursor)

        client = Unreachable(source_tables(), filters={HAS_TRANSCRIPT: lambda r: bool(r.get_field("Transcript"))})

        report = make_orchestrator(config, client, store, storage).run_migration()

        assert report.status == RunStatus.COMPLETED
        assert any("Quotes" in e for e in report.errors)
        assert report.get_stage("quote").processed == 0
        assert report.get_stage("story").created == 1

    def test_unreachable_source_fails_run(self, config, store, storage):
        class Offline(FakeSourceClient):
            def list_view(self, table, view, cursor=None):
                raise TransientNetworkError("Connection refused")

            def list_filtered(self, table, filter_expression, cursor=None, view=None):
                raise TransientNetworkError("Connection refused")

        orchestrator = make_orchestrator(config, Offline(source_tables()), store, storage)

        with pytest.raises(ConfigurationError):
            orchestrator.run_migration()

        assert orchestrator.report.status == RunStatus.FAILED
        assert orchestrator.report_path.exists()
        assert row_counts(store) == {}

    def test_table_cut_short_keeps_fetched_pages(self, config, store, storage):
        class ExpiredCursor(FakeSourceClient):
            def list_view(self, table, view, cursor=None):
                if table == "Storytellers" and cursor:
                    raise FatalSourceError("HTTP 422 LIST_RECORDS_ITERATOR_NOT_AVAILABLE", status_code=422)
                return super().list_view(table, view, cursor)

            def list_filtered(self, table, filter_expression, cursor=None, view=None):
                if cursor:
                    raise FatalSourceError("HTTP 422 LIST_RECORDS_ITERATOR_NOT_AVAILABLE", status_code=422)
                return super().list_filtered(table, filter_expression, cursor, view=view)

        tables = {"Storytellers": {"Grid view": [raw(f"recSt{i}", {"Name": f"Teller {i}"}) for i in range(15)]}}
        client = ExpiredCursor(tables, page_size=10)
        stages = [s for s in build_stages({}) if s.entity_type == EntityType.STORYTELLER]

        report = make_orchestrator(config, client, store, storage, stages=stages, links=[]).run_migration()

        assert report.status == RunStatus.COMPLETED
        assert report.get_stage("storyteller").created == 10
        assert store.count("storytellers") == 10
        assert any(e.startswith("storyteller: Walk of Storytellers") for e in report.errors)

    def test_unusable_attachment_url_is_an_attachment_failure(self, config, store, storage):
        tables = {"Storytellers": {"Grid view": [
            raw("recSt1", {"Name": "Ana", "File Profile Image": [attachment("photo.jpg")]}),
            raw("recSt2", {"Name": "Bo"}),
        ]}}
        stages = [s for s in build_stages({}) if s.entity_type == EntityType.STORYTELLER]
        orchestrator = MigrationOrchestrator(
            config,
            source_client=FakeSourceClient(tables),
            store=store,
            storage=storage,
            http_session=FakeDownloads({"photo.jpg": requests.exceptions.MissingSchema("No scheme supplied")}),
            stages=stages,
            links=[],
        )

        report = orchestrator.run_migration()

        stage = report.get_stage("storyteller")
        assert stage.created == 2
        assert stage.attachment_failures[0]["externalId"] == "recSt1"
        assert stage.attachment_failures[0]["reason"].startswith("AttachmentDownloadFailed:")

    def test_unexpected_storage_error_is_an_attachment_failure(self, config, client, store, storage):
        def broken_put(key, content, content_type):
            raise RuntimeError("bucket client closed")

        storage.put_object = broken_put

        report = make_orchestrator(config, client, store, storage).run_migration()

        assert report.status == RunStatus.COMPLETED
        storytellers = report.get_stage("storyteller")
        assert storytellers.created == 2
        assert storytellers.attachments_transferred == 0
        assert {f["externalId"] for f in storytellers.attachment_failures} == {"recSt1", "recSt2"}
        assert "RuntimeError: bucket client closed" in [
            f["reason"] for f in storytellers.attachment_failures if f["externalId"] == "recSt1"
        ]
        assert report.get_stage("media").created == 2

    def test_relation_to_later_stage_is_rejected(self, config, client, store, storage):
        stages = [
            StageDefinition(EntityType.STORY, "Stories", relations=[
                RelationMapping("Quotes", "quote_id", EntityType.QUOTE),
            ]),
            StageDefinition(EntityType.QUOTE, "Quotes"),
        ]
        orchestrator = make_orchestrator(config, client, store, storage, stages=stages, links=[])

        with pytest.raises(ConfigurationError):
            orchestrator.run_migration()

        assert orchestrator.report.status == RunStatus.FAILED
        assert orchestrator.report_path.exists()
        assert row_counts(store) == {}

    def test_non_supabase_store_needs_storage(self, config, client):
        with pytest.raises(ConfigurationError):
            MigrationOrchestrator(config, source_client=client, store=MemoryDestinationStore())


class TestLegacyMatching:
    def test_already_linked_row_uses_schema_primary_key(self, config, client, store, storage):
        orchestrator = make_orchestrator(config, client, store, storage)
        writer = MagicMock()
        writer.schema.return_value.primary_key = "theme_uuid"
        writer.find_existing.return_value = {"theme_uuid": "th-42"}
        orchestrator.writer = writer
        stage = next(s for s in orchestrator.stages if s.entity_type == EntityType.THEME)
        record = client.get_record("Themes", "recTh1")

        outcome = orchestrator._match_legacy(stage, record, [], StageReport("theme"))

        assert outcome.status == OutcomeStatus.SKIPPED_EXISTING
        assert outcome.destination_id == "th-42"

    def test_claimed_rows_leave_the_pool(self, config, client, store, storage, legacy_themes):
        client.tables["Themes"]["Grid view"].append(raw("recTh4", {"Name": "Land"}))

        report = make_orchestrator(config, client, store, storage).run_migration()

        themes = report.get_stage("theme")
        assert themes.linked == 2
        assert themes.created == 2
        assert store.find_one("themes", {"airtable_record_id": "recTh4"})["id"] != legacy_themes["land"]


class TestCancellation:
    def test_cancel_stops_between_records(self, config, store, storage):
        cancel = threading.Event()

        class CancelOnMedia(FakeSourceClient):
            def list_filtered(self, table, filter_expression, cursor=None, view=None):
                cancel.set()
                return super().list_filtered(table, filter_expression, cursor, view=view)

        client = CancelOnMedia(source_tables())

        report = make_orchestrator(config, client, store, storage, cancel_event=cancel).run_migration()

        assert report.status == RunStatus.CANCELLED
        assert [s.entity_type for s in report.stages] == ["storyteller", "transcript"]
        assert store.count("storytellers") == 2
        assert store.count("transcripts") == 0
