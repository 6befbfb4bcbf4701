import json
from unittest.mock import MagicMock

import pytest

from ledger_migration import cli
from ledger_migration.exceptions import ConfigurationError, FatalSourceError, SourceUnreachable
from ledger_migration.models.migration import RunStatus
from ledger_migration.models.record import ViewDescriptor
from ledger_migration.models.report import MigrationOutcome, MigrationReport

from fakes import source_record

ENV_VARS = [
    "AIRTABLE_API_KEY", "SOURCE_API_KEY", "AIRTABLE_BASE_ID",
    "SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli.signal, "signal", MagicMock())


@pytest.fixture
def credentials(monkeypatch):
    monkeypatch.setenv("AIRTABLE_API_KEY", "patTEST")
    monkeypatch.setenv("AIRTABLE_BASE_ID", "appTEST")
    monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service")


def report_with_failures(count):
    report = MigrationReport(name="test", status=RunStatus.COMPLETED)
    stage = report.add_stage("story")
    stage.record(MigrationOutcome.created("story", "recOk", "id-1"))
    for i in range(count):
        stage.record(MigrationOutcome.failed("story", f"rec{i}", "DependencyMissing: storyteller not migrated"))
    return report


@pytest.fixture
def orchestrator(monkeypatch):
    orchestrator_cls = MagicMock()
    orchestrator_cls.return_value.report_path = None
    monkeypatch.setattr(cli, "MigrationOrchestrator", orchestrator_cls)
    return orchestrator_cls


class TestRun:
    def test_missing_configuration_exits_2(self, orchestrator, capsys):
        assert cli.main(["run"]) == cli.EXIT_CONFIGURATION
        assert "AIRTABLE_API_KEY" in capsys.readouterr().err
        orchestrator.assert_not_called()

    def test_clean_run_exits_0(self, credentials, orchestrator, tmp_path):
        orchestrator.return_value.run_migration.return_value = report_with_failures(0)

        assert cli.main(["run", "--output-dir", str(tmp_path)]) == cli.EXIT_OK

        config = orchestrator.call_args.args[0]
        assert config.output_dir == str(tmp_path)
        assert config.source.api_key == "patTEST"

    def test_few_failures_still_exit_0(self, credentials, orchestrator, capsys):
        orchestrator.return_value.run_migration.return_value = report_with_failures(2)

        assert cli.main(["run", "--max-failures", "5"]) == cli.EXIT_OK
        assert "rec0: DependencyMissing" in capsys.readouterr().out

    def test_too_many_failures_exit_1(self, credentials, orchestrator):
        orchestrator.return_value.run_migration.return_value = report_with_failures(3)

        assert cli.main(["run", "--max-failures", "2"]) == cli.EXIT_TOO_MANY_FAILURES

    def test_configuration_error_during_run_exits_2(self, credentials, orchestrator):
        orchestrator.return_value.run_migration.side_effect = ConfigurationError("bad stage plan")

        assert cli.main(["run"]) == cli.EXIT_CONFIGURATION

    def test_unreachable_source_exits_2(self, credentials, orchestrator, capsys):
        orchestrator.return_value.run_migration.side_effect = SourceUnreachable(
            "Source unreachable while reading Storytellers: Connection refused"
        )

        assert cli.main(["run"]) == cli.EXIT_CONFIGURATION
        assert "Source unreachable" in capsys.readouterr().err

    def test_flags_and_config_file(self, credentials, orchestrator, tmp_path):
        orchestrator.return_value.run_migration.return_value = report_with_failures(0)
        config_path = tmp_path / "migration.json"
        config_path.write_text(json.dumps({
            "name": "prod-backfill",
            "stages": {"storyteller": {"expected_count": 210}},
        }))

        cli.main(["run", "--config", str(config_path), "--dry-run", "--skip-attachments"])

        config = orchestrator.call_args.args[0]
        assert config.name == "prod-backfill"
        assert config.dry_run is True
        assert config.skip_attachments is True
        assert config.stages["storyteller"]["expected_count"] == 210


class TestInspection:
    def test_views(self, credentials, monkeypatch, capsys):
        client_cls = MagicMock()
        client_cls.return_value.list_views.return_value = [ViewDescriptor(id="viwA", name="Grid view", type="grid")]
        monkeypatch.setattr(cli, "SourceClient", client_cls)

        assert cli.main(["views", "--table", "Storytellers"]) == cli.EXIT_OK
        assert "Grid view (viwA)" in capsys.readouterr().out

    def test_views_need_only_source_settings(self, monkeypatch):
        monkeypatch.setenv("AIRTABLE_API_KEY", "patTEST")
        monkeypatch.setenv("AIRTABLE_BASE_ID", "appTEST")
        client_cls = MagicMock()
        client_cls.return_value.list_views.return_value = []
        monkeypatch.setattr(cli, "SourceClient", client_cls)

        assert cli.main(["views", "--table", "Storytellers"]) == cli.EXIT_OK

    def test_views_without_credentials(self):
        assert cli.main(["views", "--table", "Storytellers"]) == cli.EXIT_CONFIGURATION

    def test_record(self, credentials, monkeypatch, capsys):
        client_cls = MagicMock()
        client_cls.return_value.get_record.return_value = source_record("rec42", {"Name": "Cheryl Ann Mara"})
        monkeypatch.setattr(cli, "SourceClient", client_cls)

        assert cli.main(["record", "--table", "Storytellers", "--id", "rec42"]) == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out)["fields"] == {"Name": "Cheryl Ann Mara"}

    def test_record_not_found(self, credentials, monkeypatch):
        client_cls = MagicMock()
        client_cls.return_value.get_record.side_effect = FatalSourceError("HTTP 404", status_code=404)
        monkeypatch.setattr(cli, "SourceClient", client_cls)

        assert cli.main(["record", "--table", "Storytellers", "--id", "recNope"]) == 1


class TestReport:
    def test_renders_saved_report(self, tmp_path, capsys):
        path = tmp_path / "migration_report.json"
        path.write_text(json.dumps(report_with_failures(1).to_dict()))

        assert cli.main(["report", str(path)]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "MIGRATION COMPLETED" in out
        assert "rec0: DependencyMissing" in out
        assert "Failed: 1" in out
