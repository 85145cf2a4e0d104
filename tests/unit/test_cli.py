"""
Tests for the command-line interface.
"""

import pytest
from click.testing import CliRunner

from rowledger.cli import EXIT_AWAITING_CONFIRMATION, cli

LOG_HEADER = "ChallengeName,ShotsHit,Kills,Weapon,Accuracy,Damage,CriticalShots,TotalShots,RoundTime\n"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, config_file):
    def _invoke(*args):
        return runner.invoke(cli, ["--config", str(config_file), "--owner", "u1", *args], obj={})

    return _invoke


@pytest.fixture
def people_csv(tmp_path):
    path = tmp_path / "people.csv"
    path.write_text("name,age\nJohn,30\nJane,25\n", encoding="utf-8")
    return path


@pytest.mark.unit
class TestDatasetCommands:
    def test_create_and_list(self, invoke):
        result = invoke("datasets", "create", "people", "--columns", "name, age")
        assert result.exit_code == 0, result.output
        assert "Created dataset 1" in result.output

        listing = invoke("datasets", "list")
        assert listing.exit_code == 0
        assert "people" in listing.output

    def test_duplicate_name_fails(self, invoke):
        invoke("datasets", "create", "people", "--columns", "name,age")

        result = invoke("datasets", "create", "people", "--columns", "name,age")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_match(self, invoke, people_csv):
        invoke("datasets", "create", "people", "--columns", "age,name")

        result = invoke("datasets", "match", str(people_csv))

        assert result.exit_code == 0
        assert "people" in result.output

    def test_rename_and_delete(self, invoke):
        invoke("datasets", "create", "people", "--columns", "name,age")

        renamed = invoke("datasets", "rename", "1", "--name", "staff")
        assert renamed.exit_code == 0
        assert "staff" in renamed.output

        deleted = invoke("datasets", "delete", "1", "--yes")
        assert deleted.exit_code == 0

        missing = invoke("datasets", "delete", "1", "--yes")
        assert missing.exit_code == 1
        assert "not found" in missing.output

    def test_owner_is_required(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "datasets", "list"], obj={})

        assert result.exit_code == 2
        assert "--owner" in result.output


@pytest.mark.unit
class TestUploadCommands:
    def test_two_phase_upload(self, invoke, people_csv):
        invoke("datasets", "create", "people", "--columns", "name,age")

        first = invoke("upload", str(people_csv), "--dataset", "1")
        assert first.exit_code == 0, first.output
        assert "Committed 2 rows" in first.output

        check = invoke("check", str(people_csv), "--dataset", "1")
        assert check.exit_code == 0
        assert "2 duplicate rows" in check.output

        again = invoke("upload", str(people_csv), "--dataset", "1")
        assert again.exit_code == EXIT_AWAITING_CONFIRMATION

        selected = invoke("upload", str(people_csv), "--dataset", "1", "--select", "1")
        assert selected.exit_code == 0
        assert "Committed 1 rows" in selected.output

        rows = invoke("datasets", "rows", "1")
        assert rows.exit_code == 0
        assert rows.output.count("Jane") == 2
        assert rows.output.count("John") == 1

    def test_history_upload(self, invoke, people_csv):
        first = invoke("upload", str(people_csv), "--history")
        assert first.exit_code == 0

        forced = invoke("upload", str(people_csv), "--history", "--force")
        assert forced.exit_code == 0
        assert "Committed 2 rows" in forced.output

    def test_scope_is_required(self, invoke, people_csv):
        result = invoke("upload", str(people_csv))
        assert result.exit_code == 2

    def test_force_and_select_conflict(self, invoke, people_csv):
        result = invoke("upload", str(people_csv), "--history", "--force", "--select", "0")
        assert result.exit_code == 2

    def test_schema_mismatch(self, invoke, tmp_path):
        invoke("datasets", "create", "people", "--columns", "name,age")
        other = tmp_path / "emails.csv"
        other.write_text("name,email\nJohn,j@x\n", encoding="utf-8")

        result = invoke("upload", str(other), "--dataset", "1")

        assert result.exit_code == 1
        assert "does not match" in result.output


@pytest.mark.unit
class TestImportLogs:
    def test_import_reports_summary_and_errors(self, invoke, tmp_path):
        first = tmp_path / "aimtrainer_results_1.csv"
        first.write_text(LOG_HEADER + "A,1,0,Pistol,1%,10,0,100,60\nB,2,0,Pistol,2%,20,0,100,60\n", encoding="utf-8")
        second = tmp_path / "aimtrainer_results_2.csv"
        second.write_text(
            LOG_HEADER
            + "A,1,0,Pistol,1%,10,0,100,60\nB,2,0,Pistol,2%,20,0,100,60\nC,3,0,Pistol,3%,30,0,100,60\n",
            encoding="utf-8",
        )
        broken = tmp_path / "aimtrainer_results_3.csv"
        broken.write_text("no header here\n", encoding="utf-8")

        result = invoke("import-logs", str(second), str(first), str(broken))

        assert result.exit_code == 1
        assert "newRecords" in result.output
        assert "aimtrainer_results_3.csv" in result.output


@pytest.mark.unit
def test_validate_config(invoke):
    result = invoke("validate-config")

    assert result.exit_code == 0
    assert "duplicate_overlap_threshold" in result.output


@pytest.mark.unit
class TestLogCommands:
    @pytest.fixture
    def imported(self, invoke, tmp_path):
        path = tmp_path / "aimtrainer_results_1.csv"
        path.write_text(LOG_HEADER + "A,1,0,Pistol,1%,10,0,100,60\nB,2,0,Rifle,2%,20,0,100,60\n", encoding="utf-8")
        result = invoke("import-logs", str(path))
        assert result.exit_code == 0, result.output

    def test_list(self, invoke, imported):
        result = invoke("logs", "list")

        assert result.exit_code == 0, result.output
        assert "Page 1 of 1, 2 records" in result.output

    def test_list_with_filter(self, invoke, imported):
        result = invoke("logs", "list", "--weapon", "Rifle")

        assert "Page 1 of 1, 1 records" in result.output

    def test_list_rejects_bad_page(self, invoke, imported):
        result = invoke("logs", "list", "--page", "0")

        assert result.exit_code == 1
        assert "page must be at least 1" in result.output

    def test_stats(self, invoke, imported):
        result = invoke("logs", "stats")

        assert result.exit_code == 0, result.output
        assert "totalRecords" in result.output
        assert "Pistol" in result.output
        assert "Rifle" in result.output

    def test_delete(self, invoke, imported):
        deleted = invoke("logs", "delete", "1", "--yes")
        assert deleted.exit_code == 0

        missing = invoke("logs", "delete", "1", "--yes")
        assert missing.exit_code == 1
        assert "not found" in missing.output

        remaining = invoke("logs", "list")
        assert "Page 1 of 1, 1 records" in remaining.output


@pytest.mark.unit
class TestUploadHistoryCommands:
    def test_list_and_show(self, invoke, people_csv):
        invoke("upload", str(people_csv), "--history")

        listing = invoke("uploads", "list")
        assert listing.exit_code == 0, listing.output
        assert "people.csv" in listing.output

        shown = invoke("uploads", "show", "1")
        assert shown.exit_code == 0, shown.output
        assert "Jane" in shown.output
        assert "2 rows, 2 columns" in shown.output

    def test_show_missing(self, invoke):
        result = invoke("uploads", "show", "9")

        assert result.exit_code == 1
        assert "upload 9 not found" in result.output
