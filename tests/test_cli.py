"""Tests for the lockaudit command line interface."""

import json

import pytest
from typer.testing import CliRunner

from lock_audit import __version__
from lock_audit.cli.main import EXIT_ERROR, EXIT_VULNERABLE, app
from lock_audit.config import DATABASE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep config discovery and the environment away from the developer's setup."""
    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    monkeypatch.delenv(DATABASE_ENV, raising=False)
    monkeypatch.delenv("LOCKAUDIT_VERBOSE_BENCHMARK", raising=False)
    monkeypatch.setenv("COLUMNS", "200")


def audit(*args):
    return runner.invoke(app, ["audit", *map(str, args)])


class TestAuditCommand:
    """Test exit codes and output of the audit command."""

    def test_secure_project(self, secure_project, advisory_db):
        result = audit(secure_project, "--no-fetch", "--db", advisory_db)

        assert result.exit_code == 0
        assert "No vulnerabilities found" in result.stdout

    def test_vulnerable_project(self, vulnerable_project, advisory_db):
        result = audit(vulnerable_project, "--no-fetch", "--db", advisory_db)

        assert result.exit_code == EXIT_VULNERABLE
        assert "RUSTSEC-2017-0004" in result.stdout

    def test_json_output(self, vulnerable_project, advisory_db):
        """Test the JSON document written to stdout."""
        result = audit(vulnerable_project, "--no-fetch", "--db", advisory_db, "--json")

        assert result.exit_code == EXIT_VULNERABLE
        data = json.loads(result.stdout)
        assert data["lockfile"]["dependency-count"] == 3
        assert data["vulnerabilities"]["found"] is True
        assert data["vulnerabilities"]["count"] == 1
        finding = data["vulnerabilities"]["list"][0]
        assert finding["advisory"]["id"] == "RUSTSEC-2017-0004"
        assert finding["advisory"]["aliases"] == ["CVE-2017-1000430"]
        assert finding["package"]["version"] == "0.5.1"
        assert finding["versions"]["patched"] == [">= 0.5.2"]

    def test_json_is_stable_across_runs(self, vulnerable_project, advisory_db):
        args = (vulnerable_project, "--no-fetch", "--db", advisory_db, "--json", "--workers", "4")
        assert audit(*args).stdout == audit(*args).stdout

    def test_ignore(self, vulnerable_project, advisory_db):
        result = audit(vulnerable_project, "--no-fetch", "--db", advisory_db, "--json", "--ignore", "RUSTSEC-2017-0004")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["vulnerabilities"]["count"] == 0

    def test_ignore_from_config_file(self, vulnerable_project, advisory_db, tmp_path):
        config = tmp_path / "audit.toml"
        config.write_text(f'[advisories]\nignore = ["RUSTSEC-2017-0004"]\n\n[database]\npath = "{advisory_db.as_posix()}"\nfetch = false\n')

        result = audit(vulnerable_project, "--config", config)
        assert result.exit_code == 0

    def test_warnings_only_fail_when_denied(self, tmp_path, advisory_db, make_lockfile_text):
        """Test that informational findings need --deny-warnings to fail the run."""
        project = tmp_path / "warned"
        project.mkdir()
        (project / "Cargo.lock").write_text(make_lockfile_text(("failure", "0.1.8")))

        result = audit(project, "--no-fetch", "--db", advisory_db, "--json")
        assert result.exit_code == 0
        assert [w["advisory"]["id"] for w in json.loads(result.stdout)["warnings"]["unmaintained"]] == [
            "RUSTSEC-2020-0036"
        ]

        denied = audit(project, "--no-fetch", "--db", advisory_db, "--deny-warnings")
        assert denied.exit_code == EXIT_VULNERABLE

    def test_output_file(self, vulnerable_project, advisory_db, tmp_path):
        output = tmp_path / "report.json"
        result = audit(vulnerable_project, "--no-fetch", "--db", advisory_db, "-o", output)

        assert result.exit_code == EXIT_VULNERABLE
        assert json.loads(output.read_text())["vulnerabilities"]["count"] == 1

    def test_missing_lockfile(self, tmp_path, advisory_db):
        result = audit(tmp_path / "nowhere", "--no-fetch", "--db", advisory_db)
        assert result.exit_code == EXIT_ERROR

    def test_missing_database(self, secure_project, tmp_path):
        result = audit(secure_project, "--no-fetch", "--db", tmp_path / "no-db")
        assert result.exit_code == EXIT_ERROR

    def test_malformed_lockfile(self, tmp_path, advisory_db):
        project = tmp_path / "broken"
        project.mkdir()
        (project / "Cargo.lock").write_text("version = 7\n")

        result = audit(project, "--no-fetch", "--db", advisory_db)
        assert result.exit_code == EXIT_ERROR

    def test_invalid_advisory_fails_unless_permissive(self, secure_project, advisory_db, write_advisory):
        write_advisory(advisory_db, "RUSTSEC-2023-0001", "bad", patched=["not a range"])

        assert audit(secure_project, "--no-fetch", "--db", advisory_db).exit_code == EXIT_ERROR
        assert audit(secure_project, "--no-fetch", "--db", advisory_db, "--permissive").exit_code == 0

    def test_performance_summary(self, secure_project, advisory_db):
        result = audit(secure_project, "--no-fetch", "--db", advisory_db, "--performance")
        assert result.exit_code == 0


class TestOtherCommands:
    """Test show, info, fetch and --version."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.stdout

    @pytest.mark.parametrize("identifier", ["RUSTSEC-2017-0004", "CVE-2017-1000430"])
    def test_show(self, advisory_db, identifier):
        result = runner.invoke(app, ["show", identifier, "--db", str(advisory_db)])

        assert result.exit_code == 0
        assert "RUSTSEC-2017-0004" in result.stdout
        assert "base64" in result.stdout

    def test_show_unknown(self, advisory_db):
        result = runner.invoke(app, ["show", "RUSTSEC-0000-0000", "--db", str(advisory_db)])
        assert result.exit_code == EXIT_ERROR

    def test_info(self, advisory_db, monkeypatch):
        monkeypatch.setenv(DATABASE_ENV, str(advisory_db))
        result = runner.invoke(app, ["info"])

        assert result.exit_code == 0
        assert "Fetched: never" in result.stdout

    def test_fetch_rejects_bad_digest(self, tmp_path):
        result = runner.invoke(app, ["fetch", "--db", str(tmp_path / "db"), "--sha256", "abc"])
        assert result.exit_code == EXIT_ERROR

    def test_fetch_reports_filesystem_errors(self, tmp_path):
        """Test that an unusable cache directory exits with the error status, not a traceback."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")

        result = runner.invoke(app, ["fetch", "--db", str(blocker / "advisory-db"), "--url", "http://127.0.0.1:9/db.tar.gz"])

        assert result.exit_code == EXIT_ERROR
        assert not isinstance(result.exception, OSError)
