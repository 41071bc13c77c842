"""Tests for the beacon CLI."""

import json
import pytest
import tempfile
from pathlib import Path

from click.testing import CliRunner

from beacon_crm.cli.main import cli


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def run(*args):
    return CliRunner().invoke(cli, [str(a) for a in args])


def write_batch(path, batches):
    path.write_text(json.dumps(batches))
    return path


class TestCli:
    """Tests for the click command group."""

    def test_migrate(self, workspace):
        result = run("migrate", "--db", workspace / "t.db")
        assert result.exit_code == 0
        assert "migration" in result.output

    def test_add_business(self, workspace):
        result = run("add-business", "Acme", "--db", workspace / "t.db")
        assert result.exit_code == 0
        assert "Business #1" in result.output

    def test_ingest_and_list_leads(self, workspace):
        db = workspace / "t.db"
        run("add-business", "Acme", "--db", db)
        batch = {
            "sessionData": {"visitorId": "V1", "sessionId": "S1", "businessId": 1},
            "events": [{"eventType": "conversion", "eventData": {"email": "hot@lead.io", "name": "Hot Lead",
                                                                  "leadScore": 92}}],
        }
        result = run("ingest", write_batch(workspace / "batch.json", batch), "--db", db)
        assert result.exit_code == 0
        assert "1 batch(es) applied" in result.output

        result = run("leads", "--hot", "--db", db)
        assert result.exit_code == 0
        assert "hot@lead.io" in result.output

        result = run("stats", "--db", db)
        assert result.exit_code == 0
        assert "1 hot" in result.output

    def test_ingest_reports_rejected_batches(self, workspace):
        db = workspace / "t.db"
        run("add-business", "Acme", "--db", db)
        batches = [
            {"sessionData": {"visitorId": "V1", "sessionId": "S1", "businessId": 1},
             "events": [{"eventType": "session_start"}]},
            {"sessionData": {"visitorId": "V1", "sessionId": "S2", "businessId": 7},
             "events": [{"eventType": "session_start"}]},
        ]
        result = run("ingest", write_batch(workspace / "batches.json", batches), "--db", db)
        assert result.exit_code == 1
        assert "rejected" in result.output

    def test_ingest_invalid_json(self, workspace):
        path = workspace / "bad.json"
        path.write_text("{oops")
        result = run("ingest", path, "--db", workspace / "t.db")
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_leads_empty(self, workspace):
        result = run("leads", "--db", workspace / "t.db")
        assert result.exit_code == 0
        assert "No leads found" in result.output
