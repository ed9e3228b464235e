from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from doc_evolution.cli.main import cli


@pytest.fixture
def dirs(tmp_path):
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "leave.md").write_text("# Leave policy\nSubmit leave requests promptly.\n")
    return ["--data-dir", str(tmp_path / "data"), "--docs-dir", str(docs)]


def test_list_strategies():
    result = CliRunner().invoke(cli, ["list-strategies"])
    assert result.exit_code == 0
    assert "rewrite" in result.output
    assert "interpretation" in result.output


def test_sync_registers_documents_once(dirs, tmp_path):
    runner = CliRunner()

    first = runner.invoke(cli, [*dirs, "sync"])
    assert first.exit_code == 0, first.output
    assert "leave" in first.output
    assert "1 new document(s) registered." in first.output
    assert (tmp_path / "data" / "documents.json").exists()

    second = runner.invoke(cli, [*dirs, "sync"])
    assert "0 new document(s) registered." in second.output


def test_run_without_feedback_does_nothing(dirs):
    runner = CliRunner()
    runner.invoke(cli, [*dirs, "sync"])

    result = runner.invoke(cli, [*dirs, "run"])

    assert result.exit_code == 0, result.output
    assert "Nothing to evolve." in result.output


def test_feedback_for_unknown_message_fails(dirs):
    result = CliRunner().invoke(cli, [*dirs, "feedback", "missing", "--rating", "bad"])
    assert result.exit_code == 1
    assert "No recorded response" in result.output


def test_feedback_after_logged_response(dirs, tmp_path):
    runner = CliRunner()
    runner.invoke(cli, [*dirs, "sync"])
    logged = runner.invoke(
        cli,
        [*dirs, "log-response", "--message-id", "m1", "--document", "leave",
         "--query", "How many days?", "--response", "Ten."],
    )
    assert logged.exit_code == 0, logged.output

    result = runner.invoke(cli, [*dirs, "feedback", "m1", "--rating", "bad", "--text", "Too vague"])

    assert result.exit_code == 0, result.output
    assert "BAD feedback for leave" in result.output
    [document] = json.loads((tmp_path / "data" / "documents.json").read_text())
    assert document["bad_count"] == 1
