"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import json
import subprocess
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from studyloop import cli
from studyloop.core.models import utcnow
from studyloop.service import build_studyloop
from studyloop.store import InMemoryRepository

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent


def run_cli_command(command: str, timeout: int = 30) -> tuple[int, str, str]:
    """
    Run a CLI command and return exit code, stdout, stderr.

    Args:
        command: The command to run (after 'python -m studyloop.cli')
        timeout: Maximum time to wait

    Returns:
        Tuple of (exit_code, stdout, stderr)
    """
    full_command = f"{sys.executable} -m studyloop.cli {command}"

    result = subprocess.run(
        full_command,
        shell=True,
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
    )

    return result.returncode, result.stdout, result.stderr


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def offline(monkeypatch, settings, fake_capabilities):
    """Point the CLI at fake capabilities and one in-memory store shared across commands."""
    repository = InMemoryRepository()

    def build(config=None):
        return build_studyloop(
            settings, handlers=fake_capabilities.handlers(), repository=repository
        )

    monkeypatch.setattr(cli, "build_studyloop", build)
    return repository


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        """Main help should display without errors."""
        code, stdout, stderr = run_cli_command("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "studyloop" in stdout.lower()
        assert "Commands" in stdout

    @pytest.mark.parametrize(
        "command",
        ["ask", "scan", "challenge", "complete", "plan", "research", "past-papers", "export"],
    )
    def test_command_help(self, command):
        """Every command's help should work."""
        code, stdout, stderr = run_cli_command(f"{command} --help")

        assert code == 0, f"{command} help failed: {stderr}"
        assert "Usage" in stdout


class TestWorkflowCommands:
    """Workflow commands against fake capabilities."""

    def test_ask(self, runner, offline):
        result = runner.invoke(cli.app, ["ask", "alice", "How do I factor x^2 - 9?"])

        assert result.exit_code == 0, result.output
        assert "algebra" in result.output
        assert "0.62" in result.output

    def test_ask_then_proficiency(self, runner, offline):
        runner.invoke(cli.app, ["ask", "alice", "2 + 2?", "--topic", "arithmetic"])

        result = runner.invoke(cli.app, ["proficiency", "alice"])

        assert result.exit_code == 0, result.output
        assert "arithmetic" in result.output

    def test_scan(self, runner, offline, tmp_path):
        photo = tmp_path / "question.jpg"
        photo.write_bytes(b"\xff\xd8fake-jpeg")

        result = runner.invoke(cli.app, ["scan", "alice", str(photo)])

        assert result.exit_code == 0, result.output
        assert "What is 2 + 2?" in result.output

    def test_scan_missing_file(self, runner, offline, tmp_path):
        result = runner.invoke(cli.app, ["scan", "alice", str(tmp_path / "missing.jpg")])

        assert result.exit_code == 1

    def test_challenge_and_complete(self, runner, offline):
        day = "2026-05-04"
        result = runner.invoke(
            cli.app, ["challenge", "alice", "--topic", "chemistry", "-n", "3", "--date", day]
        )
        assert result.exit_code == 0, result.output
        assert "chemistry" in result.output

        result = runner.invoke(cli.app, ["complete", "alice", "0=1", "1=0", "--date", day])

        assert result.exit_code == 0, result.output
        assert "Updated proficiency" in result.output

    def test_complete_rejects_bad_answer(self, runner, offline):
        result = runner.invoke(cli.app, ["complete", "alice", "first=yes"])

        assert result.exit_code == 2

    def test_plan(self, runner, offline):
        exam = (utcnow().date() + timedelta(days=7)).isoformat()

        result = runner.invoke(
            cli.app,
            ["plan", "alice", "--exam-date", exam, "--topic", "algebra=2", "--topic", "calculus"],
        )

        assert result.exit_code == 0, result.output
        assert "7 days to exam" in result.output

    def test_plan_past_exam_is_invalid(self, runner, offline):
        result = runner.invoke(
            cli.app, ["plan", "alice", "--exam-date", "2000-01-01", "--topic", "algebra"]
        )

        assert result.exit_code == 2
        assert "invalid_input" in result.output
        assert "exam_date" in result.output

    def test_research(self, runner, offline):
        result = runner.invoke(cli.app, ["research", "alice", "spaced repetition"])

        assert result.exit_code == 0, result.output
        assert "Spacing effect" in result.output

    def test_past_papers(self, runner, offline, tmp_path):
        questions = tmp_path / "paper.txt"
        questions.write_text("Factor x^2 - 1\n\nSolve 2x = 3\n")

        result = runner.invoke(cli.app, ["past-papers", "alice", str(questions)])

        assert result.exit_code == 0, result.output
        assert "2 questions" in result.output


class TestDataCommands:
    """Export, erase and sweep."""

    def test_export_to_file(self, runner, offline, tmp_path):
        runner.invoke(cli.app, ["ask", "alice", "2 + 2?"])
        target = tmp_path / "alice.json"

        result = runner.invoke(cli.app, ["export", "alice", "-o", str(target)])

        assert result.exit_code == 0, result.output
        document = json.loads(target.read_text(encoding="utf-8"))
        assert document["student_id"] == "alice"
        assert len(document["proficiency"]) == 1

    def test_erase_requires_confirmation(self, runner, offline):
        result = runner.invoke(cli.app, ["erase", "alice"], input="n\n")

        assert result.exit_code == 1

    def test_erase(self, runner, offline):
        runner.invoke(cli.app, ["ask", "alice", "2 + 2?"])

        result = runner.invoke(cli.app, ["erase", "alice", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Removed 1 rows" in result.output

    def test_sweep(self, runner, offline):
        result = runner.invoke(cli.app, ["sweep"])

        assert result.exit_code == 0, result.output
        assert "Swept 0" in result.output
