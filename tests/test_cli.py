"""Tests for the command line interface."""

import json
import os

import pytest
from typer.testing import CliRunner

from slipsight import __version__
from slipsight.cli import app
from slipsight.core.config import reset_config
from slipsight.core.paths import normalize_path, recording_id_for_path
from slipsight.infra.database import DatabaseManager
from slp_builder import combo_replay

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Isolated home, config, store and replay folder."""
    folder = tmp_path / "Slippi"
    combo_replay().write(folder / "Game_1.slp")

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setenv("SLIPSIGHT_DB_PATH", str(tmp_path / "matches.db"))
    monkeypatch.setenv("SLIPSIGHT_REPLAY_FOLDERS", str(folder))
    reset_config()
    yield tmp_path
    reset_config()


class TestBasics:
    """Tests for version and config commands."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_init_config(self, workspace):
        result = runner.invoke(app, ["init-config", "custom.yaml"])
        assert result.exit_code == 0
        assert (workspace / "custom.yaml").exists()

        result = runner.invoke(app, ["init-config", "custom.yaml"])
        assert result.exit_code == 1
        assert "already exists" in result.stdout

        result = runner.invoke(app, ["init-config", "custom.yaml", "--force"])
        assert result.exit_code == 0

    def test_info(self, workspace):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0
        assert "SQLAlchemy" in result.stdout


class TestReplayCommands:
    """Tests for single-replay commands."""

    def test_stats(self, workspace):
        result = runner.invoke(app, ["stats", str(workspace / "Slippi" / "Game_1.slp")])
        assert result.exit_code == 0
        assert "Player Stats" in result.stdout
        assert "ALI#1" in result.stdout

    def test_stats_bad_file(self, workspace):
        bad = workspace / "bad.slp"
        bad.write_bytes(b"nope")
        result = runner.invoke(app, ["stats", str(bad)])
        assert result.exit_code == 1
        assert "Could not decode replay" in result.stdout

    def test_conversions(self, workspace):
        replay = workspace / "Slippi" / "Game_1.slp"
        result = runner.invoke(app, ["conversions", str(replay), "--player", "0"])
        assert result.exit_code == 0
        assert "1 conversion(s)" in result.stdout

        result = runner.invoke(app, ["conversions", str(replay), "--player", "1"])
        assert "0 conversion(s)" in result.stdout


class TestStoreCommands:
    """Tests for commands that write to or read from the match store."""

    def test_index(self, workspace):
        result = runner.invoke(app, ["index"])
        assert result.exit_code == 0
        assert "1 indexed, 0 skipped, 0 failed" in result.stdout

        result = runner.invoke(app, ["index"])
        assert "0 indexed, 1 skipped, 0 failed" in result.stdout

        result = runner.invoke(app, ["index", "--no-cache"])
        assert "1 indexed" in result.stdout

    def test_score_and_list(self, workspace):
        replay = workspace / "Slippi" / "Game_1.slp"
        result = runner.invoke(
            app, ["score", "/videos/Game_1.mp4", "--replay", str(replay), "--session-id", "s1"]
        )
        assert result.exit_code == 0
        assert "scored" in result.stdout

        result = runner.invoke(app, ["matches"])
        assert result.exit_code == 0
        assert "s1" in result.stdout
        assert "complete" in result.stdout

        db = DatabaseManager(os.environ["SLIPSIGHT_DB_PATH"])
        assert db.get_match_record("s1")["replay_path"] == normalize_path(replay)

    def test_score_unresolved(self, workspace):
        result = runner.invoke(
            app, ["score", "/videos/nothing.mp4"], env={"SLIPSIGHT_RESOLUTION_RETRY_DELAY": "0"}
        )
        assert result.exit_code == 0
        assert "unresolved" in result.stdout

    def test_recompute(self, workspace):
        replay = workspace / "Slippi" / "Game_1.slp"
        runner.invoke(
            app, ["score", "/videos/Game_1.mp4", "--replay", str(replay), "--session-id", "s1"]
        )

        result = runner.invoke(app, ["recompute", "s1"])
        assert result.exit_code == 0
        assert "Recomputed" in result.stdout

        result = runner.invoke(app, ["recompute", "missing"])
        assert result.exit_code == 1
        assert "No match" in result.stdout

        replay.unlink()
        result = runner.invoke(app, ["recompute", "s1"])
        assert result.exit_code == 1
        assert "Cannot recompute" in result.stdout

    def test_delete(self, workspace):
        runner.invoke(app, ["index"])
        recording_id = recording_id_for_path(workspace / "Slippi" / "Game_1.slp")

        result = runner.invoke(app, ["delete", recording_id])
        assert result.exit_code == 0

        result = runner.invoke(app, ["delete", recording_id])
        assert result.exit_code == 1
        assert "No match" in result.stdout

    def test_report_json(self, workspace):
        replay = workspace / "Slippi" / "Game_1.slp"
        runner.invoke(app, ["score", "/videos/Game_1.mp4", "--replay", str(replay)])

        result = runner.invoke(app, ["report", "--tag", "ALI#1", "--json"])
        assert result.exit_code == 0
        summary = json.loads(result.stdout)
        assert summary["games"] == 1
        assert summary["wins"] == 1
        assert summary["by_stage"]["31"]["games"] == 1

    def test_report_table(self, workspace):
        result = runner.invoke(app, ["report", "--tag", "NOBODY#0"])
        assert result.exit_code == 0
        assert "Games" in result.stdout
