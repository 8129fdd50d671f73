"""Tests for the command line entry point."""

import json

import pytest

from app_explorer.__main__ import main
from app_explorer.state import ExplorationState

from factories import PKG


@pytest.fixture
def knowledge_file(tmp_path):
    state = ExplorationState(PKG)
    graph = state.navigation_graph
    graph.record_transition("main", "devices", "devices_list")
    graph.record_transition("devices_list", "kitchen", "detail")
    graph.record_transition("main", "login_btn", "login", to_screen_activity=".LoginActivity")
    path = tmp_path / "knowledge.json"
    path.write_text(json.dumps({"state": state.to_json(), "coverage": {}}))
    return str(path)


class TestConfigCommand:
    def test_prints_preset(self, capsys):
        assert main(["config", "--preset", "quick_scan"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["goal"] == "quick_scan"
        assert data["max_screens"] == 20

    def test_env_overlay(self, capsys, monkeypatch):
        monkeypatch.setenv("APP_EXPLORER_MAX_SCREENS", "7")

        assert main(["config", "--env"]) == 0

        assert json.loads(capsys.readouterr().out)["max_screens"] == 7


class TestStatsCommand:
    def test_prints_graph_stats(self, knowledge_file, capsys):
        assert main(["stats", knowledge_file]) == 0

        out = capsys.readouterr().out
        assert f"Package: {PKG}" in out
        assert "Screens: 4 (0 fully explored)" in out
        assert "Transitions: 3" in out
        assert "Blocker screens: 1" in out


class TestPathCommand:
    def test_prints_both_paths(self, knowledge_file, capsys):
        assert main(["path", knowledge_file, "--from", "main", "--to", "detail"]) == 0

        out = capsys.readouterr().out
        assert "Optimal:   main[devices] -> devices_[kitchen]" in out
        assert "Fewest hops: main[devices] -> devices_[kitchen]" in out

    def test_no_route(self, knowledge_file, capsys):
        assert main(["path", knowledge_file, "--from", "detail", "--to", "main"]) == 0

        assert "no path" in capsys.readouterr().out

    def test_unknown_screen(self, knowledge_file, capsys):
        assert main(["path", knowledge_file, "--from", "main", "--to", "nowhere"]) == 1

        assert "Unknown screen: nowhere" in capsys.readouterr().out
