"""Tests for the command-line interface"""

import json
from unittest.mock import AsyncMock

import pytest
import yaml
from click.testing import CliRunner

from novelctx.cli import main as cli
from novelctx.memory import InMemoryGraphQueryService, QueryCache
from novelctx.models import BudgetPolicy


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path):
    """Config, graph fixture and one novel on disk"""
    fixture = tmp_path / "graph.json"
    fixture.write_text(json.dumps({
        "n1": [
            {"type": "event", "id": "e1", "chapter_number": 2, "relevance_score": 0.9,
             "properties": {"title": "Ambush"}},
            {"type": "world_rule", "id": "w1", "chapter_number": 1, "relevance_score": 0.5,
             "properties": {"name": "Qi cost"}},
        ]
    }), encoding="utf-8")

    chapters_dir = tmp_path / "novels" / "n1" / "chapters"
    chapters_dir.mkdir(parents=True)
    (tmp_path / "novels" / "n1" / "novel.json").write_text(json.dumps({
        "core_settings": " ".join(["setting"] * 100),
        "volumes": [],
        "chapter_plans": {"5": {"goal": "Escape"}},
    }), encoding="utf-8")
    for n in range(1, 5):
        (chapters_dir / f"{n}.json").write_text(json.dumps({
            "chapter_number": n,
            "title": f"Chapter {n}",
            "content": " ".join(["word"] * 100),
            "summary": f"Summary {n}",
        }), encoding="utf-8")

    config = {
        "cache": {"ttl_seconds": 300},
        "graph": {"provider": "in_memory", "fixture": str(fixture)},
        "storage": {"chapters_dir": str(tmp_path / "novels")},
        "logging": {"level": "WARNING"},
    }
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return tmp_path, config, config_path


def write_config(path, config):
    path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return path


class TestFactories:
    """Composition from config"""

    def test_budget_policy_from_config(self):
        policy = cli.create_budget_policy({"budget": {"counts": {"max_events": 3}, "tokens": {"total_input_budget": 5000}}})
        assert policy.counts.max_events == 3
        assert policy.tokens.total_input_budget == 5000
        assert policy.counts.max_foreshadows == 6

    def test_defaults_from_empty_config(self):
        assert isinstance(cli.create_budget_policy({}), BudgetPolicy)
        cache = cli.create_query_cache({})
        assert isinstance(cache, QueryCache)
        assert cache.ttl_seconds == 300
        assert isinstance(cli.create_graph_service({}), InMemoryGraphQueryService)

    def test_assembler_uses_given_empty_cache(self):
        cache = QueryCache()
        assert len(cache) == 0
        assert cli.create_assembler({}, cache).query_cache is cache

    def test_load_config(self, workspace):
        _, config, config_path = workspace
        assert cli.load_config(config_path) == config


class TestBuildCommand:
    """novelctx build"""

    def test_build_prints_sections(self, runner, workspace):
        _, _, config_path = workspace

        result = runner.invoke(cli.main, ["build", "n1", "5", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        assert "Context for chapter 5" in result.output
        assert "relevant_events" in result.output
        assert "Query cache" in result.output

    def test_repeat_reuses_cache(self, runner, workspace):
        _, _, config_path = workspace

        result = runner.invoke(cli.main, ["build", "n1", "5", "--config", str(config_path), "--repeat", "2"])

        assert result.exit_code == 0, result.output
        assert "50%" in result.output

    def test_budget_exceeded_exit_code(self, runner, workspace):
        tmp_path, config, _ = workspace
        config["budget"] = {"tokens": {"total_input_budget": 50}}
        config_path = write_config(tmp_path / "tight.yaml", config)

        result = runner.invoke(cli.main, ["build", "n1", "5", "--config", str(config_path)])

        assert result.exit_code == cli.EXIT_BUDGET_EXCEEDED
        assert "Budget exceeded" in result.output

    def test_graph_unavailable_exit_code(self, runner, workspace, monkeypatch):
        _, _, config_path = workspace
        graph = AsyncMock(spec=InMemoryGraphQueryService)
        graph.query_entities.side_effect = ConnectionError("refused")
        monkeypatch.setattr(cli, "create_graph_service", lambda config: graph)

        result = runner.invoke(cli.main, ["build", "n1", "5", "--config", str(config_path)])

        assert result.exit_code == cli.EXIT_GRAPH_UNAVAILABLE
        assert "Story graph unavailable" in result.output
        graph.close.assert_awaited_once()

    def test_chapter_must_be_positive(self, runner, workspace):
        _, _, config_path = workspace
        result = runner.invoke(cli.main, ["build", "n1", "0", "--config", str(config_path)])
        assert result.exit_code != 0


class TestEstimateCommand:
    """novelctx estimate"""

    def test_estimate(self, runner, tmp_path):
        text_file = tmp_path / "chapter.txt"
        text_file.write_text("hello world", encoding="utf-8")

        result = runner.invoke(cli.main, ["estimate", str(text_file)])

        assert result.exit_code == 0
        assert "Estimated tokens: 2" in result.output

    def test_truncation_preview(self, runner, tmp_path):
        text_file = tmp_path / "chapter.txt"
        text_file.write_text(" ".join(["word"] * 500), encoding="utf-8")

        result = runner.invoke(cli.main, ["estimate", str(text_file), "--max-tokens", "20"])

        assert result.exit_code == 0
        assert "Truncated to" in result.output
