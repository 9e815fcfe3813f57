"""
命令行测试
"""
import json
import pytest
from click.testing import CliRunner

from recipe_engine.cli import cli


VALID_RECIPE = """
recipe:
  name: Smoke test
  steps:
    - id: ask
      type: run_agent
      config:
        agent_id: echo
        input:
          text: "${greeting}"
      next_step_id: tell
    - id: tell
      type: notify
      config:
        message: "${greeting} sent"
"""

FAILING_RECIPE = """
name: Always fails
steps:
  - id: check
    type: branch
    config:
      condition: "?? not a condition"
    next_step_id: end
  - id: end
    type: notify
"""


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return CliRunner()


@pytest.fixture
def recipe_file(tmp_path):
    path = tmp_path / "smoke.yaml"
    path.write_text(VALID_RECIPE, encoding="utf-8")
    return path


class TestValidateCommand:

    def test_valid_recipe(self, runner, recipe_file):
        result = runner.invoke(cli, ["validate", str(recipe_file)])
        assert result.exit_code == 0
        assert "Recipe 'Smoke test' is valid (2 steps)" in result.output

    def test_invalid_recipe(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({"name": "x", "steps": [{"id": "a", "type": "nope"}]}), encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "steps.0.type" in result.output


class TestRunCommand:

    def test_run_prints_execution(self, runner, recipe_file):
        result = runner.invoke(
            cli, ["--log-level", "CRITICAL", "run", str(recipe_file), "--context", '{"greeting": "hi"}']
        )

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["execution"]["status"] == "completed"
        assert report["execution"]["context"]["triggered_by"] == "cli"
        assert report["execution"]["context"]["step_outputs"]["tell"]["message"] == "hi sent"
        assert [a["step_id"] for a in report["artifacts"]] == ["ask", "tell"]

    def test_failed_run_exits_non_zero(self, runner, tmp_path):
        path = tmp_path / "failing.yml"
        path.write_text(FAILING_RECIPE, encoding="utf-8")

        result = runner.invoke(cli, ["--log-level", "CRITICAL", "run", str(path)])

        assert result.exit_code == 1

    @pytest.mark.parametrize("context", ["not json", "[1, 2]"])
    def test_bad_context(self, runner, recipe_file, context):
        result = runner.invoke(cli, ["run", str(recipe_file), "--context", context])
        assert result.exit_code == 2


class TestNextRunCommand:

    def test_lists_upcoming_runs(self, runner):
        result = runner.invoke(
            cli, ["next-run", "0 9 * * *", "--from", "2024-01-15T08:00:00Z", "--count", "2"]
        )

        assert result.exit_code == 0
        assert result.output.splitlines() == [
            "2024-01-15T09:00:00+00:00",
            "2024-01-16T09:00:00+00:00",
        ]

    def test_invalid_expression(self, runner):
        result = runner.invoke(cli, ["next-run", "0 9 * *"])
        assert result.exit_code == 1
        assert "Invalid cron expression" in result.output

    def test_impossible_expression(self, runner):
        result = runner.invoke(cli, ["next-run", "0 0 30 2 *"])
        assert result.exit_code == 0
        assert "No matching time" in result.output


class TestSweepCommand:

    def test_requires_database(self, runner):
        result = runner.invoke(cli, ["sweep"])
        assert result.exit_code == 1
        assert "DATABASE_URL is required" in result.output
