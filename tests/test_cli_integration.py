import json
from pathlib import Path

from click.testing import CliRunner

from contentfactory.cli import cli
from contentfactory.config import load_config, save_config


def test_cli_init_plan_run_lifecycle(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--daily-limit", "900"])
    assert init_result.exit_code == 0, init_result.output
    config_path = tmp_path / "factory.toml"
    assert config_path.exists()
    config = load_config(config_path)
    assert config.budget.daily_limit == 900.0
    config.monitoring.poll_interval_seconds = 0.01
    save_config(config_path, config)

    plan_result = runner.invoke(
        cli, ["plan", "--proposal", "Minor workflow adjustments:25:operations"]
    )
    assert plan_result.exit_code == 0, plan_result.output
    plan = json.loads(plan_result.stdout)
    assert plan["budget_allocation"]["total"] == 800.0
    assert len(plan["department_tasks"]) == 4
    assert plan["priorities"][0]["action"] == "Minor workflow adjustments"
    assert plan["priorities"][0]["classification"] == "auto"

    run_result = runner.invoke(
        cli,
        ["run", "--cycles", "2", "--seed", "7", "--output", "reports"],
    )
    assert run_result.exit_code == 0, run_result.output
    summaries = json.loads(run_result.stdout)
    assert [item["status"] for item in summaries] == ["complete", "complete"]
    assert all(item["completed"] == 4 for item in summaries)
    report_files = sorted((tmp_path / "reports").glob("report-*.json"))
    assert len(report_files) == 2
    payload = json.loads(report_files[0].read_text(encoding="utf-8"))
    assert payload["report"]["content"]["posts_created"] == 10
    assert payload["report"]["budget"]["spent"] == 400.0


def test_cli_run_prints_single_cycle_json(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    config_path = tmp_path / "custom.toml"
    assert runner.invoke(cli, ["init", "--config", str(config_path)]).exit_code == 0
    config = load_config(config_path)
    config.monitoring.poll_interval_seconds = 0.01
    save_config(config_path, config)

    result = runner.invoke(
        cli,
        [
            "run",
            "--config",
            str(config_path),
            "--seed",
            "1",
            "--proposal",
            "Product pricing changes:10",
        ],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["status"] == "complete"
    issues = payload["report"]["issues"]
    assert [issue["kind"] for issue in issues] == ["approval_denied"]
    assert payload["plan"]["priorities"] == []


def test_cli_config_and_status_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    config_result = runner.invoke(cli, ["config"])
    assert config_result.exit_code == 0
    assert "[budget]" in config_result.stdout
    assert "[[planning.tasks]]" in config_result.stdout

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.stdout)
    assert status["phase"] == "idle"
    assert sorted(status["departments"]) == ["content", "distribution", "production", "revenue"]

    help_result = runner.invoke(cli, ["status", "--help"])
    assert help_result.exit_code == 0
    assert "configured departments, workers and budget" in help_result.stdout


def test_cli_rejects_malformed_proposal(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["plan", "--proposal", "Boost posts:lots"])

    assert result.exit_code != 0
    assert "Invalid proposal cost" in result.output
