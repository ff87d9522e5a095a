import tomllib
from pathlib import Path

from contentfactory import __version__
from contentfactory.config import FactoryConfig, TaskTemplate, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "factory.toml"
    config = FactoryConfig.default()
    config.budget.daily_limit = 1500.0
    config.budget.split = {"content": 0.5, "production": 0.5}
    config.autonomy.requires_approval = ["Product pricing changes"]
    config.autonomy.approval_timeout_seconds = 2.5
    config.queue.max_attempts = 5
    config.workers.concurrency = 2
    config.workers.department_concurrency = {"content": 4}
    config.monitoring.poll_interval_seconds = 0.5
    config.planning.departments = ["content", "production"]
    config.planning.theme_count = 2
    config.planning.tasks = [
        TaskTemplate("content", "Write 3 blog posts", "low", 6.0, 40.0),
    ]
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.budget.daily_limit == 1500.0
    assert loaded.budget.planning_budget == 800.0
    assert loaded.budget.split == {"content": 0.5, "production": 0.5}
    assert loaded.autonomy.requires_approval == ["Product pricing changes"]
    assert loaded.autonomy.approval_timeout_seconds == 2.5
    assert loaded.queue.max_attempts == 5
    assert loaded.workers.concurrency_for("content") == 4
    assert loaded.workers.concurrency_for("production") == 2
    assert loaded.monitoring.poll_interval_seconds == 0.5
    assert loaded.planning.departments == ["content", "production"]
    assert loaded.planning.theme_count == 2
    assert loaded.planning.tasks == [
        TaskTemplate("content", "Write 3 blog posts", "low", 6.0, 40.0),
    ]
    assert loaded.logging.level == "DEBUG"
    assert loaded.to_dict() == config.to_dict()


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.to_dict() == FactoryConfig.default().to_dict()
    assert loaded.budget.split["content"] == 0.30
    assert loaded.monitoring.success_rate_threshold == 0.95


def test_toml_dump_contains_sections_and_task_tables() -> None:
    rendered = dumps_toml(FactoryConfig.default())

    for section in ("budget", "autonomy", "queue", "workers", "monitoring", "planning", "logging"):
        assert f"[{section}]" in rendered
    assert rendered.count("[[planning.tasks]]") == 4
    assert "daily_limit = 1000.0" in rendered
    assert 'split = { "content" = 0.3' in rendered
    assert "department_concurrency = {}" in rendered

    parsed = tomllib.loads(rendered)
    assert parsed["planning"]["tasks"][0]["department"] == "content"
    assert parsed["workers"]["health_failure_limit"] == 3


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
