"""配置读取测试"""

from taskrelay.core import config


class TestPositiveIntConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TASKRELAY_MAX_TASKS_PER_PROJECT", raising=False)
        monkeypatch.delenv("TASKRELAY_MAX_TASK_DEPENDENCIES_PER_TASK", raising=False)
        assert config.get_max_tasks_per_project() == 500
        assert config.get_max_dependencies_per_task() == 25

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("TASKRELAY_MAX_TASKS_PER_PROJECT", "3")
        assert config.get_max_tasks_per_project() == 3

    def test_invalid_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("TASKRELAY_MAX_TASKS_PER_PROJECT", "lots")
        assert config.get_max_tasks_per_project() == 500
        monkeypatch.setenv("TASKRELAY_MAX_TASKS_PER_PROJECT", "-1")
        assert config.get_max_tasks_per_project() == 500


class TestPageSize:
    def test_clamp(self, monkeypatch):
        monkeypatch.delenv("TASKRELAY_TASK_LIST_DEFAULT_PAGE_SIZE", raising=False)
        monkeypatch.delenv("TASKRELAY_TASK_LIST_MAX_PAGE_SIZE", raising=False)
        assert config.clamp_page_size(None) == 50
        assert config.clamp_page_size(0) == 50
        assert config.clamp_page_size(10) == 10
        assert config.clamp_page_size(10_000) == 200


class TestStuckTaskTimeouts:
    def test_defaults(self, monkeypatch):
        for env_var in (
            "TASKRELAY_TASK_STUCK_QUEUED_TIMEOUT_S",
            "TASKRELAY_TASK_STUCK_DELEGATED_TIMEOUT_S",
            "TASKRELAY_TASK_MAX_EXECUTION_S",
        ):
            monkeypatch.delenv(env_var, raising=False)
        assert config.get_stuck_queued_timeout_s() == 600
        assert config.get_stuck_delegated_timeout_s() == 960
        assert config.get_max_execution_s() == 14400

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("TASKRELAY_TASK_STUCK_DELEGATED_TIMEOUT_S", "120")
        assert config.get_stuck_delegated_timeout_s() == 120


class TestDbPath:
    def test_explicit_path(self, monkeypatch):
        monkeypatch.setenv("TASKRELAY_DB_PATH", "/tmp/x.db")
        assert config.get_db_path() == "/tmp/x.db"

    def test_derived_from_data_dir(self, monkeypatch, tmp_path):
        monkeypatch.delenv("TASKRELAY_DB_PATH", raising=False)
        monkeypatch.setenv("TASKRELAY_DATA_DIR", str(tmp_path))
        assert config.get_db_path() == str(tmp_path / "sqlite" / "taskrelay.db")
