"""Tests for settings resolution."""

import pytest

from lens.core.config import LensSettings, get_settings


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Run in an empty directory with no global config."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LENS_HOME", str(tmp_path / "home"))
    for var in ("LENS_DATABASE_URL", "LENS_RAW_DATA_DIR", "LENS_BATCH_SIZE", "LENS_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


class TestSettings:
    def test_defaults(self):
        settings = get_settings()
        assert settings.database_url == "sqlite+aiosqlite:///lens.db"
        assert settings.raw_data_dir == "./data/raw"
        assert settings.batch_size == 1000
        assert settings.in_memory is False

    def test_memory_url(self):
        assert LensSettings(database_url="memory://").in_memory is True

    def test_env_vars(self, monkeypatch):
        monkeypatch.setenv("LENS_DATABASE_URL", "memory://")
        monkeypatch.setenv("LENS_BATCH_SIZE", "50")
        settings = get_settings()
        assert settings.in_memory is True
        assert settings.batch_size == 50

    def test_local_toml(self, isolated):
        (isolated / "lens.toml").write_text(
            '[lens]\nraw_data_dir = "/data/movielens"\nbatch_size = 200\n'
        )
        settings = get_settings()
        assert settings.raw_data_dir == "/data/movielens"
        assert settings.batch_size == 200

    def test_local_toml_overrides_global(self, isolated):
        home = isolated / "home"
        home.mkdir()
        (home / "lens.toml").write_text('[lens]\nbatch_size = 10\nlog_level = "debug"\n')
        (isolated / "lens.toml").write_text("[lens]\nbatch_size = 20\n")

        settings = get_settings()

        assert settings.batch_size == 20
        assert settings.log_level == "debug"

    def test_env_wins_over_toml(self, isolated, monkeypatch):
        (isolated / "lens.toml").write_text('[lens]\ndatabase_url = "sqlite+aiosqlite:///other.db"\n')
        monkeypatch.setenv("LENS_DATABASE_URL", "memory://")
        assert get_settings().database_url == "memory://"

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("LENS_RAW_DATA_DIR", "/env")
        settings = get_settings(raw_data_dir="/cli", database_url=None)
        assert settings.raw_data_dir == "/cli"
        assert settings.database_url == "sqlite+aiosqlite:///lens.db"

    def test_unreadable_toml_is_ignored(self, isolated):
        (isolated / "lens.toml").write_text("not = [valid")
        assert get_settings().batch_size == 1000
