"""Unit tests for settings loading."""

import pytest
from pydantic import ValidationError

from stock_screener.config import EngineConfig, FMPConfig, Settings, load_settings


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")

        assert settings.engine.trailing_stop_pct == 15.0
        assert settings.engine.time_cutoff_hour == 15
        assert settings.engine.time_cutoff_minute == 45

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "engine:\n"
            "  trailing_stop_pct: 8\n"
            "  profit_target_pct: 20\n"
            "screening:\n"
            "  scoring_mode: equal\n"
        )

        settings = load_settings(path)

        assert settings.engine.trailing_stop_pct == 8.0
        assert settings.engine.profit_target_pct == 20.0
        assert settings.engine.max_hold_days == 5
        assert settings.screening.scoring_mode == "equal"

    def test_env_database_path_wins(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("database:\n  path: from_file.db\n")
        monkeypatch.setenv("STOCK_SCREENER_DB", "from_env.db")

        assert load_settings(path).database.path == "from_env.db"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("")

        assert isinstance(load_settings(path), Settings)


class TestValidation:
    @pytest.mark.parametrize("value", [0, 100, -5])
    def test_trailing_stop_bounds(self, value):
        with pytest.raises(ValidationError):
            EngineConfig(trailing_stop_pct=value)

    def test_fmp_key_from_env(self, monkeypatch):
        monkeypatch.setenv("FMP_API_KEY", "env_test_key")

        assert FMPConfig().api_key == "env_test_key"
        assert FMPConfig.from_env().api_key == "env_test_key"
