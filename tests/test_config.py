"""Tests for Settings configuration and .env file loading."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from parrot_autopilot.config import Settings


class TestSettingsDefaults:
    """Test Settings default values in isolated environment."""

    def test_settings_defaults_no_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings uses defaults when no .env file exists."""
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.ai_provider == "anthropic"
        assert settings.data == Path.home() / ".local" / "share" / "parrot-autopilot"
        assert settings.history_batch_size == 200
        assert settings.max_action_attempts == 3
        assert settings.goal_confidence_threshold == 70
        assert settings.confidence_boost == 5

    def test_settings_db_path_property(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings.db_path property."""
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        expected = (
            Path.home() / ".local" / "share" / "parrot-autopilot" / "parrot-autopilot.db"
        )
        assert settings.db_path == expected


class TestSettingsEnvFileLoading:
    """Test Settings loads from .env file in CWD."""

    def test_settings_loads_from_cwd_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings loads PARROT_MODEL from .env in CWD."""
        env_file = tmp_path / ".env"
        env_file.write_text("PARROT_MODEL=claude-3-sonnet\n")

        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.model == "claude-3-sonnet"

    def test_settings_loads_multiple_vars_from_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings loads multiple PARROT_* vars from .env."""
        custom_data = tmp_path / "my_data"
        custom_data.mkdir()

        env_file = tmp_path / ".env"
        env_file.write_text(
            dedent(f"""\
                PARROT_DATA={custom_data}
                PARROT_HISTORY_BATCH_DELAY=0.5
                PARROT_CONFIDENCE_BOOST=10
                PARROT_WRITING_SAMPLES=["hey!", "sure thing"]
                """)
        )

        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.data == custom_data
        assert settings.history_batch_delay == 0.5
        assert settings.confidence_boost == 10
        assert settings.writing_samples == ["hey!", "sure thing"]


class TestSettingsEnvVarOverride:
    """Test environment variables override .env file values."""

    def test_precedence_env_var_over_env_file_over_default(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test full precedence: env var > .env file > default."""
        env_file = tmp_path / ".env"
        env_file.write_text("PARROT_MODEL=from-env-file\n")

        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PARROT_MODEL", "from-env-var")

        settings = Settings()

        assert settings.model == "from-env-var"

    def test_settings_ignores_wrong_prefix(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings ignores MODEL (no PARROT_ prefix)."""
        env_file = tmp_path / ".env"
        env_file.write_text("MODEL=should-be-ignored\n")

        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("OTHER_MODEL", "should-be-ignored")

        settings = Settings()

        assert settings.model == Settings.model_fields["model"].default


class TestSettingsMissingEnvFile:
    """Test Settings handles missing or empty .env files gracefully."""

    def test_settings_works_with_comments_only_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings works with .env file containing only comments."""
        env_file = tmp_path / ".env"
        env_file.write_text("# This is a comment\n# Another comment\n")

        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.log_level == "INFO"
