"""
Tests for configuration validation and defaults.

Tests cover:
- Defaults class values
- ServiceConfig.from_settings() - all sections
- ConfigValidationError on invalid values
- String log level coercion ("DEBUG" -> 4)
- Environment overrides
- load_settings() from YAML
- Settings.with_overrides() leaves the original untouched
"""

import pytest

from parler_serve.core.config import (
    ConfigValidationError,
    Defaults,
    ServiceConfig,
    Settings,
    load_settings,
    settings_path,
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for name in ("PARLER_SERVE_HOST", "PARLER_SERVE_PORT", "PARLER_SERVE_FORCE_CPU",
                 "PARLER_SERVE_ENGINE", "PARLER_SERVE_SETTINGS"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    """Tests for Defaults class values."""

    def test_server_defaults(self):
        assert Defaults.SERVER_HOST == "0.0.0.0"
        assert Defaults.SERVER_PORT == 8039

    def test_scheduler_defaults(self):
        """Queue and timeout defaults."""
        assert Defaults.SCHEDULER_MAX_QUEUE == 8
        assert Defaults.SCHEDULER_JOB_TIMEOUT_S == 180.0

    def test_generation_defaults(self):
        assert Defaults.GENERATION_DEFAULT_TEMPERATURE == 1.0
        assert Defaults.GENERATION_DEFAULT_TOP_P == 1.0
        assert Defaults.GENERATION_TOP_P_MIN == 0.01

    def test_engine_defaults(self):
        assert Defaults.ENGINE_TYPE == "parler"
        assert Defaults.ENGINE_MODEL_ID == "parler-tts/parler-tts-large-v1"


class TestServiceConfigFromSettings:
    """Tests for ServiceConfig.from_settings()."""

    def test_empty_settings_use_defaults(self):
        """Missing sections should fall back to Defaults."""
        config = ServiceConfig.from_settings(Settings(raw={}))

        assert config.server.port == Defaults.SERVER_PORT
        assert config.device.force_cpu is False
        assert config.engine.type == "parler"
        assert config.scheduler.max_queue == Defaults.SCHEDULER_MAX_QUEUE
        assert config.generation.max_text_chars == Defaults.GENERATION_MAX_TEXT_CHARS
        assert config.audio.chunk_bytes == Defaults.AUDIO_CHUNK_BYTES
        assert config.audio.target_lufs == -14.0
        assert config.audio.loudness_compressor is True
        assert config.logging.level == Defaults.LOGGING_LEVEL

    def test_null_sections_use_defaults(self):
        """A YAML section left empty parses as None."""
        config = ServiceConfig.from_settings(Settings(raw={"scheduler": None, "audio": None}))
        assert config.scheduler.job_timeout_s == Defaults.SCHEDULER_JOB_TIMEOUT_S

    def test_values_read_from_sections(self):
        raw = {
            "server": {"host": "127.0.0.1", "port": 9000, "cors_allow_origins": "http://a, http://b"},
            "device": {"force_cpu": "yes"},
            "engine": {"type": "Parler", "model_id": "parler-tts/parler-tts-mini-v1", "dtype": "float16"},
            "scheduler": {"max_queue": 0, "job_timeout_s": 5},
            "generation": {"max_text_chars": 20, "top_p_min": 0.05},
            "audio": {"chunk_bytes": 1024, "normalize_loudness": False},
        }
        config = ServiceConfig.from_settings(Settings(raw=raw))

        assert config.server.host == "127.0.0.1"
        assert config.server.port == 9000
        assert config.server.cors_allow_origins == ["http://a", "http://b"]
        assert config.device.force_cpu is True
        assert config.engine.type == "parler"
        assert config.engine.model_id == "parler-tts/parler-tts-mini-v1"
        assert config.engine.dtype == "float16"
        assert config.scheduler.max_queue == 0
        assert config.scheduler.job_timeout_s == 5.0
        assert config.generation.max_text_chars == 20
        assert config.generation.top_p_min == 0.05
        assert config.audio.chunk_bytes == 1024
        assert config.audio.normalize_loudness is False

    @pytest.mark.parametrize("value,expected", [("DEBUG", 4), ("minimal", 1), ("3", 3), (2, 2)])
    def test_log_level_coercion(self, value, expected):
        config = ServiceConfig.from_settings(Settings(raw={"logging": {"level": value}}))
        assert config.logging.level == expected

    @pytest.mark.parametrize("raw", [
        {"scheduler": {"max_queue": -1}},
        {"scheduler": {"job_timeout_s": 0}},
        {"server": {"port": 70000}},
        {"engine": {"max_new_tokens": 0}},
        {"engine": {"dtype": "int8"}},
        {"generation": {"default_temperature": 3.0}},
        {"generation": {"default_top_p": 0.0}},
        {"audio": {"chunk_bytes": 0}},
        {"audio": {"target_lufs": 3.0}},
        {"logging": {"level": 9}},
    ])
    def test_invalid_values_rejected(self, raw):
        """Out-of-range values raise ConfigValidationError."""
        with pytest.raises(ConfigValidationError):
            ServiceConfig.from_settings(Settings(raw=raw))


class TestEnvironmentOverrides:
    """Environment variables take precedence over YAML."""

    def test_force_cpu_env(self, monkeypatch):
        monkeypatch.setenv("PARLER_SERVE_FORCE_CPU", "1")
        config = ServiceConfig.from_settings(Settings(raw={"device": {"force_cpu": False}}))
        assert config.device.force_cpu is True

    def test_force_cpu_env_false_wins(self, monkeypatch):
        monkeypatch.setenv("PARLER_SERVE_FORCE_CPU", "0")
        config = ServiceConfig.from_settings(Settings(raw={"device": {"force_cpu": True}}))
        assert config.device.force_cpu is False

    def test_port_and_host_env(self, monkeypatch):
        monkeypatch.setenv("PARLER_SERVE_PORT", "9100")
        monkeypatch.setenv("PARLER_SERVE_HOST", "localhost")
        config = ServiceConfig.from_settings(Settings(raw={"server": {"port": 8000}}))
        assert config.server.port == 9100
        assert config.server.host == "localhost"

    def test_settings_path_env(self, monkeypatch):
        assert settings_path() == "config/settings.yaml"
        monkeypatch.setenv("PARLER_SERVE_SETTINGS", "/etc/parler.yaml")
        assert settings_path() == "/etc/parler.yaml"


class TestLoadSettings:
    """Tests for load_settings() and Settings."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("scheduler:\n  max_queue: 3\nserver:\n  port: 8123\n", encoding="utf-8")

        settings = load_settings(str(path))
        config = settings.get_service_config()
        assert config.scheduler.max_queue == 3
        assert config.server.port == 8123

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(str(path)).raw == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_repo_settings_file_is_valid(self):
        """The shipped config/settings.yaml should validate."""
        from pathlib import Path

        path = Path(__file__).resolve().parents[1] / "config" / "settings.yaml"
        config = load_settings(str(path)).get_service_config()
        assert config.engine.type == "parler"

    def test_with_overrides_copies(self):
        """with_overrides() returns a new Settings; the original is unchanged."""
        original = Settings(raw={"server": {"port": 8039, "host": "0.0.0.0"}})
        updated = original.with_overrides("server", port=9000)

        assert updated.raw["server"] == {"port": 9000, "host": "0.0.0.0"}
        assert original.raw["server"]["port"] == 8039

    def test_with_overrides_new_section(self):
        updated = Settings(raw={}).with_overrides("device", force_cpu=True)
        assert updated.get_service_config().device.force_cpu is True
