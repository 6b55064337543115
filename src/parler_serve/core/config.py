"""
Configuration Management for parler-serve.

Configuration Hierarchy (highest priority first):
    1. Environment variables (PARLER_SERVE_FORCE_CPU, PARLER_SERVE_PORT, ...)
    2. YAML config file (config/settings.yaml, or PARLER_SERVE_SETTINGS)
    3. Defaults class values

Example settings.yaml:
    server:
      host: 0.0.0.0
      port: 8039

    device:
      force_cpu: false

    engine:
      type: parler
      model_id: parler-tts/parler-tts-large-v1

    scheduler:
      max_queue: 8
      job_timeout_s: 180

Everything is read once at startup; nothing here is mutable at runtime.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml


class ConfigValidationError(Exception):
    """Raised when a configuration value is outside acceptable bounds."""
    pass


class Defaults:
    """Default configuration values, used when YAML and env are silent."""

    # ─────────────────────────────────────────────────────────────────────────
    # Server
    # ─────────────────────────────────────────────────────────────────────────
    SERVER_HOST = "0.0.0.0"
    SERVER_PORT = 8039
    SERVER_CORS_ALLOW_ORIGINS = ["*"]
    SERVER_DISCONNECT_POLL_S = 0.2      # How often a waiting request checks its client

    # ─────────────────────────────────────────────────────────────────────────
    # Device
    # ─────────────────────────────────────────────────────────────────────────
    DEVICE_FORCE_CPU = False

    # ─────────────────────────────────────────────────────────────────────────
    # Engine
    # ─────────────────────────────────────────────────────────────────────────
    ENGINE_TYPE = "parler"
    ENGINE_MODEL_ID = "parler-tts/parler-tts-large-v1"
    ENGINE_REVISION = "main"
    ENGINE_MAX_NEW_TOKENS = 512         # Decoder steps cap
    ENGINE_DTYPE = "float32"

    # ─────────────────────────────────────────────────────────────────────────
    # Scheduler
    # ─────────────────────────────────────────────────────────────────────────
    SCHEDULER_MAX_QUEUE = 8             # Waiting jobs before QUEUE_FULL
    SCHEDULER_JOB_TIMEOUT_S = 180.0     # Wait + run budget per job

    # ─────────────────────────────────────────────────────────────────────────
    # Generation parameter limits
    # ─────────────────────────────────────────────────────────────────────────
    GENERATION_MAX_TEXT_CHARS = 1000
    GENERATION_MAX_DESCRIPTION_CHARS = 1000
    GENERATION_DEFAULT_TEMPERATURE = 1.0
    GENERATION_DEFAULT_TOP_P = 1.0
    GENERATION_TOP_P_MIN = 0.01         # Clamp target for top_p <= 0

    # ─────────────────────────────────────────────────────────────────────────
    # Audio
    # ─────────────────────────────────────────────────────────────────────────
    AUDIO_CHUNK_BYTES = 32 * 1024
    AUDIO_NORMALIZE_LOUDNESS = True
    AUDIO_TARGET_LUFS = -14.0
    AUDIO_LOUDNESS_COMPRESSOR = True

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 60
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


@dataclass
class ServerConfig:
    """Bind address and HTTP behaviour."""
    host: str = Defaults.SERVER_HOST
    port: int = Defaults.SERVER_PORT
    cors_allow_origins: List[str] = field(default_factory=lambda: list(Defaults.SERVER_CORS_ALLOW_ORIGINS))
    disconnect_poll_s: float = Defaults.SERVER_DISCONNECT_POLL_S


@dataclass
class DeviceConfig:
    """Backend selection override."""
    force_cpu: bool = Defaults.DEVICE_FORCE_CPU


@dataclass
class EngineConfig:
    """
    Synthesis engine configuration.

    ``type`` picks the engine implementation; ``model_id`` and ``revision``
    name the Hugging Face repository the weights are pulled from.
    """
    type: str = Defaults.ENGINE_TYPE
    model_id: str = Defaults.ENGINE_MODEL_ID
    revision: str = Defaults.ENGINE_REVISION
    max_new_tokens: int = Defaults.ENGINE_MAX_NEW_TOKENS
    dtype: str = Defaults.ENGINE_DTYPE


@dataclass
class SchedulerConfig:
    """
    Admission queue configuration.

    max_queue counts waiting jobs only; the running job does not occupy a
    queue slot. job_timeout_s covers time spent waiting plus time spent
    running.
    """
    max_queue: int = Defaults.SCHEDULER_MAX_QUEUE
    job_timeout_s: float = Defaults.SCHEDULER_JOB_TIMEOUT_S


@dataclass
class GenerationLimits:
    """Bounds and defaults applied by the parameter validator."""
    max_text_chars: int = Defaults.GENERATION_MAX_TEXT_CHARS
    max_description_chars: int = Defaults.GENERATION_MAX_DESCRIPTION_CHARS
    default_temperature: float = Defaults.GENERATION_DEFAULT_TEMPERATURE
    default_top_p: float = Defaults.GENERATION_DEFAULT_TOP_P
    top_p_min: float = Defaults.GENERATION_TOP_P_MIN


@dataclass
class AudioConfig:
    """Encoder settings."""
    chunk_bytes: int = Defaults.AUDIO_CHUNK_BYTES
    normalize_loudness: bool = Defaults.AUDIO_NORMALIZE_LOUDNESS
    target_lufs: float = Defaults.AUDIO_TARGET_LUFS
    loudness_compressor: bool = Defaults.AUDIO_LOUDNESS_COMPRESSOR


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, critical errors only
        2 = NORMAL: Request lifecycle (default)
        3 = VERBOSE: Per-stage timing
        4 = DEBUG: Internal scheduler state
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


@dataclass
class ServiceConfig:
    """
    Validated configuration for the whole service.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = ServiceConfig.from_settings(settings)
        print(config.scheduler.max_queue)
    """
    server: ServerConfig = field(default_factory=ServerConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    generation: GenerationLimits = field(default_factory=GenerationLimits)
    audio: AudioConfig = field(default_factory=AudioConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ServiceConfig":
        """
        Build ServiceConfig from raw Settings, applying env overrides.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        server_raw = raw.get("server", {}) or {}
        origins = server_raw.get("cors_allow_origins", Defaults.SERVER_CORS_ALLOW_ORIGINS)
        if isinstance(origins, str):
            origins = [o.strip() for o in origins.split(",") if o.strip()]
        server = ServerConfig(
            host=str(os.getenv("PARLER_SERVE_HOST") or server_raw.get("host", Defaults.SERVER_HOST)),
            port=int(os.getenv("PARLER_SERVE_PORT") or server_raw.get("port", Defaults.SERVER_PORT)),
            cors_allow_origins=list(origins),
            disconnect_poll_s=float(server_raw.get("disconnect_poll_s", Defaults.SERVER_DISCONNECT_POLL_S)),
        )
        cls._validate_range("server.port", server.port, 0, 65535)
        cls._validate_positive("server.disconnect_poll_s", server.disconnect_poll_s)

        device_raw = raw.get("device", {}) or {}
        force_env = os.getenv("PARLER_SERVE_FORCE_CPU")
        device = DeviceConfig(
            force_cpu=_truthy(force_env) if force_env is not None
                else _truthy(device_raw.get("force_cpu", Defaults.DEVICE_FORCE_CPU)),
        )

        engine_raw = raw.get("engine", {}) or {}
        engine = EngineConfig(
            type=str(os.getenv("PARLER_SERVE_ENGINE") or engine_raw.get("type", Defaults.ENGINE_TYPE)).strip().lower(),
            model_id=str(engine_raw.get("model_id", Defaults.ENGINE_MODEL_ID)),
            revision=str(engine_raw.get("revision", Defaults.ENGINE_REVISION)),
            max_new_tokens=int(engine_raw.get("max_new_tokens", Defaults.ENGINE_MAX_NEW_TOKENS)),
            dtype=str(engine_raw.get("dtype", Defaults.ENGINE_DTYPE)),
        )
        cls._validate_positive("engine.max_new_tokens", engine.max_new_tokens)
        if engine.dtype not in ("float32", "float16", "bfloat16"):
            raise ConfigValidationError(f"engine.dtype must be float32, float16 or bfloat16, got {engine.dtype}")

        scheduler_raw = raw.get("scheduler", {}) or {}
        scheduler = SchedulerConfig(
            max_queue=int(scheduler_raw.get("max_queue", Defaults.SCHEDULER_MAX_QUEUE)),
            job_timeout_s=float(scheduler_raw.get("job_timeout_s", Defaults.SCHEDULER_JOB_TIMEOUT_S)),
        )
        cls._validate_non_negative("scheduler.max_queue", scheduler.max_queue)
        cls._validate_positive("scheduler.job_timeout_s", scheduler.job_timeout_s)

        gen_raw = raw.get("generation", {}) or {}
        generation = GenerationLimits(
            max_text_chars=int(gen_raw.get("max_text_chars", Defaults.GENERATION_MAX_TEXT_CHARS)),
            max_description_chars=int(gen_raw.get("max_description_chars", Defaults.GENERATION_MAX_DESCRIPTION_CHARS)),
            default_temperature=float(gen_raw.get("default_temperature", Defaults.GENERATION_DEFAULT_TEMPERATURE)),
            default_top_p=float(gen_raw.get("default_top_p", Defaults.GENERATION_DEFAULT_TOP_P)),
            top_p_min=float(gen_raw.get("top_p_min", Defaults.GENERATION_TOP_P_MIN)),
        )
        cls._validate_positive("generation.max_text_chars", generation.max_text_chars)
        cls._validate_positive("generation.max_description_chars", generation.max_description_chars)
        cls._validate_range("generation.default_temperature", generation.default_temperature, 0.0, 2.0)
        cls._validate_range("generation.top_p_min", generation.top_p_min, 1e-6, 1.0)
        cls._validate_range("generation.default_top_p", generation.default_top_p, generation.top_p_min, 1.0)

        audio_raw = raw.get("audio", {}) or {}
        audio = AudioConfig(
            chunk_bytes=int(audio_raw.get("chunk_bytes", Defaults.AUDIO_CHUNK_BYTES)),
            normalize_loudness=_truthy(audio_raw.get("normalize_loudness", Defaults.AUDIO_NORMALIZE_LOUDNESS)),
            target_lufs=float(audio_raw.get("target_lufs", Defaults.AUDIO_TARGET_LUFS)),
            loudness_compressor=_truthy(audio_raw.get("loudness_compressor", Defaults.AUDIO_LOUDNESS_COMPRESSOR)),
        )
        cls._validate_positive("audio.chunk_bytes", audio.chunk_bytes)
        cls._validate_range("audio.target_lufs", audio.target_lufs, -70.0, 0.0)

        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)
        logging_cfg = LoggingConfig(
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=log_level,
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            server=server,
            device=device,
            engine=engine,
            scheduler=scheduler,
            generation=generation,
            audio=audio,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


def _truthy(value: Any) -> bool:
    """Interpret YAML/env style booleans ("1", "true", "yes", True)."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_service_config() for typed access.
    """
    raw: Dict[str, Any]

    def get_service_config(self) -> ServiceConfig:
        """Get validated ServiceConfig from these settings."""
        return ServiceConfig.from_settings(self)

    def with_overrides(self, section: str, **values: Any) -> "Settings":
        """Return a copy with keys of one section replaced (used by the CLI)."""
        raw = {k: (dict(v) if isinstance(v, dict) else v) for k, v in self.raw.items()}
        raw.setdefault(section, {}).update(values)
        return Settings(raw=raw)


def settings_path() -> str:
    """Resolve the settings file path (PARLER_SERVE_SETTINGS or the default)."""
    return os.getenv("PARLER_SERVE_SETTINGS", "config/settings.yaml")


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML configuration file.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=raw)
