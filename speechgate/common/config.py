"""Environment-driven configuration for the speech gateway.

Each section declares its fields once through :class:`FieldDefinition`;
values come from constructor kwargs first, then environment variables, then
field defaults, and are validated on construction.
"""

from __future__ import annotations

import copy
import json
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)


class SettingsError(Exception):
    """Base exception for configuration-related errors."""


class ValidationError(SettingsError):
    """Exception raised when configuration validation fails."""

    def __init__(self, field_name: str, value: Any, message: str) -> None:
        self.field = field_name
        self.value = value
        self.message = message
        super().__init__(f"Validation failed for field '{field_name}': {message}")


class RequiredFieldError(SettingsError):
    """Exception raised when a required field is missing."""

    def __init__(self, field_name: str) -> None:
        self.field = field_name
        super().__init__(f"Required field '{field_name}' is missing")


@dataclass
class FieldDefinition:
    """Definition for a configuration field with validation rules."""

    name: str
    field_type: type[Any]
    default: Any = None
    required: bool = False
    description: str = ""
    validator: Callable[[Any], bool] | None = None
    env_var: str | None = None
    choices: list[Any] | None = None
    min_value: int | float | None = None
    max_value: int | float | None = None
    pattern: str | None = None

    def __post_init__(self) -> None:
        """Validate field definition after initialization."""
        if self.required and self.default is not None:
            raise ValueError(
                f"Field '{self.name}' cannot be both required and have a default value"
            )
        if self.choices and self.default is not None and self.default not in self.choices:
            raise ValueError(f"Field '{self.name}' default value not in choices")


class BaseConfig(ABC):
    """Base configuration class with validation and environment loading."""

    def __init__(self, **kwargs: Any) -> None:
        """Initialize configuration with provided values."""
        self._values: dict[str, Any] = {}
        self._load_from_environment()
        self._load_from_kwargs(kwargs)
        self._validate()

    def _load_from_kwargs(self, kwargs: dict[str, Any]) -> None:
        """Load values from constructor kwargs; explicit values win over env."""
        known = {field_def.name for field_def in self.get_field_definitions()}
        unknown = set(kwargs) - known
        if unknown:
            raise SettingsError(
                f"Unknown field(s) for {type(self).__name__}: {', '.join(sorted(unknown))}"
            )
        self._values.update(kwargs)

    def _load_from_environment(self) -> None:
        """Load values from environment variables."""
        for field_def in self.get_field_definitions():
            if not field_def.env_var:
                continue
            env_value = os.getenv(field_def.env_var)
            if env_value is None or env_value.strip() == "":
                continue
            try:
                self._values[field_def.name] = self._convert_env_value(
                    env_value, field_def.field_type
                )
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    field_def.name, env_value, f"Cannot parse {field_def.env_var}: {exc}"
                ) from exc

    def _convert_env_value(self, value: str, field_type: type[Any]) -> Any:
        """Convert environment variable string to appropriate type."""
        if field_type is bool:
            return value.strip().lower() in ("true", "1", "yes", "on")
        elif field_type is int:
            return int(value)
        elif field_type is float:
            return float(value)
        elif field_type is dict:
            text = value.strip()
            if text.startswith("{"):
                return json.loads(text)
            # key=value,key=value shorthand
            pairs = [item.split("=", 1) for item in text.split(",") if item.strip()]
            return {key.strip(): val.strip() for key, val in pairs}
        elif field_type is list:
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def _validate(self) -> None:
        """Validate all configuration values and fill in defaults."""
        for field_def in self.get_field_definitions():
            value = self._values.get(field_def.name, copy.copy(field_def.default))

            if field_def.required and (value is None or value == ""):
                raise RequiredFieldError(field_def.name)

            if value is not None:
                # ints are acceptable wherever floats are expected
                if field_def.field_type is float and isinstance(value, int) and not isinstance(value, bool):
                    value = float(value)
                value = self._validate_field(field_def, value)
            self._values[field_def.name] = value

    def _validate_field(self, field_def: FieldDefinition, value: Any) -> Any:
        """Validate a single field value and return its canonical form."""
        if not isinstance(value, field_def.field_type):
            raise ValidationError(
                field_def.name, value, f"Expected {field_def.field_type.__name__}"
            )

        if field_def.choices:
            if isinstance(value, str):
                # Case-insensitive match onto the canonical choice
                for choice in field_def.choices:
                    if isinstance(choice, str) and choice.upper() == value.upper():
                        value = choice
                        break
            if value not in field_def.choices:
                raise ValidationError(
                    field_def.name, value, f"Must be one of {field_def.choices}"
                )

        if field_def.min_value is not None and value < field_def.min_value:
            raise ValidationError(
                field_def.name, value, f"Must be >= {field_def.min_value}"
            )
        if field_def.max_value is not None and value > field_def.max_value:
            raise ValidationError(
                field_def.name, value, f"Must be <= {field_def.max_value}"
            )

        if (
            field_def.pattern
            and isinstance(value, str)
            and not re.match(field_def.pattern, value)
        ):
            raise ValidationError(
                field_def.name, value, f"Must match pattern {field_def.pattern}"
            )

        if field_def.validator and not field_def.validator(value):
            raise ValidationError(field_def.name, value, "Custom validation failed")

        return value

    @classmethod
    @abstractmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        """Get field definitions for this configuration class."""

    def __getattr__(self, name: str) -> Any:
        """Get configuration value by name."""
        values = self.__dict__.get("_values", {})
        if name in values:
            return values[name]
        raise AttributeError(f"Configuration field '{name}' not found")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self._values.copy()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._values})"


def validate_url(value: str) -> bool:
    """Validate URL format."""
    return bool(re.match(r"^https?://[^\s/]+", value))


class LoggingConfig(BaseConfig):
    """Logging configuration."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="level",
                field_type=str,
                default="INFO",
                description="Log level",
                env_var="LOG_LEVEL",
                choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            ),
            FieldDefinition(
                name="json_logs",
                field_type=bool,
                default=True,
                description="Use JSON logging format",
                env_var="LOG_JSON",
            ),
            FieldDefinition(
                name="service_name",
                field_type=str,
                default="speechgate",
                description="Service name for logging",
                env_var="SERVICE_NAME",
            ),
        ]


class SpeechKitConfig(BaseConfig):
    """Upstream SpeechKit endpoints, tenancy and transport settings."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="base_url",
                field_type=str,
                default="https://tts.api.cloud.yandex.net",
                description="Synthesis API base URL",
                env_var="SPEECHKIT_BASE_URL",
                validator=validate_url,
            ),
            FieldDefinition(
                name="stt_base_url",
                field_type=str,
                default="https://stt.api.cloud.yandex.net",
                description="Recognition API base URL",
                env_var="SPEECHKIT_STT_BASE_URL",
                validator=validate_url,
            ),
            FieldDefinition(
                name="folder_id",
                field_type=str,
                required=True,
                description="Cloud folder (tenant) identifier",
                env_var="SPEECHKIT_FOLDER_ID",
            ),
            FieldDefinition(
                name="auth_mode",
                field_type=str,
                default="IAM",
                description="Recognition auth mode",
                env_var="SPEECHKIT_AUTH_MODE",
                choices=["IAM", "API_KEY"],
            ),
            FieldDefinition(
                name="api_key",
                field_type=str,
                description="API key used for recognition when auth_mode is API_KEY",
                env_var="SPEECHKIT_API_KEY",
            ),
            FieldDefinition(
                name="max_retry_on_auth_error",
                field_type=int,
                default=1,
                description="Forced token refreshes allowed per upstream call on 401/403",
                env_var="SPEECHKIT_MAX_RETRY_ON_AUTH_ERROR",
                min_value=0,
            ),
            FieldDefinition(
                name="sample_rate_hertz",
                field_type=int,
                default=48000,
                description="Sample rate for raw PCM synthesis output",
                env_var="SPEECHKIT_SAMPLE_RATE_HERTZ",
                min_value=8000,
            ),
            FieldDefinition(
                name="connect_timeout_seconds",
                field_type=float,
                default=5.0,
                description="Upstream connect timeout",
                env_var="SPEECHKIT_CONNECT_TIMEOUT_SECONDS",
                min_value=0.1,
            ),
            FieldDefinition(
                name="read_timeout_seconds",
                field_type=float,
                default=30.0,
                description="Upstream read timeout",
                env_var="SPEECHKIT_READ_TIMEOUT_SECONDS",
                min_value=0.1,
            ),
            FieldDefinition(
                name="debug_log_tts_payload",
                field_type=bool,
                default=False,
                description="Log masked payload previews and dump undecodable responses",
                env_var="SPEECHKIT_DEBUG_LOG_TTS_PAYLOAD",
            ),
            FieldDefinition(
                name="payload_dump_dir",
                field_type=str,
                default="/tmp",
                description="Directory for raw upstream payload dumps",
                env_var="SPEECHKIT_PAYLOAD_DUMP_DIR",
            ),
            FieldDefinition(
                name="default_language",
                field_type=str,
                default="ru-RU",
                description="Language used when the caller supplies none",
                env_var="SPEECHKIT_DEFAULT_LANGUAGE",
            ),
            FieldDefinition(
                name="require_known_asr_format",
                field_type=bool,
                default=False,
                description="Reject uploads whose format cannot be detected",
                env_var="SPEECHKIT_REQUIRE_KNOWN_ASR_FORMAT",
            ),
        ]


class IamConfig(BaseConfig):
    """Credential sources and token cache tuning."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="iam_token",
                field_type=str,
                description="Static IAM token",
                env_var="SPEECHKIT_IAM_TOKEN",
            ),
            FieldDefinition(
                name="sa_key_file",
                field_type=str,
                description="Path to a service-account authorized key JSON file",
                env_var="SPEECHKIT_SA_KEY_FILE",
            ),
            FieldDefinition(
                name="sa_key_json",
                field_type=str,
                description="Inline service-account authorized key JSON",
                env_var="SPEECHKIT_SA_KEY_JSON",
            ),
            FieldDefinition(
                name="iam_token_url",
                field_type=str,
                default="https://iam.api.cloud.yandex.net/iam/v1/tokens",
                description="IAM token exchange endpoint (also the JWT audience)",
                env_var="SPEECHKIT_IAM_TOKEN_URL",
                validator=validate_url,
            ),
            FieldDefinition(
                name="metadata_enabled",
                field_type=bool,
                default=False,
                description="Fetch tokens from the instance metadata service",
                env_var="SPEECHKIT_IAM_METADATA_ENABLED",
            ),
            FieldDefinition(
                name="metadata_url",
                field_type=str,
                default="http://169.254.169.254/computeMetadata/v1/instance/service-accounts/default/token",
                description="Instance metadata token endpoint",
                env_var="SPEECHKIT_IAM_METADATA_URL",
                validator=validate_url,
            ),
            FieldDefinition(
                name="token_skew_seconds",
                field_type=int,
                default=60,
                description="Refresh this many seconds before expiry",
                env_var="SPEECHKIT_TOKEN_SKEW_SECONDS",
                min_value=0,
            ),
            FieldDefinition(
                name="token_min_ttl_seconds",
                field_type=int,
                default=120,
                description="Refresh when less TTL than this remains",
                env_var="SPEECHKIT_TOKEN_MIN_TTL_SECONDS",
                min_value=0,
            ),
            FieldDefinition(
                name="refresh_retry_base_ms",
                field_type=int,
                default=200,
                description="Base delay for refresh backoff",
                env_var="SPEECHKIT_TOKEN_REFRESH_RETRY_BASE_MS",
                min_value=0,
            ),
            FieldDefinition(
                name="refresh_retry_max_ms",
                field_type=int,
                default=3000,
                description="Maximum delay for refresh backoff",
                env_var="SPEECHKIT_TOKEN_REFRESH_RETRY_MAX_MS",
                min_value=0,
            ),
            FieldDefinition(
                name="refresh_retry_attempts",
                field_type=int,
                default=3,
                description="Total token fetch attempts per refresh",
                env_var="SPEECHKIT_TOKEN_REFRESH_RETRY_ATTEMPTS",
                min_value=1,
            ),
        ]


class NormalizeConfig(BaseConfig):
    """ffmpeg normalization of recognition uploads."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="enabled",
                field_type=bool,
                default=False,
                description="Re-encode uploads to PCM16 WAV before recognition",
                env_var="ASR_NORMALIZE_ENABLED",
            ),
            FieldDefinition(
                name="ffmpeg_path",
                field_type=str,
                default="ffmpeg",
                description="ffmpeg executable",
                env_var="ASR_NORMALIZE_FFMPEG_PATH",
            ),
            FieldDefinition(
                name="target_sample_rate_hertz",
                field_type=int,
                default=16000,
                description="Output sample rate",
                env_var="ASR_NORMALIZE_TARGET_SAMPLE_RATE_HERTZ",
                choices=[8000, 16000, 48000],
            ),
            FieldDefinition(
                name="target_channels",
                field_type=int,
                default=1,
                description="Output channel count",
                env_var="ASR_NORMALIZE_TARGET_CHANNELS",
                choices=[1, 2],
            ),
            FieldDefinition(
                name="max_duration_seconds",
                field_type=int,
                default=0,
                description="Truncate output to this duration (0 = no cap)",
                env_var="ASR_NORMALIZE_MAX_DURATION_SECONDS",
                min_value=0,
            ),
            FieldDefinition(
                name="max_input_bytes",
                field_type=int,
                default=25 * 1024 * 1024,
                description="Largest upload accepted for conversion",
                env_var="ASR_NORMALIZE_MAX_INPUT_BYTES",
                min_value=1,
            ),
            FieldDefinition(
                name="max_stderr_bytes",
                field_type=int,
                default=8192,
                description="ffmpeg diagnostics kept per job",
                env_var="ASR_NORMALIZE_MAX_STDERR_BYTES",
                min_value=1,
            ),
            FieldDefinition(
                name="timeout_ms",
                field_type=int,
                default=30000,
                description="Wall-clock limit per conversion",
                env_var="ASR_NORMALIZE_TIMEOUT_MS",
                min_value=1,
            ),
            FieldDefinition(
                name="concurrency_max_processes",
                field_type=int,
                description="Concurrent ffmpeg processes (unset or < 1 = unbounded)",
                env_var="ASR_NORMALIZE_CONCURRENCY_MAX_PROCESSES",
            ),
            FieldDefinition(
                name="temp_dir",
                field_type=str,
                description="Directory for conversion temp files (system default when unset)",
                env_var="ASR_NORMALIZE_TEMP_DIR",
            ),
        ]


class TtsConfig(BaseConfig):
    """Voice defaults applied before synthesis."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="default_voice",
                field_type=str,
                default="alena",
                description="Voice used when the caller supplies none",
                env_var="SPEECHKIT_DEFAULT_VOICE",
            ),
            FieldDefinition(
                name="voice_mapping",
                field_type=dict,
                default={},
                description="OpenAI voice name -> SpeechKit voice (JSON or a=b,c=d)",
                env_var="SPEECHKIT_VOICE_MAPPING",
            ),
            FieldDefinition(
                name="voice_settings",
                field_type=dict,
                default={},
                description="SpeechKit voice -> {speed, role, pitch} defaults (JSON)",
                env_var="SPEECHKIT_TTS_VOICE_SETTINGS",
            ),
        ]


@dataclass(frozen=True)
class GatewayConfig:
    """All configuration sections of the gateway."""

    speechkit: SpeechKitConfig
    iam: IamConfig = field(default_factory=IamConfig)
    normalize: NormalizeConfig = field(default_factory=NormalizeConfig)
    tts: TtsConfig = field(default_factory=TtsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(**overrides: dict[str, Any]) -> GatewayConfig:
    """Load every section from the environment.

    Args:
        **overrides: Per-section keyword overrides, e.g.
            ``load_config(iam={"iam_token": "t"})``.

    Raises:
        SettingsError: If a value is missing, unknown or out of range.
    """
    sections: dict[str, type[BaseConfig]] = {
        "speechkit": SpeechKitConfig,
        "iam": IamConfig,
        "normalize": NormalizeConfig,
        "tts": TtsConfig,
        "logging": LoggingConfig,
    }
    unknown = set(overrides) - set(sections)
    if unknown:
        raise SettingsError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

    loaded = {
        name: config_class(**overrides.get(name, {}))
        for name, config_class in sections.items()
    }
    logger.debug("config.loaded", sections=sorted(loaded))
    return GatewayConfig(**loaded)  # type: ignore[arg-type]


__all__ = [
    "SettingsError",
    "ValidationError",
    "RequiredFieldError",
    "FieldDefinition",
    "BaseConfig",
    "validate_url",
    "LoggingConfig",
    "SpeechKitConfig",
    "IamConfig",
    "NormalizeConfig",
    "TtsConfig",
    "GatewayConfig",
    "load_config",
]
