from __future__ import annotations

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.policy import DecayConfig, PolicyConfig, ReaperConfig
from src.constants import DB_SCHEMA, MAX_SCORE, MIN_SCORE
from src.tabs.domains import parse_domain_list

# Load .env once at module import; every BaseSettings subclass sees the env vars
load_dotenv()

Aggressiveness = Literal["high", "medium", "low"]

# Timer and decay presets per aggressiveness level. Timers are in minutes,
# decay rates in score units per minute.
AGGRESSIVENESS_PRESETS: dict[str, dict[str, float]] = {
    "high": {
        "countdown_minutes": 15,
        "batch_interval_minutes": 0.5,
        "normal_rate": -0.1,
        "protected_domain_rate": -0.05,
    },
    "medium": {
        "countdown_minutes": 30,
        "batch_interval_minutes": 1,
        "normal_rate": -0.067,
        "protected_domain_rate": -0.033,
    },
    "low": {
        "countdown_minutes": 60,
        "batch_interval_minutes": 2,
        "normal_rate": -0.033,
        "protected_domain_rate": -0.016,
    },
}


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "tabflow"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')"
            raise ValueError(msg)
        return v


class DecaySettings(BaseSettings):
    """Decay rate overrides. Unset fields fall back to the aggressiveness preset."""

    model_config = SettingsConfigDict(env_prefix="DECAY_")

    normal_rate: float | None = None
    protected_domain_rate: float | None = None

    @field_validator("normal_rate", "protected_domain_rate")
    @classmethod
    def _validate_negative(cls, v: float | None) -> float | None:
        if v is not None and v >= 0:
            raise ValueError(f"decay rates must be negative, got {v}")
        return v


class PolicySettings(BaseSettings):
    """Reclamation policy settings. Env vars prefixed with POLICY_."""

    model_config = SettingsConfigDict(env_prefix="POLICY_")

    aggressiveness: Aggressiveness = "medium"
    inactive_threshold: float = Field(0.0, ge=MIN_SCORE, le=MAX_SCORE)
    # None = take the value from the aggressiveness preset
    countdown_minutes: float | None = Field(None, ge=0)
    batch_interval_minutes: float | None = Field(None, ge=0)
    protected_domains: str = "mail.google.com,web.whatsapp.com"  # comma-separated
    excluded_url_prefixes: str = "chrome://"  # comma-separated


class RuntimeSettings(BaseSettings):
    """Tick loop and history retention. Env vars prefixed with RUNTIME_."""

    model_config = SettingsConfigDict(env_prefix="RUNTIME_")

    tick_interval_s: float = Field(60.0, gt=0)
    history_retention_days: int = Field(30, gt=0)
    log_json: bool = False
    log_level: str = "INFO"


class GatewaySettings(BaseSettings):
    """Gateway server settings. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "127.0.0.1"
    port: int = 19790
    close_ack_timeout_s: float = Field(10.0, gt=0)


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    decay: DecaySettings = Field(default_factory=DecaySettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def build_reaper_config(settings: Settings) -> ReaperConfig:
    """Resolve presets and overrides into the immutable runtime config."""
    policy = settings.policy
    preset = AGGRESSIVENESS_PRESETS[policy.aggressiveness]

    def pick(value: float | None, key: str) -> float:
        return float(preset[key]) if value is None else value

    return ReaperConfig(
        policy=PolicyConfig(
            inactive_threshold=policy.inactive_threshold,
            countdown_minutes=pick(policy.countdown_minutes, "countdown_minutes"),
            batch_interval_minutes=pick(policy.batch_interval_minutes, "batch_interval_minutes"),
            protected_domains=parse_domain_list(policy.protected_domains),
            excluded_url_prefixes=_split_csv(policy.excluded_url_prefixes),
        ),
        decay=DecayConfig(
            normal_rate=pick(settings.decay.normal_rate, "normal_rate"),
            protected_domain_rate=pick(
                settings.decay.protected_domain_rate, "protected_domain_rate"
            ),
        ),
    )
