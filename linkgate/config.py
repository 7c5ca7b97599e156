from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_TOKEN_BYTES = 16
MAX_TOKEN_BYTES = 64


class Settings(BaseSettings):
    app_name: str = "linkgate"
    app_env: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    session_secret_key: str = "change-me-in-production"
    links_dir: str = "files/public_links"
    files_root: str = "files"
    allowed_expiration_minutes: list[int] = [30, 60, 120, 180, 360, 720, 1440, 2160, 2880]
    allowed_wait_seconds: list[int] = [0, 10, 30, 60, 120, 300]
    max_downloads_ceiling: int = 1000
    default_auto_delete: bool = True
    strict_policy: bool = False
    auth_enabled: bool = False
    login_url: str = "/login"
    display_timezone: str = "UTC"
    token_bytes: int = 32
    mint_max_attempts: int = 10
    lock_timeout_seconds: float = 5.0
    sweep_interval_seconds: int = 300
    download_chunk_size: int = 64 * 1024
    wait_marker_limit: int = Field(20, ge=1)
    wait_marker_grace_seconds: int = Field(3600, ge=0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="LG_")

    @field_validator("allowed_expiration_minutes")
    @classmethod
    def _expirations_positive(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("at least one expiration option is required")
        if any(minutes <= 0 for minutes in value):
            raise ValueError("expiration options must be positive")
        return value

    @field_validator("allowed_wait_seconds")
    @classmethod
    def _waits_not_negative(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("at least one wait option is required")
        if any(seconds < 0 for seconds in value):
            raise ValueError("wait options must not be negative")
        return value

    @field_validator("token_bytes")
    @classmethod
    def _token_entropy(cls, value: int) -> int:
        # 16 bytes keeps 128 bits of entropy; 64 bytes is the longest token the store accepts.
        if not MIN_TOKEN_BYTES <= value <= MAX_TOKEN_BYTES:
            raise ValueError(f"token_bytes must be between {MIN_TOKEN_BYTES} and {MAX_TOKEN_BYTES}")
        return value

    @field_validator("display_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if value.upper() == "UTC":
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value}") from exc
        return value

    @property
    def wait_marker_ttl_seconds(self) -> int:
        return max(self.allowed_wait_seconds) + self.wait_marker_grace_seconds


@lru_cache
def get_settings() -> Settings:
    return Settings()
