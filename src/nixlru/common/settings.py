"""Application configuration for the nixlru cache proxy."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class NixCacheSettings(BaseSettings):
    """Runtime settings for the Nix binary cache proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    state_dir: Path = env_field(Path("/tmp/lrucache"), "NIXLRU_STATE_DIR")
    listen_host: str = env_field("0.0.0.0", "NIXLRU_LISTEN_HOST")
    listen_port: int = env_field(8080, "NIXLRU_LISTEN_PORT")
    upstreams: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="NIXLRU_UPSTREAMS")
    enable_lock_route: bool = env_field(False, "NIXLRU_ENABLE_LOCK")
    log_ticks: bool = env_field(False, "NIXLRU_LOG_TICKS")
    tick_interval_seconds: float = env_field(1.0, "NIXLRU_TICK_INTERVAL")
    lock_poll_interval_seconds: float = env_field(1.0, "NIXLRU_LOCK_POLL_INTERVAL")
    serialize_fetches: bool = env_field(False, "NIXLRU_SERIALIZE_FETCHES")
    upstream_timeout_seconds: float = env_field(30.0, "NIXLRU_UPSTREAM_TIMEOUT")
    fetch_timeout_seconds: Optional[float] = env_field(300.0, "NIXLRU_FETCH_TIMEOUT")
    stats_database_url: Optional[str] = env_field(None, "NIXLRU_STATS_DB")
    log_level: str = env_field("INFO", "NIXLRU_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "NIXLRU_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "NIXLRU_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "NIXLRU_OTEL_SAMPLER_RATIO")

    @field_validator("upstreams", mode="before")
    @classmethod
    def _split_upstreams(cls, value):
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).rstrip("/") for item in value if str(item).strip()]
        return value

    @field_validator("fetch_timeout_seconds", mode="before")
    @classmethod
    def _disable_fetch_timeout(cls, value):
        if value in ("", "none", "None", 0, "0"):
            return None
        return value

    @field_validator("stats_database_url", mode="before")
    @classmethod
    def _normalize_stats_url(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+pysqlite:///{path.as_posix()}"
        return value

    @property
    def listen_address(self) -> str:
        return f"{self.listen_host}:{self.listen_port}"
