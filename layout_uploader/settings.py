"""Configuration helpers bound to python-decouple."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, Csv, RepositoryEmpty, RepositoryEnv

DEFAULT_ENV_PATH = ".env"


@dataclass(frozen=True)
class UploadSettings:
    """Defaults for runs plus HTTP client tuning."""

    server_url: str
    layout_key: str
    secret: str | None
    tile_size: int
    background_color: tuple[int, int, int]
    connect_timeout_s: float
    request_timeout_s: float
    user_agent: str


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    run_log_path: Path | None


@dataclass(frozen=True)
class ApiSettings:
    host: str
    port: int


@dataclass(frozen=True)
class Settings:
    env_path: str
    upload: UploadSettings
    logging: LoggingSettings
    api: ApiSettings


def load_config(env_path: str = DEFAULT_ENV_PATH) -> DecoupleConfig:
    """Return a decouple config anchored to ``env_path``, or to the process env when it is missing."""

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _optional_path(raw: str) -> Path | None:
    raw = raw.strip()
    return Path(raw) if raw else None


def build_settings(env_path: str = DEFAULT_ENV_PATH) -> Settings:
    config = load_config(env_path)
    background = config("BACKGROUND_COLOR", default="255,255,255", cast=Csv(cast=int, post_process=tuple))
    upload = UploadSettings(
        server_url=config("LAYOUT_SERVER_URL", default=""),
        layout_key=config("LAYOUT_KEY", default=""),
        secret=config("LAYOUT_SECRET", default=None),
        tile_size=config("TILE_SIZE", default=256, cast=int),
        background_color=background,
        connect_timeout_s=config("UPLOAD_CONNECT_TIMEOUT_S", default=10.0, cast=float),
        request_timeout_s=config("UPLOAD_TIMEOUT_S", default=60.0, cast=float),
        user_agent=config("UPLOAD_USER_AGENT", default="SDLayoutUploader-Python"),
    )
    logging_settings = LoggingSettings(
        level=config("LOG_LEVEL", default="INFO").upper(),
        run_log_path=_optional_path(config("RUN_LOG_PATH", default="ops/runs.jsonl")),
    )
    api = ApiSettings(
        host=config("API_HOST", default="127.0.0.1"),
        port=config("API_PORT", default=8000, cast=int),
    )
    return Settings(env_path=env_path, upload=upload, logging=logging_settings, api=api)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings singleton."""

    return build_settings()

