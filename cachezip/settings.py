"""Configuration helpers bound to python-decouple."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv, UndefinedValueError

from cachezip.errors import ConfigurationError

DEFAULT_SAVE_PATH = Path("./cargo_bak.zip")
ROOT_ENV = "CARGO_HOME"


@dataclass(slots=True)
class Settings:
    root: Path
    save_path: Path = DEFAULT_SAVE_PATH
    compression_level: int = 0
    log_level: str = "INFO"


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a decouple config anchored to ``env_path``; process env still wins."""

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def get_settings(env_path: str = ".env") -> Settings:
    """Read settings from the environment (and ``env_path`` when present).

    Raises ``ConfigurationError`` when ``CARGO_HOME`` is unset or a value
    cannot be parsed.
    """

    config = load_config(env_path)
    try:
        root = config(ROOT_ENV)
    except UndefinedValueError as exc:
        raise ConfigurationError(f"{ROOT_ENV} is not set; it names the cache root to back up or restore") from exc
    if not root:
        raise ConfigurationError(f"{ROOT_ENV} is empty")

    try:
        level = config("CACHEZIP_COMPRESSION_LEVEL", default=0, cast=int)
    except ValueError as exc:
        raise ConfigurationError(f"CACHEZIP_COMPRESSION_LEVEL must be an integer ({exc})") from exc

    return Settings(
        root=Path(root).expanduser(),
        save_path=Path(config("CACHEZIP_SAVE_PATH", default=str(DEFAULT_SAVE_PATH))),
        compression_level=level,
        log_level=config("CACHEZIP_LOG_LEVEL", default="INFO").upper(),
    )
