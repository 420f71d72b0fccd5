"""Configuration for tokscan."""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Literal, TypeAlias

logger = logging.getLogger(__name__)

Backend: TypeAlias = Literal["blob", "sqlite"]
FingerprintPolicy: TypeAlias = Literal["stat", "content"]

_BACKENDS = ("blob", "sqlite")
_POLICIES = ("stat", "content")


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    home: Path = field(default_factory=Path.home)
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "tokscan")
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ), compare=False)
    backend: Backend = "blob"
    fingerprint: FingerprintPolicy = "stat"
    pricing_source: str = "litellm"
    currency: str = "USD"
    workers: int = 8
    io_timeout: float = 10.0
    http_timeout: float = 30.0
    watch_interval: float = 2.0
    watch_max_interval: float = 300.0

    @property
    def blob_dir(self) -> Path:
        return self.cache_dir / "blobs"

    @property
    def db_path(self) -> Path:
        return self.cache_dir / "records.db"

    @property
    def exchange_cache_path(self) -> Path:
        return self.cache_dir / "exchange.json"

    def pricing_cache_path(self, source: str) -> Path:
        return self.cache_dir / f"pricing-{source}.json"

    @property
    def xdg_config_home(self) -> Path:
        value = self.env.get("XDG_CONFIG_HOME")
        return Path(value) if value else self.home / ".config"

    @property
    def xdg_data_home(self) -> Path:
        value = self.env.get("XDG_DATA_HOME")
        return Path(value) if value else self.home / ".local" / "share"

    @property
    def config_path(self) -> Path:
        return self.xdg_config_home / "tokscan" / "config.toml"


def load_config(path: Path | None = None, *, base: Config | None = None) -> Config:
    """Build a Config from defaults, the TOML config file and environment.

    An unreadable or invalid config file is reported and ignored.
    """
    config = base or Config()
    env_cache = config.env.get("TOKSCAN_CACHE_DIR")
    if env_cache:
        config = replace(config, cache_dir=Path(env_cache))

    config_path = path or config.config_path
    if not config_path.is_file():
        return config

    try:
        with open(config_path, "rb") as file:
            data = tomllib.load(file)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Invalid config at %s: %s", config_path, exc)
        return config

    overrides = _validated_overrides(data, config_path)
    return replace(config, **overrides) if overrides else config


def _validated_overrides(data: dict[str, object], path: Path) -> dict[str, object]:
    known = {f.name: f for f in fields(Config)}
    overrides: dict[str, object] = {}
    for key, value in data.items():
        match key:
            case "backend" if value in _BACKENDS:
                overrides[key] = value
            case "fingerprint" if value in _POLICIES:
                overrides[key] = value
            case "pricing_source" | "currency" if isinstance(value, str) and value:
                overrides[key] = value
            case "workers" if isinstance(value, int) and value > 0:
                overrides[key] = value
            case "io_timeout" | "http_timeout" | "watch_interval" | "watch_max_interval" if (
                isinstance(value, int | float) and value > 0
            ):
                overrides[key] = float(value)
            case "cache_dir" if isinstance(value, str) and value:
                overrides[key] = Path(value).expanduser()
            case _ if key in known:
                logger.warning("Ignoring invalid value for %r in %s", key, path)
            case _:
                logger.warning("Ignoring unknown config key %r in %s", key, path)
    return overrides
