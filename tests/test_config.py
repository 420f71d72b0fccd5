"""Tests for config loading."""

from __future__ import annotations

from pathlib import Path

from tokscan.config import Config, load_config


def _base(tmp_path: Path, **env: str) -> Config:
    return Config(home=tmp_path, cache_dir=tmp_path / "cache", env=env)


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(base=_base(tmp_path))
    assert config.backend == "blob"
    assert config.fingerprint == "stat"
    assert config.config_path == tmp_path / ".config" / "tokscan" / "config.toml"
    assert config.db_path == tmp_path / "cache" / "records.db"


def test_toml_overrides(tmp_path: Path) -> None:
    path = tmp_path / ".config" / "tokscan" / "config.toml"
    path.parent.mkdir(parents=True)
    path.write_text(
        'backend = "sqlite"\n'
        'fingerprint = "content"\n'
        'currency = "EUR"\n'
        "workers = 2\n"
        "watch_interval = 5\n"
        "http_timeout = 12\n"
        'cache_dir = "~/elsewhere"\n',
        encoding="utf-8",
    )

    config = load_config(base=_base(tmp_path))

    assert config.backend == "sqlite"
    assert config.fingerprint == "content"
    assert config.currency == "EUR"
    assert config.workers == 2
    assert config.watch_interval == 5.0
    assert config.http_timeout == 12.0
    assert config.cache_dir == Path("~/elsewhere").expanduser()


def test_invalid_values_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "custom.toml"
    path.write_text(
        'backend = "redis"\nworkers = -1\nsurprise = true\npricing_source = "openrouter"\n',
        encoding="utf-8",
    )

    config = load_config(path, base=_base(tmp_path))

    assert config.backend == "blob"
    assert config.workers == 8
    assert config.pricing_source == "openrouter"


def test_malformed_toml_keeps_defaults(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("backend = [unterminated\n", encoding="utf-8")
    assert load_config(path, base=_base(tmp_path)) == _base(tmp_path)


def test_cache_dir_from_environment(tmp_path: Path) -> None:
    config = load_config(base=_base(tmp_path, TOKSCAN_CACHE_DIR=str(tmp_path / "env-cache")))
    assert config.cache_dir == tmp_path / "env-cache"
    assert config.blob_dir == tmp_path / "env-cache" / "blobs"


def test_xdg_config_home(tmp_path: Path) -> None:
    config = _base(tmp_path, XDG_CONFIG_HOME=str(tmp_path / "xdg"))
    assert config.config_path == tmp_path / "xdg" / "tokscan" / "config.toml"
