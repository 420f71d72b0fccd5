"""Shared fixtures for tokscan tests."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from tokscan.config import Config
from tokscan.data.blob_store import BlobStore
from tokscan.data.protocols import CacheStore
from tokscan.data.sqlite_store import SqliteStore
from tokscan.models.pricing import ModelPricing, PriceTable
from tokscan.models.records import UsageRecord

SONNET = "claude-sonnet-4-5-20250929"


def claude_line(
    timestamp: str,
    message_id: str,
    *,
    model: str = SONNET,
    request_id: str = "",
    input_tokens: int = 100,
    output_tokens: int = 50,
    cache_write: int = 0,
    cache_read: int = 0,
    cwd: str = "/home/user/work/demo",
) -> str:
    """One assistant line as Claude Code writes it."""
    return json.dumps(
        {
            "type": "assistant",
            "timestamp": timestamp,
            "requestId": request_id or f"req_{message_id}",
            "cwd": cwd,
            "message": {
                "id": message_id,
                "model": model,
                "usage": {
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "cache_creation_input_tokens": cache_write,
                    "cache_read_input_tokens": cache_read,
                },
            },
        }
    )


def write_claude_session(
    home: Path,
    session_id: str,
    lines: list[str],
    project_dir: str = "-home-user-work-demo",
) -> Path:
    """Write a session file under ``<home>/.claude/projects`` and return its path."""
    directory = home / ".claude" / "projects" / project_dir
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{session_id}.jsonl"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def make_record(
    timestamp: datetime,
    *,
    tool: str = "claude",
    session_id: str = "s1",
    project: str = "demo",
    model: str = SONNET,
    message_id: str = "",
    request_id: str = "",
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
    cost: float | None = None,
) -> UsageRecord:
    return UsageRecord(
        tool=tool,
        session_id=session_id,
        timestamp=timestamp,
        project=project,
        model=model,
        message_id=message_id,
        request_id=request_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_write_tokens=cache_write_tokens,
        cache_read_tokens=cache_read_tokens,
        cost=cost,
    )


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Empty fake home directory; no provider roots exist until a test creates them."""
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def test_config(home: Path, tmp_path: Path) -> Config:
    """Config isolated from the real home, environment and cache."""
    return Config(home=home, cache_dir=tmp_path / "cache", env={}, workers=4, io_timeout=5.0)


@pytest.fixture(params=["blob", "sqlite"])
def backend_config(request: pytest.FixtureRequest, test_config: Config) -> Config:
    """The isolated config, once per cache backend."""
    return Config(
        home=test_config.home,
        cache_dir=test_config.cache_dir,
        env={},
        backend=request.param,
        workers=4,
        io_timeout=5.0,
    )


@pytest.fixture
async def store(backend_config: Config) -> AsyncGenerator[CacheStore]:
    """An open cache store for each backend."""
    if backend_config.backend == "sqlite":
        cache: CacheStore = SqliteStore.at(backend_config.db_path)
    else:
        cache = BlobStore(backend_config.blob_dir)
    async with cache:
        yield cache


@pytest.fixture
def price_table() -> PriceTable:
    """A fresh table pricing the Sonnet model used throughout the tests."""
    return PriceTable(
        source="litellm",
        fetched_at=datetime.now(UTC),
        prices={
            "claude-sonnet-4-5": ModelPricing(
                input=3e-6, output=15e-6, cache_write=3.75e-6, cache_read=0.3e-6
            ),
            "gpt-5": ModelPricing(input=1.25e-6, output=10e-6, cache_read=0.125e-6),
        },
    )


def litellm_document() -> dict[str, Any]:
    """Minimal LiteLLM pricing payload."""
    return {
        "sample_spec": {"max_tokens": "set to max"},
        "claude-sonnet-4-5": {
            "input_cost_per_token": 3e-6,
            "output_cost_per_token": 15e-6,
            "cache_creation_input_token_cost": 3.75e-6,
            "cache_read_input_token_cost": 0.3e-6,
        },
        "gpt-5": {"input_cost_per_token": 1.25e-6, "output_cost_per_token": 10e-6},
    }
