"""Provider-aware normalizers turning session files into usage records."""

from __future__ import annotations

import json
import logging
import math
import re
import sqlite3
from collections.abc import Generator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tokscan.data.protocols import Normalizer
from tokscan.errors import ParseError
from tokscan.models.records import UsageRecord

logger = logging.getLogger(__name__)

_PROJECT_MARKERS = ("projects", "src", "code", "repos", "workspace")
_BRACKETED = re.compile(r"\[[^\]]*\]")


class ClaudeNormalizer:
    """Claude Code ``projects/<encoded-dir>/<session>.jsonl`` logs."""

    tool = "claude"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        session_id = path.stem
        fallback_project = claude_project_from_path(path)
        records: list[UsageRecord] = []

        for raw in _json_lines(data, path):
            match _as_str(raw.get("type")):
                case "assistant":
                    message = raw.get("message")
                    timestamp = raw.get("timestamp")
                    request_id = raw.get("requestId")
                case "progress":
                    data_obj = _as_dict(raw.get("data"))
                    if _as_str(data_obj.get("type")) != "agent_progress":
                        continue
                    outer = _as_dict(data_obj.get("message"))
                    message = outer.get("message")
                    timestamp = outer.get("timestamp") or raw.get("timestamp")
                    request_id = outer.get("requestId")
                case _:
                    continue

            if not isinstance(message, dict):
                continue
            usage = message.get("usage")
            model = _as_str(message.get("model"))
            when = _parse_timestamp(timestamp)
            if not isinstance(usage, dict) or not model or model == "<synthetic>" or when is None:
                continue

            cwd = _as_str(raw.get("cwd"))
            project = cwd.rstrip("/").rsplit("/", 1)[-1] if cwd else fallback_project
            record = _record(
                tool=self.tool,
                session_id=session_id,
                timestamp=when,
                project=project or fallback_project,
                model=model,
                message_id=_as_str(message.get("id")),
                request_id=_as_str(request_id),
                input_tokens=_int(usage.get("input_tokens")),
                output_tokens=_int(usage.get("output_tokens")),
                cache_write_tokens=_int(usage.get("cache_creation_input_tokens")),
                cache_read_tokens=_int(usage.get("cache_read_input_tokens")),
            )
            if record is not None:
                records.append(record)
        return records


class CodexNormalizer:
    """Codex rollout logs: ``turn_context`` sets the model, ``token_count`` carries usage."""

    tool = "codex"
    default_model = "gpt-5"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        session_id = codex_session_id(path)
        project = session_id.split("/", 1)[0] or "codex"
        current_model = ""
        prev_totals = (0, 0, 0)
        records: list[UsageRecord] = []

        for raw in _json_lines(data, path):
            payload = _as_dict(raw.get("payload"))
            if _as_str(raw.get("type")) == "turn_context":
                current_model = _codex_model(payload) or current_model
                cwd = _as_str(payload.get("cwd"))
                if cwd:
                    project = cwd.rstrip("/").rsplit("/", 1)[-1] or project
                continue
            if _as_str(payload.get("type")) != "token_count":
                continue

            info = payload.get("info")
            when = _parse_timestamp(raw.get("timestamp"))
            if not isinstance(info, dict) or when is None:
                continue

            last = info.get("last_token_usage")
            total = info.get("total_token_usage")
            if isinstance(last, dict):
                input_tokens, output_tokens, cached = _codex_usage(last)
            elif isinstance(total, dict):
                current = _codex_usage(total)
                input_tokens, output_tokens, cached = (
                    max(now - before, 0) for now, before in zip(current, prev_totals, strict=True)
                )
                prev_totals = current
            else:
                continue

            model = (
                _codex_model(info) or _codex_model(payload) or current_model or self.default_model
            )
            record = _record(
                tool=self.tool,
                session_id=session_id,
                timestamp=when,
                project=project,
                model=model,
                message_id=f"codex:{session_id}:{when.isoformat()}:{input_tokens}:{output_tokens}",
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_read_tokens=cached,
            )
            if record is not None:
                records.append(record)
        return records


class PiNormalizer:
    """pi-agent session logs under ``sessions/<project>/<ts>_<id>.jsonl``."""

    tool = "pi"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        session_id = _after_underscore(path.stem)
        project = _dir_after(path, "sessions") or "pi"
        records: list[UsageRecord] = []

        for raw in _json_lines(data, path):
            message = _as_dict(raw.get("message"))
            if _as_str(message.get("role")) != "assistant":
                continue
            usage = message.get("usage")
            when = _parse_timestamp(raw.get("timestamp"))
            if not isinstance(usage, dict) or when is None:
                continue
            input_tokens = _int(usage.get("input"))
            output_tokens = _int(usage.get("output"))
            record = _record(
                tool=self.tool,
                session_id=session_id,
                timestamp=when,
                project=project,
                model=_as_str(message.get("model")) or "unknown",
                message_id=f"pi:{session_id}:{when.isoformat()}:{input_tokens}:{output_tokens}",
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_write_tokens=_int(usage.get("cacheWrite")),
                cache_read_tokens=_int(usage.get("cacheRead")),
            )
            if record is not None:
                records.append(record)
        return records


class OpenClawNormalizer:
    """OpenClaw agent logs; ``model_change`` lines switch the active model."""

    tool = "openclaw"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        session_id = path.stem
        project = _dir_after(path, "agents") or "openclaw"
        current_model = "unknown"
        records: list[UsageRecord] = []

        for raw in _json_lines(data, path):
            if _as_str(raw.get("type")) == "model_change":
                current_model = _as_str(raw.get("model")) or current_model
                continue
            message = _as_dict(raw.get("message"))
            if _as_str(message.get("role")) != "assistant":
                continue
            usage = message.get("usage")
            when = _from_millis(message.get("timestamp")) or _parse_timestamp(
                raw.get("timestamp")
            )
            if not isinstance(usage, dict) or when is None:
                continue
            input_tokens = _int(usage.get("input"))
            output_tokens = _int(usage.get("output"))
            record = _record(
                tool=self.tool,
                session_id=session_id,
                timestamp=when,
                project=project,
                model=_as_str(message.get("model")) or current_model,
                message_id=(
                    f"openclaw:{session_id}:{when.isoformat()}:{input_tokens}:{output_tokens}"
                ),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_write_tokens=_int(usage.get("cacheWrite")),
                cache_read_tokens=_int(usage.get("cacheRead")),
            )
            if record is not None:
                records.append(record)
        return records


class KimiNormalizer:
    """Kimi CLI ``wire.jsonl`` files; usage rides on ``StatusUpdate`` messages."""

    tool = "kimi"

    def __init__(self, default_model: str = "kimi-for-coding") -> None:
        self.default_model = default_model

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        session_id = path.parent.name or "unknown"
        grandparent = path.parent.parent.name
        project = grandparent if grandparent and grandparent != "sessions" else "kimi"
        records: list[UsageRecord] = []

        for raw in _json_lines(data, path):
            if _as_str(raw.get("type")) == "metadata":
                continue
            message = _as_dict(raw.get("message"))
            if _as_str(message.get("type")) != "StatusUpdate":
                continue
            payload = _as_dict(message.get("payload"))
            usage = payload.get("token_usage")
            when = _from_seconds(raw.get("timestamp"))
            if not isinstance(usage, dict) or when is None:
                continue
            input_tokens = _int(usage.get("input_other"))
            output_tokens = _int(usage.get("output"))
            record = _record(
                tool=self.tool,
                session_id=session_id,
                timestamp=when,
                project=project,
                model=_as_str(raw.get("model")) or self.default_model,
                message_id=_as_str(payload.get("message_id"))
                or f"kimi:{session_id}:{when.isoformat()}:{input_tokens}:{output_tokens}",
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_write_tokens=_int(usage.get("input_cache_creation")),
                cache_read_tokens=_int(usage.get("input_cache_read")),
            )
            if record is not None:
                records.append(record)
        return records


class GeminiNormalizer:
    """Gemini CLI chat files: one JSON document with a ``messages`` list."""

    tool = "gemini"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        document = _json_document(data, path)
        if not isinstance(document, dict):
            return []
        messages = document.get("messages")
        if not isinstance(messages, list):
            return []

        session_id = _as_str(document.get("sessionId")) or path.stem
        project = _as_str(document.get("projectHash")) or "gemini"
        fallback_time: datetime | None = None
        records: list[UsageRecord] = []

        for raw in messages:
            if not isinstance(raw, dict) or _as_str(raw.get("type")) != "gemini":
                continue
            tokens = raw.get("tokens")
            model = _as_str(raw.get("model"))
            if not isinstance(tokens, dict) or not model:
                continue
            when = _parse_timestamp(raw.get("timestamp"))
            if when is None:
                fallback_time = fallback_time or _file_mtime(path)
                when = fallback_time
            if when is None:
                continue
            record = _record(
                tool=self.tool,
                session_id=session_id,
                timestamp=when,
                project=project,
                model=model,
                message_id=f"gemini:{session_id}:{_as_str(raw.get('id')) or 'unknown'}",
                input_tokens=_int(tokens.get("input")),
                output_tokens=_int(tokens.get("output")),
                cache_read_tokens=_int(tokens.get("cached")),
            )
            if record is not None:
                records.append(record)
        return records


class AmpNormalizer:
    """Amp thread files: a usage ledger plus per-message cache token counts."""

    tool = "amp"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        document = _json_document(data, path)
        if not isinstance(document, dict):
            return []
        events = _as_dict(document.get("usageLedger")).get("events")
        if not isinstance(events, list):
            return []

        thread_id = _as_str(document.get("id")) or path.stem
        cache_tokens = _amp_cache_tokens(document.get("messages"))
        records: list[UsageRecord] = []

        for event in events:
            if not isinstance(event, dict):
                continue
            tokens = event.get("tokens")
            when = _parse_timestamp(event.get("timestamp"))
            if not isinstance(tokens, dict) or when is None:
                continue
            cache_write, cache_read = cache_tokens.get(_int(event.get("toMessageId")), (0, 0))
            record = _record(
                tool=self.tool,
                session_id=thread_id,
                timestamp=when,
                project="amp",
                model=_as_str(event.get("model")) or "unknown",
                message_id=_as_str(event.get("id")),
                input_tokens=_int(tokens.get("input")),
                output_tokens=_int(tokens.get("output")),
                cache_write_tokens=cache_write,
                cache_read_tokens=cache_read,
            )
            if record is not None:
                records.append(record)
        return records


class DroidNormalizer:
    """Factory Droid ``<session>.settings.json`` files holding session totals."""

    tool = "droid"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        document = _json_document(data, path)
        if not isinstance(document, dict):
            return []
        usage = document.get("tokenUsage")
        if not isinstance(usage, dict):
            return []

        session_id = path.name.removesuffix(".settings.json") or "unknown"
        when = _parse_timestamp(document.get("providerLockTimestamp")) or _file_mtime(path)
        if when is None:
            return []
        input_tokens = _int(usage.get("inputTokens"))
        output_tokens = _int(usage.get("outputTokens"))
        raw_model = _as_str(document.get("model"))
        record = _record(
            tool=self.tool,
            session_id=session_id,
            timestamp=when,
            project="droid",
            model=normalize_droid_model(raw_model) if raw_model else "unknown",
            message_id=f"droid:{session_id}:{when.isoformat()}:{input_tokens}:{output_tokens}",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_write_tokens=_int(usage.get("cacheCreationTokens")),
            cache_read_tokens=_int(usage.get("cacheReadTokens")),
        )
        return [record] if record is not None else []


class OpenCodeMessageNormalizer:
    """OpenCode ``storage/message/<session>/<message>.json`` files, one message each."""

    tool = "opencode"

    def __init__(self, session_projects: Mapping[str, str] | None = None) -> None:
        self.session_projects = dict(session_projects or {})

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        document = _json_document(data, path)
        if not isinstance(document, dict):
            return []
        record = _opencode_record(document, self.session_projects)
        return [record] if record is not None else []


class OpenCodeDatabaseNormalizer:
    """OpenCode SQLite database: rows of the ``message`` table carry the JSON payload."""

    tool = "opencode"

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        conn = sqlite3.connect(":memory:")
        try:
            try:
                conn.deserialize(data)
                tables = {
                    str(row[0])
                    for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
                }
                if "message" not in tables:
                    return []
                session_projects = _opencode_db_sessions(conn) if "session" in tables else {}
                cursor = conn.execute("SELECT * FROM message")
                columns = [column[0] for column in cursor.description]
                rows = cursor.fetchall()
            except sqlite3.DatabaseError as exc:
                raise ParseError(path, f"not a readable SQLite database ({exc})") from exc
        finally:
            conn.close()

        records: list[UsageRecord] = []
        for row in rows:
            values = dict(zip(columns, row, strict=True))
            try:
                payload = json.loads(values.get("data") or "{}")
            except (TypeError, json.JSONDecodeError):
                logger.warning("Invalid message row in %s", path)
                continue
            if not isinstance(payload, dict):
                continue
            payload.setdefault("id", values.get("id"))
            payload.setdefault("sessionID", values.get("session_id"))
            record = _opencode_record(payload, session_projects)
            if record is not None:
                records.append(record)
        return records


class SuffixNormalizer:
    """Dispatches to one of several normalizers by file name suffix."""

    def __init__(
        self, tool: str, by_suffix: Mapping[str, Normalizer], default: Normalizer
    ) -> None:
        self.tool = tool
        self._by_suffix = dict(by_suffix)
        self._default = default

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]:
        normalizer = self._by_suffix.get(path.suffix, self._default)
        return normalizer.parse(data, path)


def claude_project_from_path(path: Path) -> str:
    """Decode the project name from the ``projects/<encoded>`` folder."""
    for directory in path.parents:
        if directory.parent.name == "projects" and directory.name:
            return _decode_project_dir(directory.name)
    return "unknown"


def codex_session_id(path: Path) -> str:
    """Session id relative to the ``sessions`` root, without extension."""
    parts = path.parts
    if "sessions" in parts:
        index = len(parts) - 1 - parts[::-1].index("sessions")
        relative = "/".join(parts[index + 1 :])
        if relative:
            return relative.removesuffix(".jsonl")
    return path.stem


def normalize_droid_model(raw: str) -> str:
    """``custom:Claude-Sonnet-4.5 [Beta]`` -> ``claude-sonnet-4-5``."""
    value = raw.removeprefix("custom:")
    value = _BRACKETED.sub("", value).lower().replace(".", "-")
    value = re.sub(r"-{2,}", "-", value)
    return value.strip("- ")


def load_opencode_session_projects(storage_roots: list[Path]) -> dict[str, str]:
    """Map OpenCode session ids to project names from ``storage/session`` files."""
    projects: dict[str, str] = {}
    for root in storage_roots:
        session_dir = root / "session"
        if not session_dir.is_dir():
            continue
        for file_path in sorted(session_dir.rglob("*.json")):
            try:
                document = json.loads(file_path.read_bytes())
            except (OSError, json.JSONDecodeError):
                logger.warning("Skipping unreadable OpenCode session file: %s", file_path)
                continue
            if not isinstance(document, dict):
                continue
            session_id = _as_str(document.get("id"))
            if session_id:
                projects[session_id] = _opencode_project(document)
    return projects


def read_kimi_default_model(kimi_home: Path) -> str:
    """Model configured in ``<KIMI_HOME>/config.json``, or the stock default."""
    try:
        document = json.loads((kimi_home / "config.json").read_bytes())
    except (OSError, json.JSONDecodeError):
        return "kimi-for-coding"
    model = _as_str(document.get("model")) if isinstance(document, dict) else ""
    return model or "kimi-for-coding"


def _json_lines(data: bytes, path: Path) -> Generator[dict[str, Any]]:
    """Yield JSON objects from a line-delimited log, skipping malformed lines.

    A file with content but not a single decodable line is a ParseError.
    """
    lines = data.split(b"\n")
    seen_valid = False
    seen_content = False
    for line_num, raw_line in enumerate(lines, 1):
        line = raw_line.strip()
        if not line:
            continue
        seen_content = True
        try:
            raw = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            if line_num == len(lines):
                logger.debug("Truncated last line at %s:%d", path, line_num)
            else:
                logger.warning("Invalid JSON at %s:%d", path, line_num)
            continue
        seen_valid = True
        if isinstance(raw, dict):
            yield raw
    if seen_content and not seen_valid:
        raise ParseError(path, "no valid JSON lines")


def _json_document(data: bytes, path: Path) -> Any:
    try:
        return json.loads(data.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ParseError(path, "not valid UTF-8") from exc
    except json.JSONDecodeError as exc:
        raise ParseError(path, f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc


def _record(
    *,
    tool: str,
    session_id: str,
    timestamp: datetime,
    project: str,
    model: str,
    message_id: str = "",
    request_id: str = "",
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> UsageRecord | None:
    """Build a record, or None for an entry with no usage at all."""
    if not (input_tokens or output_tokens or cache_write_tokens or cache_read_tokens):
        return None
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
    )


def _decode_project_dir(encoded: str) -> str:
    parts = [part for part in encoded.split("-") if part]
    if not parts:
        return "unknown"
    if "git" in parts:
        index = parts.index("git")
        if index + 1 < len(parts):
            return "-".join(parts[index + 1 :])
    for marker in _PROJECT_MARKERS:
        if marker in parts:
            index = parts.index(marker)
            if index + 1 < len(parts):
                return "-".join(parts[index + 1 :])
    if len(parts) >= 3 and parts[0] == "home":
        return "-".join(parts[2:])
    return parts[-1]


def _codex_model(payload: dict[str, Any]) -> str:
    for container in (_as_dict(payload.get("info")), payload):
        model = _as_str(container.get("model")) or _as_str(
            _as_dict(container.get("metadata")).get("model")
        )
        if model:
            return model
    return ""


def _codex_usage(usage: dict[str, Any]) -> tuple[int, int, int]:
    cached = usage.get("cached_input_tokens", usage.get("cache_read_input_tokens"))
    return _int(usage.get("input_tokens")), _int(usage.get("output_tokens")), _int(cached)


def _amp_cache_tokens(messages: object) -> dict[int, tuple[int, int]]:
    cache: dict[int, tuple[int, int]] = {}
    if not isinstance(messages, list):
        return cache
    for message in messages:
        if not isinstance(message, dict) or _as_str(message.get("role")) != "assistant":
            continue
        usage = message.get("usage")
        message_id = message.get("messageId")
        if not isinstance(usage, dict) or not isinstance(message_id, int):
            continue
        cache[message_id] = (
            _int(usage.get("cacheCreationInputTokens")),
            _int(usage.get("cacheReadInputTokens")),
        )
    return cache


def _opencode_record(
    document: dict[str, Any], session_projects: Mapping[str, str]
) -> UsageRecord | None:
    message_id = _as_str(document.get("id"))
    model = _as_str(document.get("modelID"))
    tokens = document.get("tokens")
    when = _from_millis(_as_dict(document.get("time")).get("created"))
    if not message_id or not model or not isinstance(tokens, dict) or when is None:
        return None
    input_tokens = _int(tokens.get("input"))
    output_tokens = _int(tokens.get("output"))
    if not (input_tokens or output_tokens):
        return None
    session_id = _as_str(document.get("sessionID")) or "unknown"
    cache = _as_dict(tokens.get("cache"))
    return _record(
        tool="opencode",
        session_id=session_id,
        timestamp=when,
        project=session_projects.get(session_id, "opencode"),
        model=model,
        message_id=message_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_write_tokens=_int(cache.get("write")),
        cache_read_tokens=_int(cache.get("read")),
    )


def _opencode_project(document: dict[str, Any]) -> str:
    directory = _as_str(document.get("directory")).rstrip("/")
    name = directory.rsplit("/", 1)[-1] if directory else ""
    return name or _as_str(document.get("projectID")) or "opencode"


def _opencode_db_sessions(conn: sqlite3.Connection) -> dict[str, str]:
    cursor = conn.execute("SELECT * FROM session")
    columns = [column[0] for column in cursor.description]
    projects: dict[str, str] = {}
    for row in cursor.fetchall():
        values = dict(zip(columns, row, strict=True))
        session_id = _as_str(values.get("id"))
        if not session_id:
            continue
        document = {
            "directory": values.get("directory"),
            "projectID": values.get("project_id"),
        }
        projects[session_id] = _opencode_project(document)
    return projects


def _after_underscore(stem: str) -> str:
    _, sep, after = stem.partition("_")
    return after if sep and after else stem


def _dir_after(path: Path, anchor: str) -> str:
    """Name of the directory directly below the last ``anchor`` component."""
    parts = path.parts[:-1]
    if anchor not in parts:
        return ""
    index = len(parts) - 1 - parts[::-1].index(anchor)
    return parts[index + 1] if index + 1 < len(parts) else ""


def _file_mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(path.stat().st_mtime), tz=UTC)
    except OSError:
        return None


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _from_millis(value: object) -> datetime | None:
    return _from_epoch(value, 1000.0)


def _from_seconds(value: object) -> datetime | None:
    return _from_epoch(value, 1.0)


def _from_epoch(value: object, per_second: float) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    try:
        return datetime.fromtimestamp(value / per_second, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: object) -> str:
    return value if isinstance(value, str) else ""


def _int(val: object) -> int:
    if isinstance(val, bool):
        return int(val)
    if isinstance(val, int):
        return max(val, 0)
    if isinstance(val, str):
        try:
            val = float(val)
        except ValueError:
            return 0
    if isinstance(val, float):
        return max(int(val), 0) if math.isfinite(val) else 0
    return 0


