"""Provider registry: where each tool keeps its logs and how to read them."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from tokscan.config import Config
from tokscan.data.parser import (
    AmpNormalizer,
    ClaudeNormalizer,
    CodexNormalizer,
    DroidNormalizer,
    GeminiNormalizer,
    KimiNormalizer,
    OpenClawNormalizer,
    OpenCodeDatabaseNormalizer,
    OpenCodeMessageNormalizer,
    PiNormalizer,
    SuffixNormalizer,
    load_opencode_session_projects,
    read_kimi_default_model,
)
from tokscan.data.protocols import Normalizer


class Base(StrEnum):
    HOME = "home"
    CONFIG = "config"
    DATA = "data"


@dataclass(frozen=True)
class Provider:
    """One AI coding tool whose session logs are scanned."""

    name: str
    patterns: tuple[str, ...]
    fallbacks: tuple[tuple[Base, tuple[str, ...]], ...]
    env_var: str | None = None
    env_subpaths: tuple[str, ...] = ()
    build: Callable[[Config, list[Path]], Normalizer] = field(
        default=lambda config, roots: ClaudeNormalizer(), compare=False
    )

    def roots(self, config: Config) -> list[Path]:
        """Candidate root directories; an env override replaces the fallbacks."""
        if self.env_var:
            override = config.env.get(self.env_var)
            if override:
                base = Path(override).expanduser()
                if not self.env_subpaths:
                    return [base]
                return [base.joinpath(*sub.split("/")) for sub in self.env_subpaths]

        roots: list[Path] = []
        for base, subpaths in self.fallbacks:
            match base:
                case Base.CONFIG:
                    root = config.xdg_config_home.joinpath(*subpaths)
                case Base.DATA:
                    root = config.xdg_data_home.joinpath(*subpaths)
                case _:
                    root = config.home.joinpath(*subpaths)
            if root not in roots:
                roots.append(root)
        return roots

    def candidates(self, config: Config) -> list[Path]:
        """Every file under the existing roots that this provider can parse."""
        found: dict[Path, None] = {}
        for root in self.roots(config):
            if not root.is_dir():
                continue
            for pattern in self.patterns:
                for path in root.glob(pattern):
                    if path.is_file():
                        found.setdefault(path, None)
        return list(found)

    def existing_roots(self, config: Config) -> list[Path]:
        return [root for root in self.roots(config) if root.is_dir()]

    def normalizer(self, config: Config) -> Normalizer:
        return self.build(config, self.existing_roots(config))


def _kimi_normalizer(config: Config, roots: list[Path]) -> Normalizer:
    override = config.env.get("KIMI_HOME")
    kimi_home = Path(override).expanduser() if override else config.home / ".kimi"
    return KimiNormalizer(default_model=read_kimi_default_model(kimi_home))


def _opencode_normalizer(config: Config, roots: list[Path]) -> Normalizer:
    session_projects = load_opencode_session_projects([root / "storage" for root in roots])
    return SuffixNormalizer(
        "opencode",
        {".db": OpenCodeDatabaseNormalizer()},
        OpenCodeMessageNormalizer(session_projects),
    )


PROVIDERS: tuple[Provider, ...] = (
    Provider(
        name="claude",
        patterns=("**/*.jsonl",),
        fallbacks=(
            (Base.HOME, (".claude", "projects")),
            (Base.CONFIG, ("claude", "projects")),
        ),
        build=lambda config, roots: ClaudeNormalizer(),
    ),
    Provider(
        name="codex",
        patterns=("**/*.jsonl",),
        fallbacks=(
            (Base.HOME, (".codex", "sessions")),
            (Base.CONFIG, ("codex", "sessions")),
        ),
        env_var="CODEX_HOME",
        env_subpaths=("sessions",),
        build=lambda config, roots: CodexNormalizer(),
    ),
    Provider(
        name="gemini",
        patterns=("**/*.json",),
        fallbacks=((Base.HOME, (".gemini", "tmp")),),
        env_var="GEMINI_HOME",
        env_subpaths=("tmp",),
        build=lambda config, roots: GeminiNormalizer(),
    ),
    Provider(
        name="pi",
        patterns=("**/*.jsonl",),
        fallbacks=(
            (Base.HOME, (".pi", "agent", "sessions")),
            (Base.CONFIG, ("pi", "agent", "sessions")),
        ),
        env_var="PI_AGENT_DIR",
        env_subpaths=("sessions",),
        build=lambda config, roots: PiNormalizer(),
    ),
    Provider(
        name="amp",
        patterns=("**/*.json",),
        fallbacks=((Base.DATA, ("amp", "threads")),),
        env_var="AMP_DATA_DIR",
        env_subpaths=("threads",),
        build=lambda config, roots: AmpNormalizer(),
    ),
    Provider(
        name="opencode",
        patterns=("storage/message/**/*.json", "opencode.db"),
        fallbacks=((Base.DATA, ("opencode",)),),
        env_var="OPENCODE_DATA_DIR",
        build=_opencode_normalizer,
    ),
    Provider(
        name="droid",
        patterns=("**/*.settings.json",),
        fallbacks=((Base.HOME, (".factory", "sessions")),),
        env_var="FACTORY_HOME",
        env_subpaths=("sessions",),
        build=lambda config, roots: DroidNormalizer(),
    ),
    Provider(
        name="kimi",
        patterns=("**/wire.jsonl",),
        fallbacks=((Base.HOME, (".kimi", "sessions")),),
        env_var="KIMI_HOME",
        env_subpaths=("sessions",),
        build=_kimi_normalizer,
    ),
    Provider(
        name="openclaw",
        patterns=("**/*.jsonl",),
        fallbacks=(
            (Base.HOME, (".openclaw", "agents")),
            (Base.HOME, (".clawdbot", "agents")),
            (Base.HOME, (".moltbot", "agents")),
            (Base.HOME, (".moldbot", "agents")),
        ),
        build=lambda config, roots: OpenClawNormalizer(),
    ),
)


def watch_roots(config: Config, providers: Iterable[Provider] | None = None) -> list[Path]:
    """Existing root directories of every provider, for change notifications."""
    roots: list[Path] = []
    for provider in providers or PROVIDERS:
        for root in provider.existing_roots(config):
            if root not in roots:
                roots.append(root)
    return roots
