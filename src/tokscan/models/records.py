"""Record-level models produced by normalizers and kept in the cache."""

from __future__ import annotations

from datetime import datetime, tzinfo

from pydantic import AwareDatetime, BaseModel, ConfigDict


class UsageRecord(BaseModel):
    """A normalized token-usage event from one provider session file."""

    model_config = ConfigDict(frozen=True)

    tool: str
    session_id: str
    timestamp: AwareDatetime
    project: str = ""
    model: str = ""
    message_id: str = ""
    request_id: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float | None = None  # precomputed, base currency

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_write_tokens
            + self.cache_read_tokens
        )

    def local_time(self, tz: tzinfo | None = None) -> datetime:
        """Timestamp converted to ``tz`` (local zone when None)."""
        return self.timestamp.astimezone(tz)


class FileFingerprint(BaseModel):
    """Observed state of a file, used to detect change.

    ``warning`` is set when the file failed to parse in that state, so the
    failure can be reported again while the file stays unchanged.
    """

    model_config = ConfigDict(frozen=True)

    size: int
    mtime_ns: int
    digest: str = ""
    warning: str = ""

    def same_state(self, other: FileFingerprint) -> bool:
        """True when both fingerprints describe the same file contents.

        Digests win when both sides carry one; otherwise size and mtime decide.
        """
        if self.size != other.size:
            return False
        if self.digest and other.digest:
            return self.digest == other.digest
        return self.mtime_ns == other.mtime_ns
