"""Scan result models."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class ScanResult:
    """Result summary for one scan pass."""

    files_parsed: int = 0
    files_reused: int = 0
    files_evicted: int = 0
    files_failed: int = 0
    records_parsed: int = 0
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: ScanResult) -> None:
        self.files_parsed += other.files_parsed
        self.files_reused += other.files_reused
        self.files_evicted += other.files_evicted
        self.files_failed += other.files_failed
        self.records_parsed += other.records_parsed
        self.warnings.extend(other.warnings)

    def __str__(self) -> str:
        return (
            f"parsed={self.files_parsed}, reused={self.files_reused}, "
            f"evicted={self.files_evicted}, failed={self.files_failed}, "
            f"records={self.records_parsed}"
        )
