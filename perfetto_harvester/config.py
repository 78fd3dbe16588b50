"""Analysis configuration."""

from __future__ import annotations

from dataclasses import dataclass

from perfetto_harvester.errors import ConfigError

NS_PER_MS = 1_000_000


@dataclass(frozen=True)
class AnalysisConfig:
    process_name_prefix: str
    interval_ms: int
    workers: int = 1

    def __post_init__(self):
        if not isinstance(self.process_name_prefix, str) or not self.process_name_prefix:
            raise ConfigError("process_name_prefix must be a non-empty string")
        if isinstance(self.interval_ms, bool) or not isinstance(self.interval_ms, int):
            raise ConfigError(f"interval_ms must be an integer, got {self.interval_ms!r}")
        if self.interval_ms <= 0:
            raise ConfigError(f"interval_ms must be positive, got {self.interval_ms}")
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")

    @property
    def interval_ns(self) -> int:
        return self.interval_ms * NS_PER_MS
