"""Errors raised while assembling frames."""


class HarvesterError(RuntimeError):
    """Base class for analysis failures."""


class ConfigError(HarvesterError, ValueError):
    """Invalid analysis configuration."""


class TraceFormatError(HarvesterError):
    """A capture file could not be read as a trace."""


class ProcessNotFound(HarvesterError):
    def __init__(self, prefix: str):
        super().__init__(f"No process name starts with '{prefix}'")
        self.prefix = prefix


class EmptyWindow(HarvesterError):
    """The process lifetime and the counter stream never overlap."""


class NoPriorState(HarvesterError):
    """A silent window needs carry-forward but the core has no switch history."""

    def __init__(self, core: int, window_start: int):
        super().__init__(
            f"No context switch observed on core {core} before {window_start}ns"
        )
        self.core = core
        self.window_start = window_start
