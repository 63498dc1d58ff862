class ProgressionError(Exception):
    """Base class for progression engine errors."""


class LevelTableError(ProgressionError):
    """
    No level matches an XP amount. The level table is empty or malformed,
    which is a seeding problem and not something a retry can fix.
    """


class InvalidXPAmount(ProgressionError, ValueError):
    pass


class ProgressConflict(ProgressionError):
    """Raised by a store when a concurrent write to the same progress row wins."""


class ProgressUnavailable(ProgressionError):
    """Retries for a conflicting award were exhausted; the caller may re-submit."""
