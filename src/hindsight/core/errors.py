"""Exception hierarchy for the learning core.

Every hindsight exception inherits from LearningError so callers can catch
broadly or narrowly. Precondition failures also subclass the matching
builtin (ValueError, TimeoutError) so generic handlers keep working.
"""

from __future__ import annotations


class LearningError(Exception):
    """Base exception for all learning-core errors."""


class InvalidGroupError(LearningError, ValueError):
    """Raised when a comparison group has fewer than two members.

    Relative ranking is meaningless for a single candidate.
    """


class PatternKeyError(LearningError, ValueError):
    """Raised when a pattern handed to promotion carries no key."""


class UnknownMemoryTypeError(LearningError, ValueError):
    """Raised when a memory operation names a store that does not exist."""


class LockTimeoutError(LearningError, TimeoutError):
    """Raised when the hot-swap lock cannot be acquired in time.

    The lock is only broken automatically once it is older than the stale
    threshold; a live holder within that window makes waiters time out.
    """

    def __init__(self, lock_path: str, waited_seconds: float) -> None:
        self.lock_path = lock_path
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Timed out after {waited_seconds:.1f}s waiting for lock {lock_path}"
        )
