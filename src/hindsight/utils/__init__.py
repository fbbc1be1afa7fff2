"""Shared utilities for Hindsight.

Contains cross-cutting utilities used by multiple modules.
"""

from hindsight.utils.time import ensure_utc, utc_now

__all__ = ["ensure_utc", "utc_now"]
