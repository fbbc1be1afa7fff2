"""On-disk JSON stores and the hot-swap lock."""

from hindsight.storage.files import LearningPaths, read_json_file, write_json_file
from hindsight.storage.lock import DirectoryLock, break_stale_lock, lock_age

__all__ = [
    "DirectoryLock",
    "LearningPaths",
    "break_stale_lock",
    "lock_age",
    "read_json_file",
    "write_json_file",
]
