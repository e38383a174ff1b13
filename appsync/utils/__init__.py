"""Utilities (logging, retry, ignore patterns, file helpers, relays)"""
from .logging import log, vlog, warn, error, set_verbose
from .retry import TRANSIENT_ERRORS, retried_on
from .ignore_patterns import SyncIgnore, load_sync_ignore
from .file_utils import file_exists, dir_is_empty, truncate_path

__all__ = [
    "log", "vlog", "warn", "error", "set_verbose",
    "TRANSIENT_ERRORS", "retried_on",
    "SyncIgnore", "load_sync_ignore",
    "file_exists", "dir_is_empty", "truncate_path",
]
