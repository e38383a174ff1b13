"""
Logging utilities for appsync
"""
import sys
from datetime import datetime

_verbose = False


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def _stamped(msg: str) -> str:
    return f"[{datetime.now().strftime('%H:%M:%S')}] {msg}"


def log(msg: str):
    """Log a message with timestamp"""
    print(_stamped(msg), flush=True)


def vlog(msg: str):
    """Log a verbose message (only if verbose mode is enabled)"""
    if _verbose:
        log(msg)


def warn(msg: str):
    """Log a warning message"""
    log(f"⚠  {msg}")


def error(msg: str):
    """Log an error message to stderr"""
    print(_stamped(f"✗  {msg}"), file=sys.stderr, flush=True)
