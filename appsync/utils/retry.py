"""
Retry decorator for network operations
"""
import functools
import socket
import time
from .logging import log, warn
from .. import config as _cfg

# Errors worth another attempt: the endpoint was unreachable or dropped us
# mid-handshake. Auth and host-key failures are never retried.
TRANSIENT_ERRORS = (socket.timeout, ConnectionResetError, ConnectionRefusedError,
                    ConnectionAbortedError, EOFError)


def retried_on(*exc_types):
    """Decorator factory: retry fn on *exc_types* with exponential back-off."""
    exc_types = exc_types or (Exception,)

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            delay = _cfg.RETRY_BASE_DELAY
            for attempt in range(1, _cfg.RETRY_MAX + 1):
                try:
                    return fn(*args, **kwargs)
                except exc_types as exc:
                    if attempt == _cfg.RETRY_MAX:
                        raise
                    warn(f"{fn.__name__} failed (attempt {attempt}/{_cfg.RETRY_MAX}): {exc}")
                    log(f"  retrying in {delay:.0f}s …")
                    time.sleep(delay)
                    delay = min(delay * 2, 60)

        return wrapper

    return decorator
