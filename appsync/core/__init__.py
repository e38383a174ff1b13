"""Core functionality"""
from .events import EventKind, FileEvent, Mode, SyncState
from .sync_engine import Session, SyncEngine, detect_swap, run_sync
from .tunnel import ForwardSpec, SecureTunnel

__all__ = [
    "EventKind", "FileEvent", "Mode", "SyncState",
    "Session", "SyncEngine", "detect_swap", "run_sync",
    "ForwardSpec", "SecureTunnel",
]
