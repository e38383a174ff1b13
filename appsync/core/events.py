"""
Local filesystem events and the engine's mutable sync state
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EventKind(Enum):
    CREATE = "create"
    WRITE = "write"
    REMOVE = "remove"
    RENAME = "rename"


@dataclass(frozen=True)
class FileEvent:
    """
    One filesystem change. A RENAME with dest_path set was already paired by
    the watcher; without it, it is one half of a rename pair. is_directory is
    reported by the watcher, so it stays accurate after the path is gone.
    """
    path: str
    kind: EventKind
    dest_path: Optional[str] = None
    is_directory: bool = False


class Mode(Enum):
    IDLE = "idle"
    SWAPPING = "swapping"
    RENAME_PENDING = "rename-pending"


@dataclass
class SyncState:
    """Owned by the event-consuming thread only. At most one slot is ever set."""
    mode: Mode = Mode.IDLE
    swap_target: Optional[str] = None
    rename_source: Optional[str] = None

    def start_swap(self, target: str):
        self.mode = Mode.SWAPPING
        self.swap_target = target
        self.rename_source = None

    def start_rename(self, source: str):
        self.mode = Mode.RENAME_PENDING
        self.rename_source = source
        self.swap_target = None

    def reset(self):
        self.mode = Mode.IDLE
        self.swap_target = None
        self.rename_source = None
