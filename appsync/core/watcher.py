"""
Recursive watch of the local root, feeding FileEvents into the engine's queue
"""
import os
import queue

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..exceptions import WatchError
from ..utils.logging import vlog
from .events import EventKind, FileEvent


class QueueHandler(FileSystemEventHandler):
    """
    Translates watchdog callbacks into FileEvents.
    put() blocks while the queue is full; watchdog keeps buffering upstream.
    """

    def __init__(self, events: queue.Queue):
        super().__init__()
        self.events = events

    def _put(self, path, kind: EventKind, dest_path=None, is_directory=False):
        event = FileEvent(os.fsdecode(path), kind,
                          os.fsdecode(dest_path) if dest_path is not None else None,
                          is_directory)
        vlog(f"  [watch] {event.kind.value} {event.path}")
        self.events.put(event)

    def on_created(self, event: FileSystemEvent):
        self._put(event.src_path, EventKind.CREATE, is_directory=event.is_directory)

    def on_modified(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self._put(event.src_path, EventKind.WRITE)

    def on_deleted(self, event: FileSystemEvent):
        self._put(event.src_path, EventKind.REMOVE, is_directory=event.is_directory)

    def on_moved(self, event: FileSystemEvent):
        self._put(event.src_path, EventKind.RENAME, event.dest_path, event.is_directory)


class LocalWatcher:
    def __init__(self, root: str, events: queue.Queue, observer_factory=Observer):
        self.root = root
        self.events = events
        self._observer_factory = observer_factory
        self._observer = None

    def start(self):
        observer = self._observer_factory()
        try:
            observer.schedule(QueueHandler(self.events), self.root, recursive=True)
            observer.start()
        except OSError as exc:
            raise WatchError(f"cannot watch '{self.root}': {exc}") from exc
        self._observer = observer

    def stop(self):
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
