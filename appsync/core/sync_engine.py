"""
Main sync engine - bootstrap pull, then live mirroring of local changes

Events are consumed one at a time, in arrival order, by a single thread, so
the swap/rename state needs no locking.
"""
import os
import queue
import stat
import threading
from typing import Callable, Iterable, Optional

from .. import config as _cfg
from ..exceptions import AppSyncError, ValidationError
from ..operations.base import ContainerFiler, normalize_remote
from ..operations.scp import ScpFiler
from ..operations.sftp import SftpFiler
from ..platform import CFPlatform
from ..utils.file_utils import dir_is_empty, file_exists, truncate_path
from ..utils.ignore_patterns import SyncIgnore, load_sync_ignore
from ..utils.logging import error, log, set_verbose, vlog, warn
from .events import EventKind, FileEvent, Mode, SyncState
from .tunnel import ForwardSpec, SecureTunnel
from .watcher import LocalWatcher

_STOP = object()


class Session:
    """Immutable roots of one sync invocation plus the pure path mapping between them."""

    def __init__(self, local_root: str, remote_root: str, force_sync: bool = False,
                 ignore: Optional[SyncIgnore] = None):
        root = os.path.abspath(local_root)
        if not os.path.exists(root):
            raise ValidationError(f"source dir '{local_root}' does not exist")
        if not os.path.isdir(root):
            raise ValidationError("You must pass a directory, not a file in source dir")
        self._local_root = root.rstrip(os.sep) or os.sep
        self._remote_root = remote_root
        self.force_sync = force_sync
        self.ignore = ignore or SyncIgnore()

    @property
    def local_root(self) -> str:
        return self._local_root

    @property
    def remote_root(self) -> str:
        return self._remote_root

    @property
    def remote_prefix(self) -> str:
        prefix = self._remote_root.replace("\\", "/")
        return prefix if prefix.endswith("/") else prefix + "/"

    def relative(self, path: str) -> str:
        """Path below the local root, with forward slashes and no leading slash."""
        if path.startswith(self._local_root):
            path = path[len(self._local_root):]
        return path.replace(os.sep, "/").lstrip("/")

    def to_remote(self, path: str) -> str:
        return self.remote_prefix + self.relative(path)

    def to_local(self, rel: str) -> str:
        return os.path.join(self._local_root, *[p for p in rel.split("/") if p])


def detect_swap(path: str) -> tuple[bool, str]:
    """
    Decide whether *path* is an editor's temporary copy of another file.

    A path that still exists is not a swap file. Otherwise its extension is
    shortened one character at a time (finally dropping the dot) until a
    sibling exists: 'file.txt.swp' → 'file.txt.sw' → 'file.txt.s' → 'file.txt'.
    Returns (True, sibling) on a hit, (False, path) otherwise.
    """
    if file_exists(path):
        return False, path
    head, name = os.path.split(path)
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return False, path
    while ext:
        ext = ext[:-1]
        candidate = os.path.join(head, f"{stem}.{ext}" if ext else stem)
        if file_exists(candidate):
            return True, candidate
    return False, path


class SyncEngine:
    """Turns local filesystem events into ContainerFiler calls."""

    def __init__(self, filer: ContainerFiler, session: Session,
                 queue_size: Optional[int] = None,
                 watcher_factory: Callable[[str, queue.Queue], LocalWatcher] = LocalWatcher):
        self.filer = filer
        self.session = session
        self.state = SyncState()
        self.events: queue.Queue = queue.Queue(
            maxsize=queue_size if queue_size is not None else _cfg.EVENT_QUEUE_SIZE)
        self._watcher_factory = watcher_factory
        self._stopping = threading.Event()
        # (path, (size, mtime_ns)) of a file uploaded by the previous CREATE
        self._fresh = None
        # (src, dest) of the previous directory move
        self._moved_dir = None

    # ── bootstrap ──────────────────────────────────────────────────────────

    def sync_folder(self):
        """Pull the remote tree when the local root is empty or a refresh is forced."""
        if not dir_is_empty(self.session.local_root) and not self.session.force_sync:
            log("No need to synchronize from remote, directory not empty.")
            return
        log(f"Synchronizing folder '{truncate_path(self.session.local_root)}' "
            f"from the remote folder '{truncate_path(self.session.remote_root)}' ...")
        self.filer.copy_remote_folder(self.session.local_root, self.session.remote_root)
        log("Synchronization finished.")

    # ── watch loop ─────────────────────────────────────────────────────────

    def run(self):
        self.sync_folder()
        watcher = self._watcher_factory(self.session.local_root, self.events)
        watcher.start()
        log(f"Start watching for change in folder '{truncate_path(self.session.local_root)}'")
        try:
            while not self._stopping.is_set():
                event = self.events.get()
                if event is _STOP:
                    break
                self.handle(event)
        finally:
            watcher.stop()

    def stop(self):
        self._stopping.set()
        try:
            self.events.put_nowait(_STOP)
        except queue.Full:
            pass  # the consumer sees the flag after its current event

    # ── event handling ─────────────────────────────────────────────────────

    def is_ignored(self, event: FileEvent) -> bool:
        path = event.path
        if not path.startswith(self.session.local_root.rstrip(os.sep) + os.sep):
            return True
        name = os.path.basename(path)
        ext = os.path.splitext(name)[1]
        if ext and ext[1:] in _cfg.IGNORED_EXTS:
            return True
        try:
            int(name)
            return True
        except ValueError:
            pass
        rel = self.session.relative(path)
        return self.session.ignore.match_relative(
            rel, is_dir=event.is_directory or os.path.isdir(path))

    def handle(self, event: FileEvent):
        """Process one event; a failing remote operation is logged, never raised."""
        if self.is_ignored(event):
            vlog(f"  [IGNORED] {event.kind.value} {event.path}")
            return
        log(f"Received event: '{event.kind.value}' for file '{truncate_path(event.path)}'")
        try:
            self._dispatch(event)
        except (AppSyncError, OSError) as exc:
            error(f"Event has errored: {exc}")

    def _dispatch(self, event: FileEvent):
        fresh, self._fresh = self._fresh, None
        moved_dir, self._moved_dir = self._moved_dir, None
        if event.kind is EventKind.CREATE:
            self._on_create(event.path)
        elif event.kind is EventKind.WRITE:
            self._on_write(event.path, fresh)
        elif event.kind is EventKind.REMOVE:
            self._on_remove(event.path)
        elif event.kind is EventKind.RENAME:
            if event.dest_path is not None:
                self._on_move(event.path, event.dest_path, event.is_directory, moved_dir)
            else:
                self._on_rename(event.path)

    def _start_swap(self, target: str):
        if self.state.mode is Mode.RENAME_PENDING:
            warn(f"Dropping pending rename of '{truncate_path(self.state.rename_source)}'.")
        self.state.start_swap(target)
        warn(f"File '{truncate_path(target)}' is swapping, next events will be ignored.")

    def _on_create(self, path: str):
        if self.state.mode is Mode.SWAPPING:
            return
        swapping, target = detect_swap(path)
        if swapping:
            self._start_swap(target)
            return
        if os.path.isdir(path):
            self.filer.create_folders(self.session.remote_root, self.session.relative(path))
        else:
            signature = self._upload(path)
            if signature is not None:
                self._fresh = (path, signature)

    def _on_write(self, path: str, fresh=None):
        if self.state.mode is Mode.SWAPPING:
            return
        unchanged = fresh[1] if fresh is not None and fresh[0] == path else None
        self._upload(path, unchanged)

    def _on_remove(self, path: str):
        if self.state.mode is Mode.SWAPPING:
            target = self.state.swap_target
            self.state.reset()
            warn(f"File '{truncate_path(target)}' finished to swap, update sent.")
            self._upload(target)
            return
        self.filer.delete(self.session.to_remote(path))

    def _on_rename(self, path: str):
        if self.state.mode is Mode.SWAPPING:
            return
        if file_exists(path):
            self.state.start_rename(path)
            return
        if self.state.mode is Mode.RENAME_PENDING:
            source = self.state.rename_source
            self.state.reset()
            self.filer.rename(self.session.to_remote(source), self.session.to_remote(path))
            return
        swapping, target = detect_swap(path)
        if swapping:
            self._start_swap(target)
            return
        self.filer.delete(self.session.to_remote(path))

    def _on_move(self, src: str, dest: str, is_directory: bool = False, moved_dir=None):
        if self.state.mode is Mode.SWAPPING:
            return
        if moved_dir is not None:
            parent_src, parent_dest = moved_dir
            if (src.startswith(parent_src + os.sep)
                    and dest == parent_dest + src[len(parent_src):]):
                vlog(f"  [SKIP] '{truncate_path(src)}' moved with its folder")
                self._moved_dir = moved_dir
                return
        if is_directory:
            self._moved_dir = (src, dest)
        self.filer.rename(self.session.to_remote(src), self.session.to_remote(dest))

    def _upload(self, path: str, unchanged=None):
        """Send *path*; returns its (size, mtime_ns), or None when nothing was sent."""
        st = os.stat(path)
        if stat.S_ISDIR(st.st_mode):
            vlog(f"  [SKIP] '{truncate_path(path)}' is a directory")
            return None
        signature = (st.st_size, st.st_mtime_ns)
        if signature == unchanged:
            vlog(f"  [SKIP] '{truncate_path(path)}' unchanged since its creation")
            return None
        with open(path, "rb") as f:
            self.filer.copy_content(f, st.st_size, self.session.to_remote(path), st.st_mode)
        return signature


# ── orchestration ─────────────────────────────────────────────────────────────

def print_progress(done: int, total: int, label: str):
    """Byte-progress sink for uploads/downloads (verbose mode only)."""
    pct = 100 if total == 0 else done * 100 // total
    end = "\n" if done >= total else ""
    print(f"\r{label} {pct:3d}%", end=end, flush=True)


def build_filer(tunnel: SecureTunnel, ignore: SyncIgnore, transport: str):
    """Pick the remote transport for this session."""
    if transport == "scp":
        return ScpFiler(tunnel, ignore), None
    if transport == "sftp":
        sftp = tunnel.open_sftp()
        return SftpFiler(sftp, ignore), sftp
    raise ValueError(f"unknown transport {transport!r} (expected 'sftp' or 'scp')")


def run_sync(app_name: str, source: Optional[str] = None, target: Optional[str] = None,
             force_sync: bool = False, transport: Optional[str] = None,
             forward_specs: Iterable[str] = (), verbose: bool = False,
             platform: Optional[CFPlatform] = None):
    set_verbose(verbose)
    platform = platform or CFPlatform(_cfg.CF_BINARY)
    transport = transport or _cfg.TRANSPORT
    forwards = [ForwardSpec.parse(s) for s in forward_specs]

    source_dir = _cfg.get_source_dir(app_name, source)
    target_dir = _cfg.get_target_dir(target)
    os.makedirs(source_dir, exist_ok=True)

    print(f"\n{'=' * 64}")
    print(f"  Sync  {os.path.abspath(source_dir)}")
    print(f"   →   {app_name}:{target_dir}  ({transport})")
    print(f"{'=' * 64}\n")

    # checked before the ignore file can be copied in
    pull = force_sync or dir_is_empty(source_dir)
    ignore = load_sync_ignore(source_dir, normalize_remote(target_dir))
    log(f"[ignore] {len(ignore)} pattern(s) loaded from {_cfg.IGNORE_FILENAME}")
    session = Session(source_dir, target_dir, pull, ignore)

    log("Retrieving information about your app ...")
    ssh_info = platform.ssh_info()
    app = platform.app(app_name)
    skip_host_validation = platform.ssl_disabled()
    log("Finished retrieving information about your app.")

    log("Authenticating for ssh ...")
    token = platform.ssh_code()
    tunnel = SecureTunnel(app, ssh_info.endpoint, ssh_info.fingerprint, token,
                          index=_cfg.INSTANCE_INDEX,
                          skip_host_validation=skip_host_validation)
    tunnel.connect()
    sftp = None
    try:
        log("Finished authenticating for ssh.")
        tunnel.start_keepalive()
        if forwards:
            tunnel.local_port_forward(forwards)

        filer, sftp = build_filer(tunnel, ignore, transport)
        if verbose:
            filer.set_progress(print_progress)
        SyncEngine(filer, session).run()
    except KeyboardInterrupt:
        print()
        warn("Interrupted by user.")
    finally:
        if sftp is not None:
            sftp.close()
        tunnel.close()
