"""
Common contract and helpers shared by both remote transports
"""
import os
import posixpath
from typing import BinaryIO, Callable, Optional, Protocol

import paramiko

from ..exceptions import TransferError

# sink(transferred_bytes, total_bytes, label)
ProgressSink = Callable[[int, int, str], None]

COPY_CHUNK = 32 * 1024

# what a failing remote call can raise; transports wrap these in TransferError
REMOTE_ERRORS = (paramiko.SSHException, OSError, EOFError)


class ContainerFiler(Protocol):
    """Bulk file operations against the app container."""

    def copy_remote_folder(self, local_root: str, remote_root: str) -> None: ...

    def copy_content(self, reader: BinaryIO, size: int, remote_path: str, mode: int) -> None: ...

    def create_folders(self, remote_root: str, relative_dir: str) -> None: ...

    def delete(self, remote_path: str) -> None: ...

    def rename(self, old_remote_path: str, new_remote_path: str) -> None: ...

    def set_progress(self, sink: Optional[ProgressSink]) -> None: ...


def normalize_remote(path: str) -> str:
    """Strip a leading '~/' so the path resolves against the remote home directory."""
    if path.startswith("~/"):
        return path[2:]
    if path == "~":
        return "."
    return path


def folder_prefixes(remote_root: str, relative_dir: str) -> list[str]:
    """
    Every directory that has to exist for *relative_dir* under *remote_root*,
    outermost first: ('r', 'a/b/c') → ['r/a', 'r/a/b', 'r/a/b/c'].
    """
    root = normalize_remote(remote_root)
    if not root.endswith("/"):
        root += "/"
    segments = [s for s in relative_dir.replace("\\", "/").split("/") if s]
    return [root + "/".join(segments[:i + 1]) for i in range(len(segments))]


def to_local_path(local_root: str, remote_root: str, remote_path: str) -> str:
    """Map a path below *remote_root* onto the same relative path below *local_root*."""
    prefix = remote_root if remote_root.endswith("/") else remote_root + "/"
    rel = remote_path[len(prefix):] if remote_path.startswith(prefix) else remote_path
    return os.path.join(local_root, *rel.split("/"))


def split_remote(remote_path: str) -> tuple[str, str]:
    """'a/b/c.txt' → ('a/b', 'c.txt'); a bare name lives in '.'."""
    parent, name = posixpath.split(remote_path)
    return parent or ".", name


def copy_exact(reader: BinaryIO, write: Callable[[bytes], object], size: int,
               sink: Optional[ProgressSink] = None, label: str = "") -> int:
    """Copy exactly *size* bytes from *reader* into *write*; a short read is an error."""
    done = 0
    while done < size:
        chunk = reader.read(min(COPY_CHUNK, size - done))
        if not chunk:
            raise TransferError(f"short read for {label or 'upload'}: expected {size} bytes, got {done}")
        write(chunk)
        done += len(chunk)
        if sink is not None:
            sink(done, size, label)
    return done
