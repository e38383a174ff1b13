"""
Structured transport: SFTP subsystem over the tunnel
"""
import os
import stat
from typing import BinaryIO, Optional

import paramiko

from ..exceptions import TransferError
from ..utils.file_utils import truncate_path
from ..utils.ignore_patterns import SyncIgnore
from ..utils.logging import error, log, vlog
from .base import (
    REMOTE_ERRORS,
    ProgressSink,
    copy_exact,
    folder_prefixes,
    normalize_remote,
    to_local_path,
)


class SftpFiler:
    """
    ContainerFiler backed by one paramiko SFTPClient for the whole session.
    """

    def __init__(self, sftp: paramiko.SFTPClient, ignore: Optional[SyncIgnore] = None):
        self.sftp = sftp
        self.ignore = ignore or SyncIgnore()
        self._sink: Optional[ProgressSink] = None

    def set_progress(self, sink: Optional[ProgressSink]):
        self._sink = sink

    # ── bulk download ──────────────────────────────────────────────────────

    def copy_remote_folder(self, local_root: str, remote_root: str):
        """
        Download every file below *remote_root* into *local_root*.
        Ignored directories are pruned without descending. Per-entry failures
        are logged and skipped; only a failure to list the root itself raises.
        """
        root = normalize_remote(remote_root).rstrip("/") or "."
        ignore = self.ignore.rebased(root)
        try:
            entries = self.sftp.listdir_attr(root)
        except REMOTE_ERRORS as exc:
            raise TransferError(f"cannot list remote folder '{root}': {exc}") from exc

        pending = [(root, entries)]
        while pending:
            directory, entries = pending.pop()
            for attr in sorted(entries, key=lambda a: a.filename):
                path = f"{directory}/{attr.filename}"
                is_dir = stat.S_ISDIR(attr.st_mode or 0)
                if ignore.match(path, is_dir):
                    vlog(f"  [IGNORED] {path}")
                    continue
                if is_dir:
                    try:
                        pending.append((path, self.sftp.listdir_attr(path)))
                    except REMOTE_ERRORS as exc:
                        error(f"cannot list '{path}': {exc}")
                    continue
                try:
                    self._download(local_root, root, path, attr)
                except REMOTE_ERRORS + (TransferError,) as exc:
                    error(f"cannot download '{path}': {exc}")

    def _download(self, local_root: str, root: str, path: str, attr: paramiko.SFTPAttributes):
        local_path = to_local_path(local_root, root, path)
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        size = attr.st_size or 0
        label = f"Downloading file '{truncate_path(path)}' to '{truncate_path(local_path)}'"
        with self.sftp.open(path, "rb") as remote_file, open(local_path, "wb") as local_file:
            remote_file.prefetch(size)
            copy_exact(remote_file, local_file.write, size, self._sink, label)
        if attr.st_mode is not None:
            os.chmod(local_path, stat.S_IMODE(attr.st_mode))
        log(f"File '{truncate_path(path)}' downloaded to '{truncate_path(local_path)}'")

    # ── single operations ──────────────────────────────────────────────────

    def copy_content(self, reader: BinaryIO, size: int, remote_path: str, mode: int):
        path = normalize_remote(remote_path)
        label = f"Uploading file to '{truncate_path(path)}'"
        try:
            with self.sftp.open(path, "wb") as remote_file:
                remote_file.set_pipelined(True)
                copy_exact(reader, remote_file.write, size, self._sink, label)
            self.sftp.chmod(path, stat.S_IMODE(mode))
        except REMOTE_ERRORS as exc:
            raise TransferError(f"cannot upload to '{path}': {exc}") from exc
        log(f"File uploaded to '{truncate_path(path)}'")

    def create_folders(self, remote_root: str, relative_dir: str):
        log(f"Creating folder(s) '{relative_dir}' in '{remote_root}' ...")
        for path in folder_prefixes(remote_root, relative_dir):
            try:
                self.sftp.mkdir(path)
            except REMOTE_ERRORS as exc:
                if not self._is_dir(path):
                    raise TransferError(f"cannot create folder '{path}': {exc}") from exc
        log(f"Finished creating folder(s) '{relative_dir}' in '{remote_root}'.")

    def _is_dir(self, path: str) -> bool:
        try:
            return stat.S_ISDIR(self.sftp.stat(path).st_mode or 0)
        except REMOTE_ERRORS:
            return False

    def delete(self, remote_path: str):
        path = normalize_remote(remote_path)
        log(f"Deleting path '{path}' ...")
        try:
            attr = self.sftp.stat(path)
            if stat.S_ISDIR(attr.st_mode or 0):
                self._remove_tree(path)
            else:
                self.sftp.remove(path)
        except REMOTE_ERRORS as exc:
            raise TransferError(f"cannot delete '{path}': {exc}") from exc
        log(f"Finished deleting path '{path}'.")

    def _remove_tree(self, path: str):
        for attr in self.sftp.listdir_attr(path):
            child = f"{path}/{attr.filename}"
            if stat.S_ISDIR(attr.st_mode or 0):
                self._remove_tree(child)
            else:
                self.sftp.remove(child)
        self.sftp.rmdir(path)

    def rename(self, old_remote_path: str, new_remote_path: str):
        old = normalize_remote(old_remote_path)
        new = normalize_remote(new_remote_path)
        log(f"Moving path '{old}' to '{new}' ...")
        try:
            self.sftp.posix_rename(old, new)
        except REMOTE_ERRORS:
            # no posix-rename@openssh.com extension
            try:
                self.sftp.rename(old, new)
            except REMOTE_ERRORS as exc:
                raise TransferError(f"cannot move '{old}' to '{new}': {exc}") from exc
        log(f"Finished moving path '{old}' to '{new}'.")
