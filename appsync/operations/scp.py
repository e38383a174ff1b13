"""
Framed copy-stream transport: drives a remote `scp` in server mode

Upload framing, as spoken to `scp -t` on the container:

    C<mode> <length> <name>\\n   <length raw bytes>   \\0
    D<mode> 0 <name>\\n ... E\\n

Every control message is answered with one ack byte from the receiver:
0 for OK, 1 (warning) or 2 (fatal) followed by a message line.
"""
import os
import shlex
import shutil
import stat
import subprocess
import tempfile
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional

import paramiko

from ..exceptions import TransferError
from ..utils.file_utils import truncate_path
from ..utils.ignore_patterns import SyncIgnore
from ..utils.logging import error, log, vlog
from ..utils.relay import relay
from .base import (
    REMOTE_ERRORS,
    ProgressSink,
    copy_exact,
    folder_prefixes,
    normalize_remote,
    split_remote,
)

DIR_MODE = 0o755


class _PipeEnd:
    """recv/sendall/close view over a local process's stdout/stdin pair."""

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc

    def recv(self, n: int) -> bytes:
        return self.proc.stdout.read1(n)

    def sendall(self, data: bytes):
        self.proc.stdin.write(data)
        self.proc.stdin.flush()

    def shutdown(self, how):
        if not self.proc.stdin.closed:
            self.proc.stdin.close()

    def close(self):
        self.shutdown(None)


class ScpFiler:
    """
    ContainerFiler that speaks the scp wire protocol over fresh SSH sessions.
    Each operation opens its own session and closes it on every path.
    """

    def __init__(self, tunnel, ignore: Optional[SyncIgnore] = None, scp_binary: str = "scp"):
        self.tunnel = tunnel
        self.ignore = ignore or SyncIgnore()
        self.scp_binary = scp_binary
        self._sink: Optional[ProgressSink] = None

    def set_progress(self, sink: Optional[ProgressSink]):
        self._sink = sink

    @contextmanager
    def _session(self) -> Iterator[paramiko.Channel]:
        channel = self.tunnel.open_session()
        try:
            yield channel
        finally:
            channel.close()

    # ── framing ────────────────────────────────────────────────────────────

    @staticmethod
    def _read_ack(channel: paramiko.Channel):
        code = channel.recv(1)
        if code == b"\x00":
            return
        if not code:
            raise TransferError("remote scp closed the stream unexpectedly")
        message = bytearray()
        while True:
            c = channel.recv(1)
            if not c or c == b"\n":
                break
            message += c
        text = message.decode("utf-8", errors="replace").strip()
        raise TransferError(f"remote scp: {text or 'error code ' + str(code[0])}")

    def _send_line(self, channel: paramiko.Channel, line: str):
        channel.sendall(line.encode("utf-8") + b"\n")
        self._read_ack(channel)

    def _run(self, command: str):
        """Run a shell command on the container; a non-zero exit is a TransferError."""
        try:
            with self._session() as channel:
                channel.exec_command(command)
                stderr = channel.makefile_stderr("rb").read()
                rc = channel.recv_exit_status()
        except REMOTE_ERRORS as exc:
            raise TransferError(f"cannot run {command!r}: {exc}") from exc
        if rc != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise TransferError(f"remote command exited {rc}: {command!r}\nstderr: {detail}")

    # ── single operations ──────────────────────────────────────────────────

    def copy_content(self, reader: BinaryIO, size: int, remote_path: str, mode: int):
        path = normalize_remote(remote_path)
        directory, name = split_remote(path)
        label = f"Uploading file to '{truncate_path(path)}'"
        try:
            with self._session() as channel:
                channel.exec_command(f"scp -qt {shlex.quote(directory)}")
                self._read_ack(channel)
                self._send_line(channel, f"C{stat.S_IMODE(mode):04o} {size} {name}")
                copy_exact(reader, channel.sendall, size, self._sink, label)
                channel.sendall(b"\x00")
                self._read_ack(channel)
        except REMOTE_ERRORS as exc:
            raise TransferError(f"cannot upload to '{path}': {exc}") from exc
        log(f"File uploaded to '{truncate_path(path)}'")

    def create_folders(self, remote_root: str, relative_dir: str):
        log(f"Creating folder(s) '{relative_dir}' in '{remote_root}' ...")
        for path in folder_prefixes(remote_root, relative_dir):
            parent, name = split_remote(path)
            try:
                with self._session() as channel:
                    channel.exec_command(f"scp -qrt {shlex.quote(parent)}")
                    self._read_ack(channel)
                    self._send_line(channel, f"D{DIR_MODE:04o} 0 {name}")
                    self._send_line(channel, "E")
            except REMOTE_ERRORS as exc:
                raise TransferError(f"cannot create folder '{path}': {exc}") from exc
        log(f"Finished creating folder(s) '{relative_dir}' in '{remote_root}'.")

    def delete(self, remote_path: str):
        path = normalize_remote(remote_path)
        log(f"Deleting path '{path}' ...")
        self._run(f"rm -rf -- {shlex.quote(path)}")
        log(f"Finished deleting path '{path}'.")

    def rename(self, old_remote_path: str, new_remote_path: str):
        old = normalize_remote(old_remote_path)
        new = normalize_remote(new_remote_path)
        log(f"Moving path '{old}' to '{new}' ...")
        self._run(f"mv -f -- {shlex.quote(old)} {shlex.quote(new)}")
        log(f"Finished moving path '{old}' to '{new}'.")

    # ── bulk download ──────────────────────────────────────────────────────

    def copy_remote_folder(self, local_root: str, remote_root: str):
        """
        Run `scp -f` on the container and a local `scp -t` sink, wire their
        streams through one SSH session, then merge the received tree into
        *local_root* (skipping ignored entries).
        """
        root = normalize_remote(remote_root).rstrip("/") or "."
        staging = tempfile.mkdtemp(prefix=".appsync-", dir=os.path.dirname(local_root) or None)
        received = os.path.join(staging, "tree")
        try:
            self._receive_tree(root, received)
            self._merge(received, local_root)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _receive_tree(self, root: str, destination: str):
        log(f"[scp] receiving '{root}' …")
        try:
            with self._session() as channel:
                channel.exec_command(f"scp -qprf {shlex.quote(root)}")
                proc = subprocess.Popen([self.scp_binary, "-qprt", destination],
                                        stdin=subprocess.PIPE, stdout=subprocess.PIPE,
                                        stderr=subprocess.PIPE)
                relay(channel, _PipeEnd(proc))
                _, stderr = proc.communicate()
                source_rc = channel.recv_exit_status()
        except REMOTE_ERRORS as exc:
            raise TransferError(f"cannot download remote folder '{root}': {exc}") from exc

        # -1: the session closed before the exit status arrived
        if proc.returncode != 0 or source_rc > 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise TransferError(
                f"cannot download remote folder '{root}' "
                f"(local scp exited {proc.returncode}, remote scp exited {source_rc}): {detail}"
            )
        if not os.path.isdir(destination):
            raise TransferError(f"remote path '{root}' is not a folder")

    def _merge(self, received: str, local_root: str):
        for directory, dirnames, filenames in os.walk(received):
            rel_dir = os.path.relpath(directory, received)
            rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/") + "/"
            kept = []
            for d in dirnames:
                if self.ignore.match_relative(rel_dir + d, is_dir=True):
                    vlog(f"  [IGNORED] {rel_dir + d}")
                else:
                    kept.append(d)
            dirnames[:] = kept

            for name in filenames:
                rel = rel_dir + name
                if self.ignore.match_relative(rel):
                    vlog(f"  [IGNORED] {rel}")
                    continue
                target = os.path.join(local_root, *rel.split("/"))
                try:
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    os.replace(os.path.join(directory, name), target)
                except OSError as exc:
                    error(f"cannot place '{rel}': {exc}")
                    continue
                log(f"File '{truncate_path(rel)}' downloaded to '{truncate_path(target)}'")
