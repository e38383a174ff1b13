"""
Secure tunnel to the app container: one authenticated SSH connection with
host-key pinning, keep-alive and local port forwarding.
"""
import base64
import errno
import hashlib
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import paramiko

from .. import config as _cfg
from ..exceptions import HostKeyError, SSHConnectionError, ValidationError
from ..platform import AppInfo
from ..utils.logging import log, vlog, warn
from ..utils.relay import close_quietly, relay
from ..utils.retry import TRANSIENT_ERRORS, retried_on

MD5_FINGERPRINT_LENGTH = 47  # colon separated hex
SHA1_FINGERPRINT_LENGTH = 59  # colon separated hex
SHA256_FINGERPRINT_LENGTH = 43  # unpadded base64

KEEPALIVE_REQUEST = "keepalive@cloudfoundry.org"

ACCEPT_BACKOFF = 0.1
_TRANSIENT_ACCEPT_ERRNOS = {
    errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR, errno.ECONNABORTED,
    errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM,
}


# ── host key fingerprints ─────────────────────────────────────────────────────

def md5_fingerprint(key: paramiko.PKey) -> str:
    return hashlib.md5(key.asbytes()).digest().hex(":")


def sha1_fingerprint(key: paramiko.PKey) -> str:
    return hashlib.sha1(key.asbytes()).digest().hex(":")


def sha256_fingerprint(key: paramiko.PKey) -> str:
    digest = hashlib.sha256(key.asbytes()).digest()
    return base64.b64encode(digest).decode("ascii").rstrip("=")


def verify_host_key(key: paramiko.PKey, expected: str):
    """
    Check *key* against the *expected* fingerprint.
    The length of *expected* selects the digest; an empty expectation always
    fails and reports the MD5 fingerprint so the caller can pin it.
    """
    n = len(expected)
    if n == SHA256_FINGERPRINT_LENGTH:
        fingerprint = sha256_fingerprint(key)
    elif n == SHA1_FINGERPRINT_LENGTH:
        fingerprint = sha1_fingerprint(key)
    elif n == MD5_FINGERPRINT_LENGTH:
        fingerprint = md5_fingerprint(key)
    elif n == 0:
        fingerprint = md5_fingerprint(key)
        raise HostKeyError(
            f"Unable to verify identity of host.\n\n"
            f"The fingerprint of the received key was {fingerprint!r}.",
            fingerprint,
        )
    else:
        raise HostKeyError("Unsupported host key fingerprint format")

    if fingerprint != expected:
        raise HostKeyError(
            f"Host key verification failed.\n\n"
            f"The fingerprint of the received key was {fingerprint!r}.",
            fingerprint,
        )


class FingerprintPolicy(paramiko.MissingHostKeyPolicy):
    """Accept the host key only if it matches a pinned fingerprint."""

    def __init__(self, expected: str):
        self.expected = expected

    def missing_host_key(self, client, hostname, key):
        verify_host_key(key, self.expected)
        vlog(f"[SSH] host key for {hostname} verified")


# ── forwarding specs ──────────────────────────────────────────────────────────

def split_address(address: str, default_host: str = "localhost",
                  default_port: int = 22) -> tuple[str, int]:
    """'host:port', 'host' or 'port' → (host, port)."""
    if address.isdigit():
        return default_host, int(address)
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, default_port
    return host.strip("[]") or default_host, int(port)


@dataclass(frozen=True)
class ForwardSpec:
    listen_address: str
    connect_address: str

    @classmethod
    def parse(cls, spec: str) -> "ForwardSpec":
        """Parse 'LISTEN=CONNECT', e.g. '8080=localhost:8080'."""
        listen, sep, connect = spec.partition("=")
        if not sep or not listen or not connect:
            raise ValueError(f"invalid forward spec {spec!r} (expected LISTEN=CONNECT)")
        return cls(listen.strip(), connect.strip())


def _listen(address: str) -> socket.socket:
    return socket.create_server(split_address(address, default_port=0))


def _is_transient(exc: OSError) -> bool:
    return isinstance(exc, socket.timeout) or exc.errno in _TRANSIENT_ACCEPT_ERRNOS


# ── tunnel ────────────────────────────────────────────────────────────────────

class SecureTunnel:
    """
    Wraps one paramiko SSHClient connected to the app's SSH endpoint.
    The username encodes the app GUID and instance index; the password is a
    one-time code from the platform.
    Teardown order is fixed: keep-alive → forward listeners → connection.
    """

    def __init__(self, app: AppInfo, endpoint: str, fingerprint: str, token: str,
                 index: int = 0, skip_host_validation: bool = False,
                 keepalive_interval: Optional[float] = None,
                 client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
                 listen: Callable[[str], socket.socket] = _listen):
        self.app = app
        self.endpoint = endpoint
        self.fingerprint = fingerprint
        self.token = token
        self.index = index
        self.skip_host_validation = skip_host_validation
        self.keepalive_interval = (keepalive_interval if keepalive_interval is not None
                                   else _cfg.KEEPALIVE_INTERVAL)
        self._client_factory = client_factory
        self._listen = listen
        self._client: Optional[paramiko.SSHClient] = None
        self._listeners: list[socket.socket] = []
        self._forward_threads: list[threading.Thread] = []
        self._keepalive_stop: Optional[threading.Event] = None
        self._keepalive_thread: Optional[threading.Thread] = None

    @property
    def username(self) -> str:
        return f"cf:{self.app.guid}/{self.index}"

    # ── connection ─────────────────────────────────────────────────────────

    def validate_target(self):
        if self.app.state.upper() != "STARTED":
            raise ValidationError(f"Application {self.app.name!r} is not in the STARTED state")
        if not self.app.diego:
            raise ValidationError(f"Application {self.app.name!r} is not running on Diego")

    def connect(self):
        self.validate_target()

        client = self._client_factory()
        if self.skip_host_validation:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(FingerprintPolicy(self.fingerprint))

        host, port = split_address(self.endpoint)
        log(f"[SSH] connecting to {self.username}@{host}:{port} …")
        try:
            self._dial(client, host, port)
        except HostKeyError:
            client.close()
            raise
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SSHConnectionError(f"authentication as {self.username} failed: {exc}") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            raise SSHConnectionError(f"could not connect to {self.endpoint}: {exc}") from exc

        self._client = client
        log("[SSH] connected ✓")

    @retried_on(*TRANSIENT_ERRORS, paramiko.ssh_exception.NoValidConnectionsError)
    def _dial(self, client: paramiko.SSHClient, host: str, port: int):
        client.connect(hostname=host, port=port, username=self.username,
                       password=self.token, look_for_keys=False, allow_agent=False,
                       timeout=_cfg.CONNECT_TIMEOUT, banner_timeout=30, auth_timeout=30)

    @property
    def transport(self) -> paramiko.Transport:
        if self._client is None:
            raise SSHConnectionError("not connected")
        transport = self._client.get_transport()
        if transport is None:
            raise SSHConnectionError("connection is closed")
        return transport

    def open_session(self) -> paramiko.Channel:
        return self.transport.open_session()

    def open_sftp(self) -> paramiko.SFTPClient:
        if self._client is None:
            raise SSHConnectionError("not connected")
        return self._client.open_sftp()

    def dial(self, address: str, origin=("127.0.0.1", 0)) -> paramiko.Channel:
        """Open a direct-tcpip channel to *address* as seen from the container."""
        return self.transport.open_channel("direct-tcpip", split_address(address), origin)

    # ── keep-alive ─────────────────────────────────────────────────────────

    def start_keepalive(self, interval: Optional[float] = None):
        if self._keepalive_thread is not None:
            return
        stop = threading.Event()
        thread = threading.Thread(
            target=self._keepalive_loop,
            args=(stop, interval if interval is not None else self.keepalive_interval),
            name="appsync-keepalive", daemon=True,
        )
        self._keepalive_stop = stop
        self._keepalive_thread = thread
        thread.start()

    def _keepalive_loop(self, stop: threading.Event, interval: float):
        while not stop.wait(interval):
            try:
                self.transport.global_request(KEEPALIVE_REQUEST, wait=False)
            except Exception:
                pass  # liveness is advisory

    def stop_keepalive(self):
        if self._keepalive_stop is not None:
            self._keepalive_stop.set()
        if self._keepalive_thread is not None:
            self._keepalive_thread.join(timeout=2)
        self._keepalive_stop = None
        self._keepalive_thread = None

    # ── port forwarding ────────────────────────────────────────────────────

    def local_port_forward(self, specs: list[ForwardSpec]):
        for spec in specs:
            listener = self._listen(spec.listen_address)
            self._listeners.append(listener)
            thread = threading.Thread(
                target=self._accept_loop, args=(listener, spec.connect_address),
                name=f"appsync-forward-{spec.listen_address}", daemon=True,
            )
            self._forward_threads.append(thread)
            thread.start()
            log(f"[forward] {spec.listen_address} → {spec.connect_address}")

    def _accept_loop(self, listener: socket.socket, address: str):
        try:
            while True:
                try:
                    conn, _ = listener.accept()
                except OSError as exc:
                    if _is_transient(exc):
                        time.sleep(ACCEPT_BACKOFF)
                        continue
                    return
                threading.Thread(
                    target=self._handle_forward_connection, args=(conn, address),
                    name="appsync-relay", daemon=True,
                ).start()
        finally:
            close_quietly(listener)

    def _handle_forward_connection(self, conn: socket.socket, address: str):
        try:
            try:
                target = self.dial(address)
            except (SSHConnectionError, paramiko.SSHException, OSError) as exc:
                warn(f"connect to {address} failed: {exc}")
                return

            relay(conn, target)
        finally:
            close_quietly(conn)

    # ── teardown ───────────────────────────────────────────────────────────

    def close(self):
        self.stop_keepalive()
        for listener in self._listeners:
            close_quietly(listener)
        for thread in self._forward_threads:
            thread.join(timeout=2)
        self._listeners = []
        self._forward_threads = []
        if self._client is not None:
            self._client.close()
            self._client = None
            log("[SSH] disconnected.")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
