"""
Byte relays between socket-like endpoints (recv / sendall / close)
"""
import socket
import threading

import paramiko

RELAY_CHUNK = 32 * 1024


def close_quietly(conn):
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except Exception:
        pass
    try:
        conn.close()
    except Exception:
        pass


def copy_and_close(dest, src):
    """Copy src → dest until src is exhausted, then close dest."""
    try:
        while True:
            data = src.recv(RELAY_CHUNK)
            if not data:
                break
            dest.sendall(data)
    except (OSError, EOFError, ValueError, paramiko.SSHException):
        pass
    finally:
        close_quietly(dest)


def relay(a, b):
    """Copy both ways between *a* and *b*; returns once both directions are done."""
    forward = threading.Thread(target=copy_and_close, args=(b, a), daemon=True)
    backward = threading.Thread(target=copy_and_close, args=(a, b), daemon=True)
    forward.start()
    backward.start()
    forward.join()
    backward.join()
