"""Remote transports (framed scp stream, structured sftp)"""
from .base import ContainerFiler, ProgressSink, normalize_remote
from .scp import ScpFiler
from .sftp import SftpFiler

__all__ = [
    "ContainerFiler", "ProgressSink", "normalize_remote",
    "ScpFiler",
    "SftpFiler",
]
