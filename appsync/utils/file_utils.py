"""
File utilities (existence checks, path display)
"""
import os


def file_exists(path: str) -> bool:
    """True if *path* exists. Errors other than 'not found' count as existing."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def dir_is_empty(path: str) -> bool:
    """True if the directory has no entries at all."""
    with os.scandir(path) as it:
        return next(it, None) is None


def truncate_path(path: str) -> str:
    """Shorten a path to its last three segments for log lines."""
    path = path.replace(os.sep, "/")
    parts = path.split("/")
    if len(parts) <= 3:
        return path
    return "..." + "/".join(parts[-3:])
