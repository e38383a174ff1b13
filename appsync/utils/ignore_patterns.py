"""
Ignore patterns handling (.syncignore file parsing)

Patterns use gitignore syntax and are scoped to a base path: a path is only
matched against the patterns once it has been made relative to that base.
"""
import os
import shutil
from pathlib import Path
from typing import Iterable, Optional

from pathspec import PathSpec

from .. import config as _cfg
from .logging import log


class SyncIgnore:
    """Compiled gitignore-style rules scoped to *base*."""

    def __init__(self, patterns: Iterable[str] = (), base: str = ""):
        self.patterns = list(patterns)
        self.base = base
        self._spec: Optional[PathSpec] = (
            PathSpec.from_lines("gitwildmatch", self.patterns) if self.patterns else None
        )

    def __len__(self):
        if self._spec is None:
            return 0
        return sum(1 for p in self._spec.patterns if p.include is not None)

    def rebased(self, base: str) -> "SyncIgnore":
        """Same rules, scoped to another base path."""
        return SyncIgnore(self.patterns, base)

    def match_relative(self, rel_path: str, is_dir: bool = False) -> bool:
        """Match a path that is already relative to the base."""
        if self._spec is None:
            return False
        rel = rel_path.replace("\\", "/").lstrip("/")
        if not rel:
            return False
        if is_dir and not rel.endswith("/"):
            rel += "/"
        return self._spec.match_file(rel)

    def match(self, path: str, is_dir: bool = False) -> bool:
        """Match an absolute (or base-prefixed) path; paths outside base never match."""
        rel = _relative_to_base(path, self.base)
        if rel is None:
            return False
        return self.match_relative(rel, is_dir)


def _relative_to_base(path: str, base: str) -> Optional[str]:
    norm = path.replace("\\", "/")
    b = base.replace("\\", "/").rstrip("/")
    if not b:
        return norm
    if norm == b:
        return ""
    if norm.startswith(b + "/"):
        return norm[len(b) + 1:]
    return None


def _ignore_file_for(root: Path) -> Optional[Path]:
    """
    Locate the ignore file for *root*.
    If the root has none but the current directory does, copy it into the root.
    """
    target = root / _cfg.IGNORE_FILENAME
    if target.exists():
        return target
    cwd_file = Path.cwd() / _cfg.IGNORE_FILENAME
    if not cwd_file.is_file():
        return None
    if cwd_file.resolve() != target.resolve():
        shutil.copyfile(cwd_file, target)
        log(f"[ignore] copied {cwd_file} → {target}")
    return target


def load_sync_ignore(root: str, base: str = "") -> SyncIgnore:
    """Load the ignore rules for local *root*, scoped to *base*."""
    f = _ignore_file_for(Path(os.path.abspath(root)))
    if f is None:
        return SyncIgnore([], base)
    lines = f.read_text(encoding="utf-8", errors="replace").splitlines()
    return SyncIgnore(lines, base)
