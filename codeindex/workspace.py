"""Workspace boundary and ignore rules.

A workspace is the root folder being indexed. This module decides which
files inside it are eligible: the default excluded directories, hidden
entries, ``.gitignore`` patterns and the indexer-specific
``.codeindexignore`` file.
"""

import os
from pathlib import Path
from typing import Any

import pathspec

INDEX_IGNORE_FILE = ".codeindexignore"

# Directories never worth indexing
_DEFAULT_EXCLUDES = {
    "node_modules",
    "venv",
    ".venv",
    "__pycache__",
    ".git",
    ".svn",
    ".hg",
    "dist",
    "build",
    ".next",
    "target",
    "bin",
    "obj",
    ".idea",
    ".vscode",
    "vendor",
    ".tox",
    "coverage",
    ".cache",
    "env",
    ".pytest_cache",
    ".mypy_cache",
    ".eggs",
    "log",
    "logs",
}

SKIP_DIRS = frozenset(_DEFAULT_EXCLUDES)


def _load_spec(path: Path) -> pathspec.PathSpec | None:
    if not path.is_file():
        return None
    try:
        patterns = path.read_text(encoding="utf-8").splitlines()
        return pathspec.PathSpec.from_lines("gitignore", patterns)
    except OSError:
        return None


class Workspace:
    """One indexed root folder and its ignore rules."""

    def __init__(self, root: str) -> None:
        self.root_path = os.path.abspath(os.path.expanduser(root))
        self._gitignore: Any = None
        self._index_ignore: Any = None
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.reload_ignore_rules()

    def reload_ignore_rules(self) -> None:
        root = Path(self.root_path)
        self._gitignore = _load_spec(root / ".gitignore")
        self._index_ignore = _load_spec(root / INDEX_IGNORE_FILE)
        self._loaded = True

    def get_ignore_rules(self) -> list[str]:
        """Return the names of the default skip directories."""
        return sorted(SKIP_DIRS)

    def load_index_ignore(self) -> pathspec.PathSpec | None:
        """Return the ``.codeindexignore`` spec, or None when absent."""
        self._ensure_loaded()
        return self._index_ignore

    def resolve(self, path: str) -> str:
        if not os.path.isabs(path):
            return os.path.abspath(os.path.join(self.root_path, path))
        return os.path.abspath(os.path.expanduser(path))

    def is_path_within_workspace(self, path: str) -> bool:
        normalized = self.resolve(path)
        # commonpath handles /home/user vs /home/username
        try:
            common = os.path.commonpath([self.root_path, normalized])
        except ValueError:
            # Different drives on Windows
            return False
        return common == self.root_path

    def get_relative_path(self, path: str) -> str:
        """Workspace-relative path with forward slashes."""
        rel = os.path.relpath(self.resolve(path), self.root_path)
        return rel.replace(os.sep, "/")

    def should_ignore(self, path: str) -> bool:
        """True if *path* must not be indexed.

        Paths outside the workspace, inside a skip directory, hidden, or
        matched by ``.gitignore`` / ``.codeindexignore`` are ignored.
        """
        if not self.is_path_within_workspace(path):
            return True
        rel = self.get_relative_path(path)
        if rel == ".":
            return True
        parts = rel.split("/")
        for part in parts[:-1]:
            if part in SKIP_DIRS or part.startswith("."):
                return True
        if parts[-1].startswith("."):
            return True

        self._ensure_loaded()
        if self._gitignore is not None and self._gitignore.match_file(rel):
            return True
        if self._index_ignore is not None and self._index_ignore.match_file(rel):
            return True
        return False
