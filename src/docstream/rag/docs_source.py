"""Knowledge-base sources: where the documentation pages come from.

A docs source exposes a version marker (changes whenever any page changes),
the list of page paths, page content and, when it can tell cheaply, the paths
changed since an older marker.

Security requirements for the git source:
- shell=False always (no command injection).
- Paths are passed after ``--`` so they are never parsed as options.
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from docstream.errors import ConfigError

logger = logging.getLogger(__name__)

PAGE_EXTENSIONS = (".md", ".mdx", ".rst", ".txt")


class DocsSource(ABC):
    """Abstract knowledge-base source rooted at a directory."""

    kind = ""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise ConfigError(f"Docs path does not exist or is not a directory: {root}")

    @abstractmethod
    def version_marker(self) -> str:
        """Opaque string that changes whenever any page changes."""

    @abstractmethod
    def list_paths(self) -> list[str]:
        """Relative POSIX paths of every page, sorted."""

    @abstractmethod
    def read(self, path: str) -> str:
        """Content of page *path*."""

    def changed_paths(self, since_marker: str) -> set[str] | None:
        """Paths changed since *since_marker*, or None when unknown."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.root)!r})"


def _is_page(path: str) -> bool:
    return path.lower().endswith(PAGE_EXTENSIONS)


# ------------------------------------------------------------------
# Plain directory
# ------------------------------------------------------------------


class DirectoryDocsSource(DocsSource):
    """Pages are the matching files under a directory; marker is a content hash."""

    kind = "directory"

    def list_paths(self) -> list[str]:
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*")
            if p.is_file() and _is_page(p.name) and not _hidden(p.relative_to(self.root))
        )

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8", errors="replace")

    def version_marker(self) -> str:
        digest = hashlib.sha256()
        for path in self.list_paths():
            digest.update(path.encode("utf-8"))
            digest.update(b"\0")
            digest.update(hashlib.sha256((self.root / path).read_bytes()).digest())
        return digest.hexdigest()


def _hidden(rel: Path) -> bool:
    return any(part.startswith(".") for part in rel.parts)


# ------------------------------------------------------------------
# Git working copy
# ------------------------------------------------------------------


class GitDocsSource(DocsSource):
    """Pages tracked in a local git repository, read at HEAD.

    The marker is the HEAD commit hash; ``git diff --name-only`` between two
    commits gives the changed paths.
    """

    kind = "git"

    def __init__(self, root: str | Path) -> None:
        super().__init__(root)
        if not (self.root / ".git").exists():
            raise ConfigError(f"Not a git repository: {root}")

    def _git(self, *args: str) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.root,
                shell=False,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ConfigError("git executable not found on PATH") from exc
        return result.stdout

    def version_marker(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def list_paths(self) -> list[str]:
        out = self._git("ls-tree", "-r", "--name-only", "HEAD")
        return sorted(line for line in out.splitlines() if line and _is_page(line))

    def read(self, path: str) -> str:
        return self._git("show", f"HEAD:{path}")

    def changed_paths(self, since_marker: str) -> set[str] | None:
        try:
            out = self._git("diff", "--name-only", since_marker, "HEAD", "--")
        except subprocess.CalledProcessError as exc:
            # Unknown commit (history rewritten): caller compares hashes instead.
            logger.warning(
                "git diff from %s failed (%s); falling back to content hashes",
                since_marker[:12],
                (exc.stderr or "").strip(),
            )
            return None
        return {line for line in out.splitlines() if line and _is_page(line)}


def open_docs_source(path: str | Path, kind: str = "directory") -> DocsSource:
    """Build the docs source for a ``docs`` config section.

    Raises:
        ConfigError: Unknown *kind* or unusable *path*.
    """
    if kind == "git":
        return GitDocsSource(path)
    if kind == "directory":
        return DirectoryDocsSource(path)
    raise ConfigError(f"Unknown docs kind '{kind}'. Use 'git' or 'directory'.")
