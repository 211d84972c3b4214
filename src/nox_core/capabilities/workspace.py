"""Local filesystem implementation of the workspace ``FileOperations`` collaborator."""

from __future__ import annotations

from pathlib import Path

from nox_core.capabilities.base import path_errors


class WorkspaceBoundaryError(ValueError):
    """Raised when a relative path would resolve outside the workspace root."""


class LocalWorkspace:
    """Confines all file access to ``root``."""

    __slots__ = ("_encoding", "_root")

    def __init__(self, root: str | Path, *, encoding: str = "utf-8") -> None:
        resolved = Path(root).expanduser().resolve()
        if not resolved.is_dir():
            raise ValueError(f"workspace root is not a directory: {resolved}")
        self._root = resolved
        self._encoding = encoding

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, relative_path: str) -> Path:
        errors = path_errors("path", relative_path)
        if errors:
            raise WorkspaceBoundaryError("; ".join(errors))
        candidate = (self._root / relative_path).resolve()
        if not candidate.is_relative_to(self._root):
            raise WorkspaceBoundaryError(f"path escapes workspace root: {relative_path}")
        return candidate

    def read_text(self, relative_path: str) -> str:
        return self.resolve(relative_path).read_text(encoding=self._encoding)

    def write_text(self, relative_path: str, content: str) -> None:
        target = self.resolve(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding=self._encoding)

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).exists()

    def delete(self, relative_path: str) -> None:
        target = self.resolve(relative_path)
        if target.is_file() or target.is_symlink():
            target.unlink()


__all__ = ["LocalWorkspace", "WorkspaceBoundaryError"]
