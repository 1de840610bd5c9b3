"""
Workspace-scoped file operations.

Every path is resolved against the workspace root and rejected with
AccessDenied before any I/O if it escapes the root.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import shutil
from typing import Optional

from .errors import AccessDenied
from .logs import verbose_log


class FileStore:
    """File operations confined to one workspace root."""

    def __init__(self, root: str):
        self.root = os.path.realpath(root)

    def resolve(self, path: str, base: Optional[str] = None) -> str:
        """Absolute path for `path`, relative to `base` (default: the root).

        Absolute paths are used as given. Raises AccessDenied when the
        result is outside the workspace.
        """
        if os.path.isabs(path):
            candidate = path
        else:
            candidate = os.path.join(base or self.root, path)
        resolved = os.path.realpath(candidate)
        try:
            inside = os.path.commonpath([self.root, resolved]) == self.root
        except ValueError:
            inside = False
        if not inside:
            raise AccessDenied(path, self.root)
        return resolved

    def read_dir(self, path: str = ".") -> list[dict]:
        """List a directory: directories first, then files, each sorted by name."""
        target = self.resolve(path)
        entries = []
        with os.scandir(target) as it:
            for entry in it:
                entries.append({
                    "name": entry.name,
                    "path": entry.path,
                    "is_directory": entry.is_dir(),
                })
        entries.sort(key=lambda e: (not e["is_directory"], e["name"].lower()))
        return entries

    def read_file(self, path: str, base: Optional[str] = None) -> str:
        target = self.resolve(path, base)
        with open(target, "r", encoding="utf-8") as f:
            return f.read()

    def write_file(self, path: str, content: str, base: Optional[str] = None) -> str:
        """Write text, creating parent directories. Returns the absolute path."""
        target = self.resolve(path, base)
        parent = os.path.dirname(target)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            f.write(content)
        verbose_log(f"Wrote {len(content)} chars to {target}", "FILES")
        return target

    def rename(self, old_path: str, new_path: str) -> str:
        source = self.resolve(old_path)
        target = self.resolve(new_path)
        os.rename(source, target)
        return target

    def delete(self, path: str) -> None:
        target = self.resolve(path)
        if target == self.root:
            raise AccessDenied(path, self.root)
        if os.path.isdir(target):
            shutil.rmtree(target)
        else:
            os.remove(target)

    def create_dir(self, path: str, base: Optional[str] = None) -> str:
        target = self.resolve(path, base)
        os.makedirs(target, exist_ok=True)
        return target

    def exists(self, path: str, base: Optional[str] = None) -> bool:
        return os.path.exists(self.resolve(path, base))
