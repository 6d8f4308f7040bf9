"""Tree snapshots: the included files of a scope plus their content hashes."""

from __future__ import annotations

import hashlib
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from buildkit.errors import FilterError
from buildkit.rules import RuleSet, ensure_root

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class SnapshotEntry:
    path: str
    digest: str


@dataclass(frozen=True)
class InputSnapshot:
    root: Path
    files: tuple[SnapshotEntry, ...]
    directories: tuple[str, ...]

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(entry.path for entry in self.files)

    def identity(self) -> str:
        """Hash over included file paths and contents.

        Directories do not contribute: traversing a directory pulls in no content.
        """

        hasher = hashlib.sha256()
        for entry in self.files:
            hasher.update(entry.path.encode("utf-8"))
            hasher.update(b"\0")
            hasher.update(entry.digest.encode("ascii"))
            hasher.update(b"\n")
        return hasher.hexdigest()

    def materialize(self, destination: str | os.PathLike[str]) -> Path:
        dest = Path(destination)
        dest.mkdir(parents=True, exist_ok=True)
        for rel_dir in self.directories:
            (dest / rel_dir).mkdir(parents=True, exist_ok=True)
        for entry in self.files:
            source = self.root / entry.path
            target = dest / entry.path
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.is_symlink():
                os.symlink(os.readlink(source), target)
            else:
                shutil.copy2(source, target)
        return dest


def file_digest(path: Path) -> str:
    hasher = hashlib.sha256()
    if path.is_symlink():
        hasher.update(os.readlink(path).encode("utf-8"))
        return hasher.hexdigest()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def iter_included(root: Path, rule_set: RuleSet) -> Iterator[tuple[str, bool]]:
    """Yield (rel_path, is_dir) for every kept path, depth first, in sorted order.

    An excluded directory is not descended.
    """

    stack: list[tuple[Path, str]] = [(root, "")]
    while stack:
        current, rel_prefix = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise FilterError(f"Cannot read directory {current}: {exc}") from exc

        subdirs: list[tuple[Path, str]] = []
        for entry in entries:
            rel_path = f"{rel_prefix}/{entry.name}" if rel_prefix else entry.name
            is_dir = entry.is_dir(follow_symlinks=False)
            if not rule_set.includes(rel_path, is_dir=is_dir):
                continue
            yield rel_path, is_dir
            if is_dir:
                subdirs.append((Path(entry.path), rel_path))
        stack.extend(reversed(subdirs))


def take_snapshot(root: str | os.PathLike[str], rule_set: RuleSet) -> InputSnapshot:
    root_path = ensure_root(root)
    files: list[SnapshotEntry] = []
    directories: list[str] = []
    for rel_path, is_dir in iter_included(root_path, rule_set):
        if is_dir:
            directories.append(rel_path)
            continue
        try:
            digest = file_digest(root_path / rel_path)
        except OSError as exc:
            raise FilterError(f"Cannot read file {root_path / rel_path}: {exc}") from exc
        files.append(SnapshotEntry(path=rel_path, digest=digest))

    files.sort(key=lambda e: e.path)
    directories.sort()
    return InputSnapshot(root=root_path, files=tuple(files), directories=tuple(directories))
