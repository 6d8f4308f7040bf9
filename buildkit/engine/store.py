"""Content-addressed artifact store.

Layout::

    <root>/objects/<key[:2]>/<key>/meta.json
    <root>/objects/<key[:2]>/<key>/artifacts/...
    <root>/tmp/<stage>-<uuid>/            (staging, never read by lookups)

Publication renames a fully written staging directory into place, so a key is either
absent or complete. When two executors race on the same key the first rename wins and
the redundant copy is discarded; the value is a pure function of the key.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from buildkit.errors import CacheStoreError
from buildkit.stage_types import ArtifactSet

logger = logging.getLogger(__name__)

META_FILENAME = "meta.json"
ARTIFACTS_DIRNAME = "artifacts"


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _list_files(root: Path) -> tuple[str, ...]:
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for filename in sorted(filenames):
            files.append((base / filename).relative_to(root).as_posix())
    return tuple(files)


@dataclass(frozen=True)
class StagingArea:
    stage: str
    path: Path

    @property
    def artifacts_dir(self) -> Path:
        return self.path / ARTIFACTS_DIRNAME


class ArtifactStore:
    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root)
        self._objects = self.root / "objects"
        self._tmp = self.root / "tmp"

    def object_path(self, key: str) -> Path:
        if not isinstance(key, str) or len(key) < 3:
            raise CacheStoreError(f"Invalid cache key: {key!r}")
        return self._objects / key[:2] / key

    def lookup(self, key: str) -> ArtifactSet | None:
        location = self.object_path(key)
        meta_path = location / META_FILENAME
        if not location.exists():
            return None
        try:
            with open(meta_path, "r", encoding="utf-8") as handle:
                meta = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise CacheStoreError(f"Unreadable artifact metadata for key {key}: {exc}") from exc
        if not isinstance(meta, dict) or meta.get("key") != key:
            raise CacheStoreError(f"Artifact metadata does not match key {key}: {meta_path}")
        return ArtifactSet(
            key=key,
            stage=str(meta.get("stage") or ""),
            path=location / ARTIFACTS_DIRNAME,
            files=tuple(str(item) for item in meta.get("files") or ()),
            created_at=meta.get("created_at"),
        )

    def new_staging(self, stage: str) -> StagingArea:
        path = self._tmp / f"{stage}-{uuid.uuid4().hex}"
        try:
            (path / ARTIFACTS_DIRNAME).mkdir(parents=True)
        except OSError as exc:
            raise CacheStoreError(f"Cannot create staging directory {path}: {exc}") from exc
        return StagingArea(stage=stage, path=path)

    def discard(self, staging: StagingArea) -> None:
        shutil.rmtree(staging.path, ignore_errors=True)

    def publish(self, key: str, staging: StagingArea, *, keep_outputs: bool = True) -> ArtifactSet:
        location = self.object_path(key)
        try:
            if not keep_outputs:
                shutil.rmtree(staging.artifacts_dir)
                staging.artifacts_dir.mkdir()
            files = _list_files(staging.artifacts_dir)
            meta = {
                "key": key,
                "stage": staging.stage,
                "files": list(files),
                "created_at": utc_now_iso8601(),
            }
            with open(staging.path / META_FILENAME, "w", encoding="utf-8") as handle:
                json.dump(meta, handle, indent=2, sort_keys=True)
            location.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.discard(staging)
            raise CacheStoreError(f"Cannot prepare artifacts for key {key}: {exc}") from exc

        try:
            os.rename(staging.path, location)
        except OSError as exc:
            self.discard(staging)
            if not location.exists():
                raise CacheStoreError(f"Cannot publish artifacts for key {key}: {exc}") from exc
            logger.debug("Artifacts for key %s already published; discarded duplicate", key)

        published = self.lookup(key)
        if published is None:
            raise CacheStoreError(f"Published artifacts vanished for key {key}")
        return published
