"""Stage executor: cache lookup, toolchain invocation and artifact publication."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from buildkit.engine.store import ArtifactStore
from buildkit.errors import StageError
from buildkit.snapshot import InputSnapshot
from buildkit.stage_types import ArtifactSet, Command, Stage, command_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolchainResult:
    exit_code: int
    diagnostics: str = ""
    cancelled: bool = False


class Toolchain(Protocol):
    def run(
        self,
        command: Command,
        *,
        source_dir: Path,
        output_dir: Path,
        upstream_dir: Path | None,
        cancel_event: threading.Event,
    ) -> ToolchainResult:
        ...


@dataclass(frozen=True)
class ExecutionResult:
    stage: str
    key: str
    artifacts: ArtifactSet
    cache_hit: bool
    snapshot: InputSnapshot


def compute_cache_key(
    stage: Stage,
    snapshot: InputSnapshot,
    upstream: ArtifactSet | None,
) -> str:
    payload = {
        "stage": stage.name,
        "command": command_text(stage.command),
        "install_artifacts": stage.install_artifacts,
        "inputs": snapshot.identity(),
        "upstream": upstream.key if upstream is not None else None,
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class StageExecutor:
    def __init__(
        self,
        *,
        store: ArtifactStore,
        toolchain: Toolchain,
        work_root: str | Path,
        keep_workdir: bool = False,
    ):
        self._store = store
        self._toolchain = toolchain
        self._work_root = Path(work_root)
        self._keep_workdir = keep_workdir

    @property
    def store(self) -> ArtifactStore:
        return self._store

    def cache_key(self, stage: Stage, upstream: ArtifactSet | None = None) -> str:
        return compute_cache_key(stage, stage.scope.snapshot(), upstream)

    def execute(
        self,
        stage: Stage,
        upstream: ArtifactSet | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        if stage.upstream is not None and upstream is None:
            raise ValueError(f"Stage {stage.name} requires artifacts from upstream {stage.upstream}")

        cancel = cancel_event or threading.Event()
        snapshot = stage.scope.snapshot()
        key = compute_cache_key(stage, snapshot, upstream)
        logger.debug(
            "Stage %s: %d input files, key=%s, upstream=%s",
            stage.name,
            len(snapshot.files),
            key,
            upstream.key if upstream is not None else None,
        )

        cached = self._store.lookup(key)
        if cached is not None:
            return ExecutionResult(
                stage=stage.name, key=key, artifacts=cached, cache_hit=True, snapshot=snapshot
            )

        if cancel.is_set():
            raise StageError(stage.name, exit_code=None, cancelled=True)

        workdir = self._work_root / f"{stage.name}-{uuid.uuid4().hex}"
        staging = self._store.new_staging(stage.name)
        published = False
        try:
            try:
                source_dir = snapshot.materialize(workdir / "src")
                if upstream is not None:
                    # Upstream outputs seed this stage's outputs; they are not source input.
                    shutil.copytree(
                        upstream.path, staging.artifacts_dir, symlinks=True, dirs_exist_ok=True
                    )
            except OSError as exc:
                raise StageError(
                    stage.name, exit_code=None, diagnostics=f"Cannot prepare inputs: {exc}"
                ) from exc

            try:
                result = self._toolchain.run(
                    stage.command,
                    source_dir=source_dir,
                    output_dir=staging.artifacts_dir,
                    upstream_dir=upstream.path if upstream is not None else None,
                    cancel_event=cancel,
                )
            except OSError as exc:
                raise StageError(
                    stage.name, exit_code=127, diagnostics=f"Cannot launch toolchain: {exc}"
                ) from exc

            if result.cancelled or cancel.is_set():
                raise StageError(
                    stage.name,
                    exit_code=result.exit_code,
                    diagnostics=result.diagnostics,
                    cancelled=True,
                )
            if result.exit_code != 0:
                raise StageError(
                    stage.name, exit_code=result.exit_code, diagnostics=result.diagnostics
                )

            artifacts = self._store.publish(key, staging, keep_outputs=stage.install_artifacts)
            published = True
        finally:
            if not published:
                self._store.discard(staging)
            if not self._keep_workdir:
                shutil.rmtree(workdir, ignore_errors=True)

        return ExecutionResult(
            stage=stage.name, key=key, artifacts=artifacts, cache_hit=False, snapshot=snapshot
        )
