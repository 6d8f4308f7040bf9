"""Dependency-graph scheduler.

A stage is submitted once its upstream has Succeeded. Stages whose upstream Failed (or
was itself Blocked) are marked Blocked and never invoked. Siblings run concurrently up to
`jobs` workers and never affect each other.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from buildkit.engine.executor import ExecutionResult, StageExecutor
from buildkit.errors import CacheStoreError, StageError
from buildkit.stage_graph import StageGraph
from buildkit.stage_types import ArtifactSet, Stage, StageRun, StageState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageOutcome:
    stage: str
    state: StageState
    cache_hit: bool = False
    key: str | None = None
    artifacts_path: str | None = None
    exit_code: int | None = None
    diagnostics: str = ""
    cancelled: bool = False
    blocked_by: str | None = None
    duration_seconds: float | None = None

    @classmethod
    def from_run(cls, run: StageRun) -> "StageOutcome":
        error = run.error
        return cls(
            stage=run.stage,
            state=run.state,
            cache_hit=run.cache_hit,
            key=run.artifacts.key if run.artifacts is not None else None,
            artifacts_path=str(run.artifacts.path) if run.artifacts is not None else None,
            exit_code=error.exit_code if error is not None else None,
            diagnostics=error.diagnostics if error is not None else "",
            cancelled=bool(error.cancelled) if error is not None else False,
            blocked_by=run.blocked_by,
            duration_seconds=run.duration_seconds,
        )

    def summary(self) -> str:
        if self.state == StageState.SUCCEEDED:
            how = "cached" if self.cache_hit else "built"
            return f"{self.stage}: succeeded ({how}, key={(self.key or '')[:12]})"
        if self.state == StageState.BLOCKED:
            return f"{self.stage}: blocked by upstream failure ({self.blocked_by})"
        if self.cancelled:
            return f"{self.stage}: failed (cancelled)"
        return f"{self.stage}: failed (exit={self.exit_code})"


@dataclass(frozen=True)
class RunReport:
    targets: tuple[str, ...]
    outcomes: tuple[StageOutcome, ...]

    def outcome(self, stage: str) -> StageOutcome:
        for item in self.outcomes:
            if item.stage == stage:
                return item
        raise KeyError(stage)

    @property
    def succeeded(self) -> bool:
        return all(self.outcome(target).state == StageState.SUCCEEDED for target in self.targets)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "targets": list(self.targets),
            "succeeded": self.succeeded,
            "stages": [
                {
                    "stage": item.stage,
                    "state": item.state.value,
                    "cache_hit": item.cache_hit,
                    "key": item.key,
                    "artifacts_path": item.artifacts_path,
                    "exit_code": item.exit_code,
                    "cancelled": item.cancelled,
                    "blocked_by": item.blocked_by,
                    "duration_seconds": item.duration_seconds,
                }
                for item in self.outcomes
            ],
        }


class StageRecorder(Protocol):
    def on_stage_start(self, stage: Stage, *, upstream_key: str | None) -> None:
        ...

    def on_stage_end(self, outcome: StageOutcome) -> None:
        ...

    def on_stage_error(self, stage: Stage, exc: StageError) -> None:
        ...

    def on_stage_blocked(self, stage: Stage, *, upstream: str) -> None:
        ...


class DefaultStageRecorder:
    def __init__(self, log: logging.Logger | None = None):
        self._logger = log or logger

    def on_stage_start(self, stage: Stage, *, upstream_key: str | None) -> None:
        tokens = [f"scope={stage.scope.name}"]
        if stage.upstream:
            tokens.append(f"upstream={stage.upstream}")
        if upstream_key:
            tokens.append(f"upstream_key={upstream_key[:12]}")
        self._logger.info("Stage: %s (%s)", stage.name, ", ".join(tokens))

    def on_stage_end(self, outcome: StageOutcome) -> None:
        duration = outcome.duration_seconds or 0.0
        if outcome.cache_hit:
            self._logger.info(
                "Cache hit for %s (key=%s, %.2fs)", outcome.stage, (outcome.key or "")[:12], duration
            )
            return
        self._logger.info(
            "Completed stage %s (key=%s, %.2fs)", outcome.stage, (outcome.key or "")[:12], duration
        )

    def on_stage_error(self, stage: Stage, exc: StageError) -> None:
        self._logger.error("Stage failed: %s (%s)", stage.name, exc)
        if exc.diagnostics:
            self._logger.error("Diagnostics for %s:\n%s", stage.name, exc.diagnostics.rstrip())

    def on_stage_blocked(self, stage: Stage, *, upstream: str) -> None:
        self._logger.warning("Stage blocked: %s (upstream %s did not succeed)", stage.name, upstream)


class NullStageRecorder:
    def on_stage_start(self, stage: Stage, *, upstream_key: str | None) -> None:
        return

    def on_stage_end(self, outcome: StageOutcome) -> None:
        return

    def on_stage_error(self, stage: Stage, exc: StageError) -> None:
        return

    def on_stage_blocked(self, stage: Stage, *, upstream: str) -> None:
        return


class StageScheduler:
    def __init__(
        self,
        graph: StageGraph,
        executor: StageExecutor,
        *,
        jobs: int = 1,
        recorder: StageRecorder | None = None,
    ):
        if isinstance(jobs, bool) or not isinstance(jobs, int) or jobs < 1:
            raise ValueError(f"jobs must be an int >= 1 (got {jobs!r})")
        self._graph = graph
        self._executor = executor
        self._jobs = jobs
        self._recorder = recorder or DefaultStageRecorder()

    def run(
        self,
        targets: Iterable[str],
        *,
        cancel_event: threading.Event | None = None,
    ) -> RunReport:
        target_names = tuple(self._graph.resolve(target).name for target in targets)
        if not target_names:
            raise ValueError("At least one target stage is required")
        names = self._graph.closure(target_names)
        runs = {name: StageRun(stage=name) for name in names}
        cancel = cancel_event or threading.Event()
        running: dict[Future[ExecutionResult], str] = {}
        fatal: BaseException | None = None
        interrupted = False

        pool = ThreadPoolExecutor(max_workers=self._jobs, thread_name_prefix="stage")
        try:
            while True:
                if not cancel.is_set():
                    self._submit_ready(names, runs, running, pool, cancel)
                if not running:
                    break
                try:
                    done, _pending = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    interrupted = True
                    cancel.set()
                    logger.warning("Interrupted; cancelling %d running stage(s)", len(running))
                    continue
                for future in done:
                    name = running.pop(future)
                    error = self._collect(future, runs[name])
                    if error is not None and fatal is None:
                        fatal = error
                        cancel.set()
        except BaseException:
            cancel.set()
            raise
        finally:
            pool.shutdown(wait=True)

        for name in names:
            run = runs[name]
            if run.state == StageState.PENDING:
                run.fail(StageError(name, exit_code=None, cancelled=True))

        if fatal is not None:
            raise fatal
        if interrupted:
            raise KeyboardInterrupt

        return RunReport(
            targets=target_names,
            outcomes=tuple(StageOutcome.from_run(runs[name]) for name in names),
        )

    def _submit_ready(
        self,
        names: tuple[str, ...],
        runs: dict[str, StageRun],
        running: dict[Future[ExecutionResult], str],
        pool: ThreadPoolExecutor,
        cancel: threading.Event,
    ) -> None:
        for name in names:
            run = runs[name]
            if run.state != StageState.PENDING:
                continue
            stage = self._graph.get(name)
            upstream_run = runs.get(stage.upstream) if stage.upstream else None

            if upstream_run is not None and upstream_run.state in (
                StageState.FAILED,
                StageState.BLOCKED,
            ):
                run.block(upstream_run.stage)
                self._recorder.on_stage_blocked(stage, upstream=upstream_run.stage)
                continue
            if upstream_run is not None and upstream_run.state != StageState.SUCCEEDED:
                continue
            if len(running) >= self._jobs:
                continue

            upstream_artifacts = upstream_run.artifacts if upstream_run is not None else None
            run.start()
            self._recorder.on_stage_start(
                stage, upstream_key=upstream_artifacts.key if upstream_artifacts else None
            )
            future = pool.submit(self._invoke, stage, upstream_artifacts, cancel, run)
            running[future] = name

    def _invoke(
        self,
        stage: Stage,
        upstream_artifacts: ArtifactSet | None,
        cancel: threading.Event,
        run: StageRun,
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            return self._executor.execute(stage, upstream_artifacts, cancel_event=cancel)
        finally:
            run.duration_seconds = time.monotonic() - started

    def _collect(self, future: Future[ExecutionResult], run: StageRun) -> BaseException | None:
        """Record a finished invocation; return an error that must abort the whole run."""

        stage = self._graph.get(run.stage)
        try:
            result = future.result()
        except StageError as exc:
            run.fail(exc)
            self._recorder.on_stage_error(stage, exc)
            return None
        except CacheStoreError as exc:
            run.fail(StageError(stage.name, exit_code=None, diagnostics=str(exc)))
            logger.error("Artifact store failure in stage %s: %s", stage.name, exc)
            return exc
        except Exception as exc:
            run.fail(StageError(stage.name, exit_code=None, diagnostics=repr(exc)))
            logger.exception("Unexpected error in stage %s", stage.name)
            return exc

        run.succeed(result.artifacts, cache_hit=result.cache_hit)
        self._recorder.on_stage_end(StageOutcome.from_run(run))
        return None


def run_stages(
    graph: StageGraph,
    targets: Iterable[str],
    executor: StageExecutor,
    *,
    jobs: int = 1,
    cancel_event: threading.Event | None = None,
    recorder: StageRecorder | None = None,
) -> RunReport:
    scheduler = StageScheduler(graph, executor, jobs=jobs, recorder=recorder)
    return scheduler.run(targets, cancel_event=cancel_event)
