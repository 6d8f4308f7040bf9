from __future__ import annotations

import json
import logging
import os
import threading
from typing import Sequence

from buildkit.engine.executor import StageExecutor
from buildkit.engine.scheduler import DefaultStageRecorder, RunReport, StageScheduler
from buildkit.engine.store import ArtifactStore
from buildkit.stage_graph import StageGraph
from buildkit.stage_types import StageState
from workspace_build.framework.config import BuildConfig
from workspace_build.framework.toolchain import SubprocessToolchain
from workspace_build.impl.current.stages import build_workspace_graph, resolve_task


def build_executor(cfg: BuildConfig, *, logger: logging.Logger | None = None) -> StageExecutor:
    toolchain = SubprocessToolchain(
        env=cfg.toolchain_env,
        diagnostics_tail_lines=cfg.diagnostics_tail_lines,
        log=logger,
    )
    return StageExecutor(
        store=ArtifactStore(cfg.store_path),
        toolchain=toolchain,
        work_root=cfg.work_path,
        keep_workdir=cfg.keep_workdir,
    )


def run_tasks(
    cfg: BuildConfig,
    tasks: Sequence[str],
    *,
    logger: logging.Logger,
    graph: StageGraph | None = None,
    executor: StageExecutor | None = None,
    cancel_event: threading.Event | None = None,
) -> RunReport:
    """Run the named tasks (and their upstream stages) and log a per-stage summary."""

    stage_graph = graph or build_workspace_graph(cfg)
    targets = [resolve_task(stage_graph, task) for task in tasks]
    logger.info(
        "Workspace %s: targets=%s, jobs=%d, store=%s",
        cfg.workspace_root,
        ",".join(targets),
        cfg.jobs,
        cfg.store_path,
    )

    scheduler = StageScheduler(
        stage_graph,
        executor or build_executor(cfg, logger=logger),
        jobs=cfg.jobs,
        recorder=DefaultStageRecorder(logger),
    )
    report = scheduler.run(targets, cancel_event=cancel_event)

    for outcome in report.outcomes:
        if outcome.state == StageState.SUCCEEDED:
            logger.info("%s", outcome.summary())
        elif outcome.state == StageState.BLOCKED:
            logger.warning("%s", outcome.summary())
        else:
            logger.error("%s", outcome.summary())
    logger.info("Run %s", "succeeded" if report.succeeded else "failed")
    return report


def write_report(report: RunReport, path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(report.to_dict(), handle, indent=2)
        handle.write("\n")
