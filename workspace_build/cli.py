from __future__ import annotations

import argparse
import dataclasses
import os
import sys
from collections.abc import Sequence

from buildkit.errors import CacheStoreError, FilterError
from buildkit.stage_graph import StageGraph
from workspace_build.foundation.config_io import load_config
from workspace_build.framework.config import BuildConfig, parse_int

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_STORE = 3
EXIT_INTERRUPTED = 130

JOBS_ENV_VAR = "WORKSPACE_BUILD_JOBS"

WORKSPACE_TASKS: dict[str, str] = {
    "deps": "Compile dependencies (manifests-only cache key)",
    "build": "Build the whole workspace",
    "test": "Run workspace tests",
    "lint": "Lint the workspace (warnings are errors)",
    "clippy": "Alias for lint",
    "doc": "Build workspace documentation",
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="Path to a config YAML file")
    common.add_argument("--jobs", "-j", type=int, default=None, help="Max concurrent stages")
    common.add_argument(
        "--keep-workdir", action="store_true", help="Keep materialized input trees"
    )
    common.add_argument("--report", default=None, help="Write a JSON run report to this path")

    parser = argparse.ArgumentParser(prog="workspace-build", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    for task, help_text in WORKSPACE_TASKS.items():
        sub.add_parser(task, help=help_text, parents=[common])

    package = sub.add_parser("package", help="Build one declared binary", parents=[common])
    package.add_argument("name")

    run = sub.add_parser("run", help="Run one or more stages by name", parents=[common])
    run.add_argument("stages", nargs="+")

    sub.add_parser("list-stages", help="List the stage graph", parents=[common])

    show_scope = sub.add_parser(
        "show-scope", help="Show the input snapshot of a stage", parents=[common]
    )
    show_scope.add_argument("stage")
    show_scope.add_argument("--files", action="store_true", help="List included files")

    return parser


def _load_build_config(args: argparse.Namespace) -> tuple[BuildConfig, list[str]]:
    raw, meta = load_config(config_path=args.config)
    cfg, warnings = BuildConfig.from_dict(raw, base_dir=meta["base_dir"])

    jobs = args.jobs
    if jobs is None and os.environ.get(JOBS_ENV_VAR, "").strip():
        jobs = parse_int(os.environ[JOBS_ENV_VAR], JOBS_ENV_VAR)
    if jobs is not None:
        if jobs < 1:
            raise ValueError(f"--jobs must be >= 1 (got {jobs})")
        cfg = dataclasses.replace(cfg, jobs=jobs)
    if args.keep_workdir:
        cfg = dataclasses.replace(cfg, keep_workdir=True)
    return cfg, warnings


def _list_stages(cfg: BuildConfig) -> int:
    from .impl.current.stages import build_workspace_graph

    graph = build_workspace_graph(cfg)
    for row in graph.describe():
        upstream = row["upstream"] or "-"
        print(f"{row['name']:<28} upstream={upstream:<8} scope={row['scope']['name']}")
        if row["doc"]:
            print(f"    {row['doc']}")
        print(f"    $ {row['command']}")
    return EXIT_OK


def _show_scope(cfg: BuildConfig, stage_name: str, *, files: bool) -> int:
    from .impl.current.stages import build_workspace_graph, resolve_task

    graph = build_workspace_graph(cfg)
    stage = graph.get(resolve_task(graph, stage_name))
    snapshot = stage.scope.snapshot()
    print(f"stage={stage.name} scope={stage.scope.name} traversal={stage.scope.rule_set.traversal}")
    print(f"files={len(snapshot.files)} directories={len(snapshot.directories)}")
    print(f"identity={snapshot.identity()}")
    if files:
        for entry in snapshot.files:
            print(f"{entry.digest[:12]}  {entry.path}")
    return EXIT_OK


def _run(
    cfg: BuildConfig,
    graph: StageGraph,
    tasks: list[str],
    warnings: list[str],
    report_path: str | None,
) -> int:
    from .app.run import run_tasks, write_report
    from .foundation.logging_utils import (
        close_operational_logger,
        generate_run_id,
        setup_operational_logger,
    )

    run_id = generate_run_id()
    logger, _log_file = setup_operational_logger(str(cfg.log_path), run_id)
    try:
        for warning in warnings:
            logger.warning("%s", warning)
        try:
            report = run_tasks(cfg, tasks, logger=logger, graph=graph)
        except KeyboardInterrupt:
            logger.error("Run %s interrupted", run_id)
            return EXIT_INTERRUPTED
        except CacheStoreError as exc:
            logger.error("Artifact store failure, aborting run %s: %s", run_id, exc)
            return EXIT_STORE
        except FilterError as exc:
            logger.error("Cannot snapshot workspace, aborting run %s: %s", run_id, exc)
            return EXIT_CONFIG

        if report_path:
            write_report(report, report_path)
            logger.info("Wrote run report: %s", report_path)
        return EXIT_OK if report.succeeded else EXIT_FAILED
    finally:
        close_operational_logger(logger)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        cfg, warnings = _load_build_config(args)

        if args.command == "list-stages":
            return _list_stages(cfg)

        if args.command == "show-scope":
            return _show_scope(cfg, args.stage, files=args.files)

        if args.command in WORKSPACE_TASKS:
            tasks = [args.command]
        elif args.command == "package":
            tasks = [cfg.package(args.name).stage_name]
        elif args.command == "run":
            tasks = list(args.stages)
        else:
            raise AssertionError(f"Unhandled command: {args.command}")

        # Validate the graph and task names before any stage starts.
        from .impl.current.stages import build_workspace_graph, resolve_task

        graph = build_workspace_graph(cfg)
        for task in tasks:
            resolve_task(graph, task)
    except (FileNotFoundError, FilterError, ValueError, TypeError) as exc:
        print(f"workspace-build: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    return _run(cfg, graph, tasks, warnings, args.report)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
