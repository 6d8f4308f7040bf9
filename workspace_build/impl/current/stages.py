"""Stage catalog for the Cargo workspace.

    deps ─┬─ build ─┬─ test
          │         ├─ lint
          │         └─ doc
          └─ package-<name>  (one per declared binary)
"""

from __future__ import annotations

from buildkit.rules import ensure_root
from buildkit.scopes import deps_only_scope, full_workspace_scope, per_package_scope
from buildkit.stage_graph import StageGraph
from buildkit.stage_types import Stage
from workspace_build.framework.config import BuildConfig

# CLI task aliases.
TASK_ALIASES: dict[str, str] = {"clippy": "lint"}


def workspace_stages(cfg: BuildConfig) -> list[Stage]:
    root = ensure_root(cfg.workspace_root)
    deps_scope = deps_only_scope(root, name="deps-only")
    workspace_scope = full_workspace_scope(root, name="workspace")

    stages = [
        Stage(
            name="deps",
            scope=deps_scope,
            command=cfg.stage_settings("deps").command,
            install_artifacts=cfg.stage_settings("deps").install_artifacts,
            doc="Compile workspace dependencies from manifests only.",
        ),
        Stage(
            name="build",
            scope=workspace_scope,
            command=cfg.stage_settings("build").command,
            upstream="deps",
            install_artifacts=cfg.stage_settings("build").install_artifacts,
            doc="Build the whole workspace.",
        ),
        Stage(
            name="test",
            scope=workspace_scope,
            command=cfg.stage_settings("test").command,
            upstream="build",
            install_artifacts=cfg.stage_settings("test").install_artifacts,
            doc="Run workspace tests.",
        ),
        Stage(
            name="lint",
            scope=workspace_scope,
            command=cfg.stage_settings("lint").command,
            upstream="build",
            install_artifacts=cfg.stage_settings("lint").install_artifacts,
            deny_warnings=True,
            doc="Lint the workspace; any warning fails the stage.",
        ),
        Stage(
            name="doc",
            scope=workspace_scope,
            command=cfg.stage_settings("doc").command,
            upstream="build",
            install_artifacts=cfg.stage_settings("doc").install_artifacts,
            doc="Build workspace documentation.",
        ),
    ]

    for package in cfg.packages:
        stages.append(
            Stage(
                name=package.stage_name,
                scope=per_package_scope(
                    root, package.dir, package.extra_dirs, name=f"package:{package.label}"
                ),
                command=package.command(cfg.package_command),
                upstream="deps",
                doc=f"Build the {package.label} binary from its own modules only.",
            )
        )
    return stages


def build_workspace_graph(cfg: BuildConfig) -> StageGraph:
    return StageGraph.from_stages(workspace_stages(cfg))


def resolve_task(graph: StageGraph, task: str) -> str:
    return graph.resolve(TASK_ALIASES.get(task, task)).name
