import json
import logging
from pathlib import Path

import pytest

from buildkit.engine.executor import StageExecutor, ToolchainResult
from buildkit.engine.store import ArtifactStore
from buildkit.errors import FilterError
from workspace_build.app.run import build_executor, run_tasks, write_report
from workspace_build.framework.config import BuildConfig
from workspace_build.impl.current.stages import build_workspace_graph, resolve_task


def _write_tree(root: Path, files: dict[str, str]) -> None:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


@pytest.fixture
def cfg(tmp_path: Path) -> BuildConfig:
    _write_tree(
        tmp_path / "ws",
        {
            "Cargo.toml": "[workspace]",
            "Cargo.lock": "# lock",
            "seeking-edge/Cargo.toml": "[package]",
            "seeking-edge/src/main.rs": "fn main() {}",
            "se_utils/src/lib.rs": "pub fn util() {}",
            "statistics/src/lib.rs": "pub fn stats() {}",
        },
    )
    parsed, _warnings = BuildConfig.from_dict(
        {
            "workspace": {"root": "ws"},
            "store": {"path": "store", "work_path": "work"},
            "packages": [
                {"name": "seeking-edge", "dir": "seeking-edge", "extra_dirs": ["se_utils"]},
            ],
        },
        base_dir=tmp_path,
    )
    return parsed


class RecordingToolchain:
    def __init__(self):
        self.commands: list[str] = []

    def run(self, command, *, source_dir, output_dir, upstream_dir, cancel_event):
        self.commands.append(command)
        return ToolchainResult(exit_code=0)


def test_catalog_wires_the_workspace_dag(cfg: BuildConfig):
    graph = build_workspace_graph(cfg)

    assert graph.upstream("build").name == "deps"
    assert {s.name for s in graph.dependents("build")} == {"test", "lint", "doc"}
    assert graph.upstream("package-seeking-edge").name == "deps"
    assert graph.get("lint").deny_warnings
    assert graph.get("lint").install_artifacts is False
    assert graph.get("deps").scope.name == "deps-only"


def test_package_stage_uses_a_shallow_per_package_scope(cfg: BuildConfig):
    stage = build_workspace_graph(cfg).get("package-seeking-edge")
    paths = stage.scope.snapshot().paths

    assert stage.command == "cargo build --profile release --bin seeking-edge"
    assert stage.scope.rule_set.traversal == "shallow"
    assert "se_utils/src/lib.rs" in paths
    assert "statistics/src/lib.rs" not in paths


def test_task_aliases_resolve(cfg: BuildConfig):
    graph = build_workspace_graph(cfg)

    assert resolve_task(graph, "clippy") == "lint"
    assert resolve_task(graph, "seeking-edge") == "package-seeking-edge"


def test_missing_workspace_root_fails_before_any_stage(tmp_path: Path):
    parsed, _warnings = BuildConfig.from_dict({"workspace": {"root": "absent"}}, base_dir=tmp_path)

    with pytest.raises(FilterError, match=r"Root tree does not exist"):
        build_workspace_graph(parsed)


def test_run_tasks_logs_summary_and_writes_report(cfg: BuildConfig, tmp_path: Path, caplog):
    toolchain = RecordingToolchain()
    executor = StageExecutor(
        store=ArtifactStore(cfg.store_path), toolchain=toolchain, work_root=cfg.work_path
    )
    logger = logging.getLogger("workspace_build_test_run")

    with caplog.at_level(logging.INFO, logger="workspace_build_test_run"):
        report = run_tasks(cfg, ["clippy"], logger=logger, executor=executor)

    assert report.succeeded
    assert report.targets == ("lint",)
    assert toolchain.commands == [
        cfg.stage_settings("deps").command,
        cfg.stage_settings("build").command,
        cfg.stage_settings("lint").command,
    ]
    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("lint: succeeded (built, key=") for message in messages)
    assert "Run succeeded" in messages

    report_path = tmp_path / "reports" / "run.json"
    write_report(report, str(report_path))
    payload = json.loads(report_path.read_text(encoding="utf-8"))
    assert payload["targets"] == ["lint"]
    assert [row["stage"] for row in payload["stages"]] == ["deps", "build", "lint"]


def test_build_executor_uses_configured_store(cfg: BuildConfig):
    executor = build_executor(cfg)

    assert executor.store.root == cfg.store_path


def test_deeply_nested_package_snapshot_includes_its_sources(tmp_path: Path):
    _write_tree(
        tmp_path / "ws",
        {
            "Cargo.toml": "[workspace]",
            "crates/apps/cli/Cargo.toml": "[package]",
            "crates/apps/cli/src/main.rs": "fn main() {}",
            "crates/apps/web/src/main.rs": "fn main() {}",
        },
    )
    parsed, _warnings = BuildConfig.from_dict(
        {"workspace": {"root": "ws"}, "packages": [{"name": "cli", "dir": "crates/apps/cli"}]},
        base_dir=tmp_path,
    )

    paths = build_workspace_graph(parsed).get("package-cli").scope.snapshot().paths

    assert "crates/apps/cli/src/main.rs" in paths
    assert "crates/apps/web/src/main.rs" not in paths
