from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from buildkit.config_namespace import ConfigNamespace
from buildkit.scopes import normalize_module_dir
from buildkit.stage_types import denies_warnings

WORKSPACE_STAGES: tuple[str, ...] = ("deps", "build", "test", "lint", "doc")

DEFAULT_STAGE_COMMANDS: dict[str, str] = {
    "deps": (
        "cargo doc && cargo check --profile release --all-targets"
        " && cargo build --profile release --all-targets"
    ),
    "build": "cargo build --profile release",
    "test": "cargo test --profile release",
    "lint": (
        "cargo clippy --profile release --no-deps --lib --bins --tests --examples --workspace"
        " -- --deny warnings"
    ),
    "doc": (
        "env RUSTDOCFLAGS='-D rustdoc::broken_intra_doc_links'"
        " cargo doc --no-deps --document-private-items"
        ' && mkdir -p "$WORKSPACE_BUILD_OUT" && cp -a "$CARGO_TARGET_DIR/doc" "$WORKSPACE_BUILD_OUT/"'
    ),
}

# Lint results are a verdict, not reusable outputs.
DEFAULT_INSTALL_ARTIFACTS: dict[str, bool] = {
    "deps": True,
    "build": True,
    "test": True,
    "lint": False,
    "doc": True,
}

DEFAULT_PACKAGE_COMMAND = "cargo build --profile release {bin_args}"

DEFAULT_TOOLCHAIN_ENV: dict[str, str] = {
    "CI": "true",
    "RUST_BACKTRACE": "1",
}

_PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts True/False, 0/1 and the strings true/false/1/0/yes/no (case-insensitive).
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


def _resolve_path(raw: str, base_dir: Path) -> Path:
    expanded = Path(os.path.expandvars(os.path.expanduser(raw)))
    if not expanded.is_absolute():
        expanded = base_dir / expanded
    return expanded.resolve()


@dataclass(frozen=True)
class StageSettings:
    command: str
    install_artifacts: bool = True


@dataclass(frozen=True)
class PackageDecl:
    """A deliverable binary: its own directory plus the modules it builds against."""

    dir: str
    name: str | None = None
    extra_dirs: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.name or self.dir.replace("/", "-")

    @property
    def stage_name(self) -> str:
        return f"package-{self.label}"

    def command(self, template: str) -> str:
        bin_args = f"--bin {self.name}" if self.name else ""
        return template.format(bin_args=bin_args, name=self.label, dir=self.dir).strip()


@dataclass(frozen=True)
class BuildConfig:
    workspace_root: Path
    store_path: Path
    work_path: Path
    log_path: Path
    jobs: int = 1
    keep_workdir: bool = False
    toolchain_env: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TOOLCHAIN_ENV))
    diagnostics_tail_lines: int = 200
    stages: dict[str, StageSettings] = field(default_factory=dict)
    package_command: str = DEFAULT_PACKAGE_COMMAND
    packages: tuple[PackageDecl, ...] = ()

    def stage_settings(self, name: str) -> StageSettings:
        settings = self.stages.get(name)
        if settings is not None:
            return settings
        return StageSettings(
            command=DEFAULT_STAGE_COMMANDS[name],
            install_artifacts=DEFAULT_INSTALL_ARTIFACTS[name],
        )

    def package(self, label: str) -> PackageDecl:
        for package in self.packages:
            if label in (package.label, package.stage_name, package.dir):
                return package
        available = ", ".join(p.label for p in self.packages) or "<none>"
        raise ValueError(f"Unknown package: {label} (available: {available})")

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any],
        *,
        base_dir: str | os.PathLike[str] | None = None,
    ) -> tuple["BuildConfig", list[str]]:
        """
        Parse and validate configuration, returning (BuildConfig, warnings).

        Relative paths resolve against `base_dir` (the repo root or the directory of an
        explicitly loaded config file). Unknown keys are warnings unless `strict: true`.

        Raises:
            ValueError: if required keys are missing or invalid.
            TypeError: if a key has the wrong type.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        root_dir = Path(base_dir or os.getcwd()).resolve()
        warnings: list[str] = []
        ns = ConfigNamespace(dict(cfg), path="")

        strict = parse_bool(ns.get_raw("strict", default=False), "strict")

        workspace = ns.namespace("workspace", default=None)
        workspace_root = _resolve_path(workspace.get_str("root", default="."), root_dir)

        store = ns.namespace("store", default=None)
        store_path = _resolve_path(store.get_str("path", default=".workspace-build/store"), root_dir)
        work_path = _resolve_path(store.get_str("work_path", default=".workspace-build/work"), root_dir)

        run = ns.namespace("run", default=None)
        jobs = run.get_int("jobs", default=1, min_value=1)
        keep_workdir = run.get_bool("keep_workdir", default=False)
        log_path = _resolve_path(run.get_str("log_path", default=".workspace-build/logs"), root_dir)

        toolchain = ns.namespace("toolchain", default=None)
        env = dict(DEFAULT_TOOLCHAIN_ENV)
        env.update(toolchain.get_mapping_str("env", default={}))
        tail_lines = toolchain.get_int("diagnostics_tail_lines", default=200, min_value=1)

        stages_ns = ns.namespace("stages", default=None)
        stages: dict[str, StageSettings] = {}
        for stage_name in WORKSPACE_STAGES:
            stage_ns = stages_ns.namespace(stage_name, default=None)
            command = stage_ns.get_str("command", default=DEFAULT_STAGE_COMMANDS[stage_name])
            install = stage_ns.get_bool(
                "install_artifacts", default=DEFAULT_INSTALL_ARTIFACTS[stage_name]
            )
            stages[stage_name] = StageSettings(command=str(command), install_artifacts=install)

        if not denies_warnings(stages["lint"].command):
            raise ValueError(
                "stages.lint.command must promote warnings to errors (add '-- --deny warnings'); "
                f"got {stages['lint'].command!r}"
            )

        package_ns = ns.namespace("package", default=None)
        package_command = str(package_ns.get_str("command", default=DEFAULT_PACKAGE_COMMAND))

        packages: list[PackageDecl] = []
        seen_labels: set[str] = set()
        raw_packages = ns.get_list_mapping("packages", default=[], allow_empty=True)
        for idx, raw in enumerate(raw_packages):
            pkg_ns = ConfigNamespace(raw, path=f"packages[{idx}]")
            name = pkg_ns.get_str("name", default=None)
            if name is not None and not _PACKAGE_NAME_RE.match(name):
                raise ValueError(f"packages[{idx}].name is not a valid binary name: {name!r}")
            raw_dir = pkg_ns.get_str("dir", default=name)
            if raw_dir is None:
                raise ValueError(f"Missing required config key: packages[{idx}].dir")
            own_dir = normalize_module_dir(raw_dir, path=f"packages[{idx}].dir")
            extra_dirs = tuple(
                normalize_module_dir(item, path=f"packages[{idx}].extra_dirs[{j}]")
                for j, item in enumerate(
                    pkg_ns.get_list_str("extra_dirs", default=[], allow_empty=True)
                )
            )
            package = PackageDecl(dir=own_dir, name=name, extra_dirs=extra_dirs)
            if package.label in seen_labels:
                raise ValueError(f"Duplicate package: {package.label} (packages[{idx}])")
            seen_labels.add(package.label)
            try:
                package.command(package_command)
            except (KeyError, IndexError, ValueError) as exc:
                raise ValueError(
                    f"package.command has an unknown placeholder: {package_command!r} ({exc})"
                ) from exc
            unknown = pkg_ns.unconsumed_paths()
            if unknown:
                if strict:
                    pkg_ns.assert_consumed()
                warnings.extend(f"Unknown config key: {path}" for path in unknown)
            packages.append(package)

        unknown = ns.unconsumed_paths()
        if unknown:
            if strict:
                ns.assert_consumed()
            warnings.extend(f"Unknown config key: {path}" for path in unknown)

        return (
            BuildConfig(
                workspace_root=workspace_root,
                store_path=store_path,
                work_path=work_path,
                log_path=log_path,
                jobs=jobs,
                keep_workdir=keep_workdir,
                toolchain_env=env,
                diagnostics_tail_lines=tail_lines,
                stages=stages,
                package_command=package_command,
                packages=tuple(packages),
            ),
            warnings,
        )
