"""Reusable incremental build kernel (path filters, scopes, stage graph, executor).

This package is intentionally independent of `workspace_build.*`. Workspace-specific
conventions (stage catalog, toolchain commands, config layout) live in the consuming
application.
"""

from buildkit.config_namespace import ConfigNamespace
from buildkit.engine.executor import (
    ExecutionResult,
    StageExecutor,
    Toolchain,
    ToolchainResult,
    compute_cache_key,
)
from buildkit.engine.scheduler import (
    DefaultStageRecorder,
    NullStageRecorder,
    RunReport,
    StageOutcome,
    StageRecorder,
    StageScheduler,
    run_stages,
)
from buildkit.engine.store import ArtifactStore
from buildkit.errors import CacheStoreError, FilterError, ScopeConfigError, StageError
from buildkit.rules import Rule, RuleSet, TraversalMode, included
from buildkit.scopes import (
    MANIFEST_RULES,
    Scope,
    deps_only_scope,
    full_workspace_scope,
    module_rules,
    per_package_scope,
)
from buildkit.snapshot import InputSnapshot, take_snapshot
from buildkit.stage_graph import StageGraph
from buildkit.stage_types import ArtifactSet, Stage, StageRun, StageState

__all__ = [
    "MANIFEST_RULES",
    "ArtifactSet",
    "ArtifactStore",
    "CacheStoreError",
    "ConfigNamespace",
    "DefaultStageRecorder",
    "ExecutionResult",
    "FilterError",
    "InputSnapshot",
    "NullStageRecorder",
    "Rule",
    "RuleSet",
    "RunReport",
    "Scope",
    "ScopeConfigError",
    "Stage",
    "StageError",
    "StageExecutor",
    "StageGraph",
    "StageOutcome",
    "StageRecorder",
    "StageRun",
    "StageScheduler",
    "StageState",
    "Toolchain",
    "ToolchainResult",
    "TraversalMode",
    "compute_cache_key",
    "deps_only_scope",
    "full_workspace_scope",
    "included",
    "module_rules",
    "per_package_scope",
    "run_stages",
    "take_snapshot",
]
