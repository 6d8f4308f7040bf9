"""Engine primitives for executing stage graphs against an artifact store."""

from buildkit.engine.executor import ExecutionResult, StageExecutor, Toolchain, ToolchainResult
from buildkit.engine.scheduler import RunReport, StageOutcome, StageScheduler, run_stages
from buildkit.engine.store import ArtifactStore

__all__ = [
    "ArtifactStore",
    "ExecutionResult",
    "RunReport",
    "StageExecutor",
    "StageOutcome",
    "StageScheduler",
    "Toolchain",
    "ToolchainResult",
    "run_stages",
]
