from __future__ import annotations

import enum
import re
import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence, TypeAlias

from buildkit.errors import ScopeConfigError, StageError
from buildkit.scopes import Scope

Command: TypeAlias = str | tuple[str, ...]

_DENY_WARNINGS_RE = re.compile(r"""(?:^|[\s"'=])(?:--deny[\s=]warnings|-D\s*warnings)(?:$|[\s"'])""")


class StageState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in (StageState.SUCCEEDED, StageState.FAILED, StageState.BLOCKED)


_TRANSITIONS: dict[StageState, frozenset[StageState]] = {
    StageState.PENDING: frozenset({StageState.RUNNING, StageState.BLOCKED, StageState.FAILED}),
    StageState.RUNNING: frozenset({StageState.SUCCEEDED, StageState.FAILED}),
    StageState.SUCCEEDED: frozenset(),
    StageState.FAILED: frozenset(),
    StageState.BLOCKED: frozenset(),
}


def command_text(command: Command) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


def denies_warnings(command: Command) -> bool:
    return _DENY_WARNINGS_RE.search(command_text(command)) is not None


@dataclass(frozen=True)
class Stage:
    name: str
    scope: Scope
    command: Command
    upstream: str | None = None
    install_artifacts: bool = True
    deny_warnings: bool = False
    doc: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ScopeConfigError("Stage.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())

        if not isinstance(self.scope, Scope):
            raise ScopeConfigError(
                f"Stage {self.name} scope must be a Scope (type={type(self.scope).__name__})"
            )

        command = self.command
        if isinstance(command, str):
            if not command.strip():
                raise ScopeConfigError(f"Stage {self.name} command cannot be empty")
            command = command.strip()
        elif isinstance(command, Sequence):
            argv = tuple(str(part) for part in command)
            if not argv or not argv[0].strip():
                raise ScopeConfigError(f"Stage {self.name} command argv cannot be empty")
            command = argv
        else:
            raise ScopeConfigError(
                f"Stage {self.name} command must be a string or argv list "
                f"(type={type(command).__name__})"
            )
        object.__setattr__(self, "command", command)

        if self.upstream is not None:
            if not isinstance(self.upstream, str) or not self.upstream.strip():
                raise ScopeConfigError(f"Stage {self.name} upstream must be a non-empty string or None")
            upstream = self.upstream.strip()
            if upstream == self.name:
                raise ScopeConfigError(f"Stage {self.name} cannot be its own upstream")
            object.__setattr__(self, "upstream", upstream)

        if self.deny_warnings and not denies_warnings(self.command):
            raise ScopeConfigError(
                f"Stage {self.name} must promote warnings to errors; add '--deny warnings' "
                f"to its command (got {command_text(self.command)!r})"
            )

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "upstream": self.upstream,
            "command": command_text(self.command),
            "install_artifacts": self.install_artifacts,
            "deny_warnings": self.deny_warnings,
            "doc": self.doc,
            "scope": self.scope.describe(),
        }


@dataclass(frozen=True)
class ArtifactSet:
    key: str
    stage: str
    path: Path
    files: tuple[str, ...] = ()
    created_at: str | None = None


@dataclass
class StageRun:
    """Mutable lifecycle record of one stage within a single run."""

    stage: str
    state: StageState = StageState.PENDING
    cache_hit: bool = False
    artifacts: ArtifactSet | None = None
    error: StageError | None = None
    blocked_by: str | None = None
    duration_seconds: float | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _transition(self, target: StageState) -> None:
        with self._lock:
            if target not in _TRANSITIONS[self.state]:
                raise ValueError(
                    f"Invalid stage transition for {self.stage}: {self.state.value} -> {target.value}"
                )
            self.state = target

    def start(self) -> None:
        self._transition(StageState.RUNNING)

    def succeed(self, artifacts: ArtifactSet, *, cache_hit: bool) -> None:
        self._transition(StageState.SUCCEEDED)
        self.artifacts = artifacts
        self.cache_hit = cache_hit

    def fail(self, error: StageError) -> None:
        self._transition(StageState.FAILED)
        self.error = error

    def block(self, upstream: str) -> None:
        self._transition(StageState.BLOCKED)
        self.blocked_by = upstream
