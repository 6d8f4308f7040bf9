"""Scope builders: named rule configurations over a root tree.

- `deps_only_scope`: workspace manifests only, so source edits never touch the
  dependency-compilation cache key.
- `full_workspace_scope`: all sources needed to build, test, lint and document.
- `per_package_scope`: one package plus its declared collaborator modules, with shallow
  traversal so unrelated siblings contribute nothing but their manifests.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Sequence

from buildkit.errors import ScopeConfigError
from buildkit.rules import Rule, RuleSet, included
from buildkit.snapshot import InputSnapshot, take_snapshot

MANIFEST_RULES: tuple[Rule, ...] = (
    Rule.exact("Cargo.lock"),
    Rule.exact("Cargo.toml"),
    Rule.regex(r".*/Cargo\.toml"),
)

WORKSPACE_SOURCE_RULES: tuple[Rule, ...] = (
    Rule.regex(r".*\.rs"),
    Rule.regex(r".*/doc/.*\.md"),
    Rule.regex(r".*\.txt"),
)


@dataclass(frozen=True)
class Scope:
    name: str
    rule_set: RuleSet
    root: Path

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ScopeConfigError("Scope.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "root", Path(self.root))

    def included(self, path: str | os.PathLike[str]) -> bool:
        return included(path, self.rule_set, root=self.root)

    def snapshot(self) -> InputSnapshot:
        return take_snapshot(self.root, self.rule_set)

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "root": str(self.root), **self.rule_set.describe()}


def normalize_module_dir(directory: str, *, path: str) -> str:
    if not isinstance(directory, str):
        raise ScopeConfigError(f"{path} must be a string (type={type(directory).__name__})")
    raw = directory.strip().replace("\\", "/")
    if raw.startswith("/"):
        raise ScopeConfigError(f"{path} must be relative to the workspace root (got {directory!r})")
    normalized = raw.strip("/")
    if not normalized:
        raise ScopeConfigError(f"{path} cannot be empty")
    parts = PurePosixPath(normalized).parts
    if any(part in (".", "..") for part in parts):
        raise ScopeConfigError(f"{path} cannot contain '.' or '..' segments (got {directory!r})")
    return "/".join(parts)


def module_rules(directory: str) -> tuple[Rule, ...]:
    """A module contributes its directory itself and everything beneath it.

    Shallow traversal only descends first-level directories on its own, so the
    intermediate directories of a nested module (`crates/apps` for
    `crates/apps/cli`) are included by exact rules.
    """

    parts = directory.split("/")
    ancestors = tuple(Rule.exact("/".join(parts[:depth])) for depth in range(2, len(parts)))
    return ancestors + (Rule.exact(directory), Rule.regex(re.escape(directory) + r"/.*"))


def deps_only_scope(root: str | os.PathLike[str], *, name: str = "deps") -> Scope:
    return Scope(
        name=name,
        rule_set=RuleSet(rules=MANIFEST_RULES, traversal="unrestricted"),
        root=Path(root),
    )


def full_workspace_scope(root: str | os.PathLike[str], *, name: str = "workspace") -> Scope:
    return Scope(
        name=name,
        rule_set=RuleSet(rules=MANIFEST_RULES + WORKSPACE_SOURCE_RULES, traversal="unrestricted"),
        root=Path(root),
    )


def per_package_scope(
    root: str | os.PathLike[str],
    own_dir: str,
    extra_dirs: Sequence[str] | Iterable[str] = (),
    *,
    name: str | None = None,
) -> Scope:
    if own_dir is None or (isinstance(own_dir, str) and not own_dir.strip()):
        raise ScopeConfigError("A package scope must include its own directory (own_dir is empty)")
    if isinstance(extra_dirs, str):
        raise ScopeConfigError("extra_dirs must be a list of directories, not a string")

    modules: list[str] = [normalize_module_dir(own_dir, path="own_dir")]
    for idx, extra in enumerate(extra_dirs):
        normalized = normalize_module_dir(extra, path=f"extra_dirs[{idx}]")
        if normalized not in modules:
            modules.append(normalized)

    rules: list[Rule] = list(MANIFEST_RULES)
    for module in modules:
        for rule in module_rules(module):
            if rule not in rules:
                rules.append(rule)

    return Scope(
        name=name or f"package:{modules[0]}",
        rule_set=RuleSet(rules=tuple(rules), traversal="shallow"),
        root=Path(root),
    )
