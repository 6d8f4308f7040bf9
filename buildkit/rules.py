"""Path filter engine.

A `RuleSet` decides, per path relative to a tree root, whether the path belongs to a
build input snapshot. Matching is pure: the only inputs are the relative path, whether
it is a directory, and the rules themselves.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal, TypeAlias

from buildkit.errors import FilterError

TraversalMode: TypeAlias = Literal["unrestricted", "shallow"]
RuleKind: TypeAlias = Literal["exact", "regex"]

ALLOWED_TRAVERSAL_MODES: tuple[str, ...] = ("unrestricted", "shallow")

_FIRST_LEVEL_RE = re.compile(r"[^/]+")


@dataclass(frozen=True)
class Rule:
    pattern: str
    kind: RuleKind = "regex"
    _compiled: re.Pattern[str] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not isinstance(self.pattern, str) or not self.pattern:
            raise TypeError("Rule.pattern must be a non-empty string")
        if self.kind not in ("exact", "regex"):
            raise ValueError(f"Rule.kind must be one of: exact, regex (got {self.kind!r})")
        if self.kind == "regex":
            try:
                compiled = re.compile(self.pattern)
            except re.error as exc:
                raise ValueError(f"Invalid rule regex {self.pattern!r}: {exc}") from exc
            object.__setattr__(self, "_compiled", compiled)

    @classmethod
    def exact(cls, pattern: str) -> "Rule":
        return cls(pattern=pattern, kind="exact")

    @classmethod
    def regex(cls, pattern: str) -> "Rule":
        return cls(pattern=pattern, kind="regex")

    def matches(self, rel_path: str) -> bool:
        if self._compiled is None:
            return rel_path == self.pattern
        return self._compiled.fullmatch(rel_path) is not None


@dataclass(frozen=True)
class RuleSet:
    rules: tuple[Rule, ...] = ()
    traversal: TraversalMode = "unrestricted"

    def __post_init__(self) -> None:
        if self.traversal not in ALLOWED_TRAVERSAL_MODES:
            raise ValueError(
                f"RuleSet.traversal must be one of: unrestricted, shallow (got {self.traversal!r})"
            )
        rules = tuple(self.rules)
        for idx, rule in enumerate(rules):
            if not isinstance(rule, Rule):
                raise TypeError(
                    f"RuleSet.rules[{idx}] must be a Rule (type={type(rule).__name__})"
                )
        object.__setattr__(self, "rules", rules)

    def union(self, rules: Iterable[Rule]) -> "RuleSet":
        return RuleSet(rules=self.rules + tuple(rules), traversal=self.traversal)

    def matches_any(self, rel_path: str) -> bool:
        return any(rule.matches(rel_path) for rule in self.rules)

    def includes(self, rel_path: str, *, is_dir: bool) -> bool:
        """Return whether `rel_path` (POSIX, relative to the root) is kept.

        Directories are always descended in `unrestricted` mode. In `shallow` mode only
        direct children of the root and directories matched by a rule are descended.
        Files are kept iff at least one rule full-matches.
        """

        if rel_path == "":
            return True
        if is_dir:
            if self.traversal == "unrestricted":
                return True
            return _FIRST_LEVEL_RE.fullmatch(rel_path) is not None or self.matches_any(rel_path)
        return self.matches_any(rel_path)

    def describe(self) -> dict[str, object]:
        return {
            "traversal": self.traversal,
            "rules": [{"kind": rule.kind, "pattern": rule.pattern} for rule in self.rules],
        }


def relative_posix(path: str | os.PathLike[str], *, root: str | os.PathLike[str]) -> str:
    root_path = Path(root)
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root_path / candidate
    try:
        rel = candidate.relative_to(root_path)
    except ValueError as exc:
        raise FilterError(f"Path {candidate} is outside of root {root_path}") from exc
    rel_path = rel.as_posix()
    return "" if rel_path == "." else rel_path.strip("/")


def ensure_root(root: str | os.PathLike[str]) -> Path:
    root_path = Path(root)
    if not root_path.exists():
        raise FilterError(f"Root tree does not exist: {root_path}")
    if not root_path.is_dir():
        raise FilterError(f"Root tree is not a directory: {root_path}")
    return root_path


def included(
    path: str | os.PathLike[str],
    rule_set: RuleSet,
    *,
    root: str | os.PathLike[str],
) -> bool:
    root_path = ensure_root(root)
    rel_path = relative_posix(path, root=root_path)
    full_path = root_path / rel_path if rel_path else root_path
    is_dir = full_path.is_dir() and not full_path.is_symlink()
    return rule_set.includes(rel_path, is_dir=is_dir)
