from __future__ import annotations

import difflib
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

from buildkit.errors import ScopeConfigError
from buildkit.stage_types import Stage


@dataclass(frozen=True)
class StageGraph:
    """Immutable DAG of stages.

    Every stage names at most one upstream, so stages sharing an upstream are siblings
    with no edges between them.
    """

    _by_name: dict[str, Stage]
    _order: tuple[str, ...]

    @classmethod
    def from_stages(cls, stages: Iterable[Stage]) -> "StageGraph":
        entries: dict[str, Stage] = {}
        for stage in stages:
            if not isinstance(stage, Stage):
                raise TypeError(f"StageGraph entries must be Stage (type={type(stage).__name__})")
            if stage.name in entries:
                raise ScopeConfigError(f"Duplicate stage name: {stage.name}")
            entries[stage.name] = stage

        for stage in entries.values():
            if stage.upstream is not None and stage.upstream not in entries:
                available = ", ".join(sorted(entries)) or "<none>"
                raise ScopeConfigError(
                    f"Stage {stage.name} declares unknown upstream: {stage.upstream} "
                    f"(available: {available})"
                )

        order: list[str] = []
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(name: str, trail: list[str]) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = " -> ".join([*trail, name])
                raise ScopeConfigError(f"Stage graph contains a cycle: {cycle}")
            visiting.add(name)
            upstream = entries[name].upstream
            if upstream is not None:
                visit(upstream, [*trail, name])
            visiting.discard(name)
            done.add(name)
            order.append(name)

        for name in entries:
            visit(name, [])

        return cls(_by_name=entries, _order=tuple(order))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_name.keys()))

    def stages(self) -> tuple[Stage, ...]:
        return tuple(self._by_name[name] for name in self._order)

    def get(self, name: str) -> Stage:
        stage = self._by_name.get((name or "").strip())
        if stage is None:
            raise ValueError(f"Unknown stage: {name}")
        return stage

    def resolve(self, name: str) -> Stage:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("stage name must be a non-empty string")
        key = name.strip()

        direct = self._by_name.get(key)
        if direct is not None:
            return direct

        matches = sorted(s for s in self._by_name if s.endswith("-" + key))
        if len(matches) == 1:
            return self._by_name[matches[0]]
        if len(matches) > 1:
            raise ValueError(f"Ambiguous stage: {name} (matches: {', '.join(matches)})")

        available = ", ".join(self.available()) or "<none>"
        suggestions = self.suggest(key)
        hint = f"; did you mean: {', '.join(suggestions)}" if suggestions else ""
        raise ValueError(f"Unknown stage: {name} (available: {available}{hint})")

    def suggest(self, name: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (name or "").strip()
        if not key:
            return ()
        return tuple(difflib.get_close_matches(key, list(self.available()), n=limit))

    def upstream(self, name: str) -> Stage | None:
        upstream = self.get(name).upstream
        return None if upstream is None else self._by_name[upstream]

    def dependents(self, name: str) -> tuple[Stage, ...]:
        key = self.get(name).name
        return tuple(
            self._by_name[other] for other in self._order if self._by_name[other].upstream == key
        )

    def siblings(self, name: str) -> tuple[Stage, ...]:
        stage = self.get(name)
        return tuple(
            other
            for other in self.stages()
            if other.name != stage.name and other.upstream == stage.upstream
        )

    def roots(self) -> tuple[Stage, ...]:
        return tuple(stage for stage in self.stages() if stage.upstream is None)

    def closure(self, targets: Iterable[str]) -> tuple[str, ...]:
        """Targets plus all of their upstream ancestors, in dependency order."""

        needed: set[str] = set()
        for target in targets:
            current: Stage | None = self.resolve(target)
            while current is not None and current.name not in needed:
                needed.add(current.name)
                current = self.upstream(current.name)
        return self.topological_order(needed)

    def topological_order(self, names: Iterable[str]) -> tuple[str, ...]:
        wanted = {self.get(name).name for name in names}
        return tuple(name for name in self._order if name in wanted)

    def describe(self) -> tuple[dict[str, Any], ...]:
        children: dict[str | None, list[str]] = defaultdict(list)
        for stage in self.stages():
            children[stage.upstream].append(stage.name)
        rows: list[dict[str, Any]] = []
        for stage in self.stages():
            row = stage.describe()
            row["dependents"] = list(children.get(stage.name, []))
            rows.append(row)
        return tuple(rows)
