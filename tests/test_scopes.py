from pathlib import Path

import pytest

from buildkit.errors import ScopeConfigError
from buildkit.rules import Rule, RuleSet
from buildkit.scopes import (
    deps_only_scope,
    full_workspace_scope,
    module_rules,
    per_package_scope,
)
from buildkit.snapshot import take_snapshot


def _write_tree(root: Path, files: dict[str, str]) -> None:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


WORKSPACE = {
    "Cargo.lock": "# lock",
    "Cargo.toml": "[workspace]",
    "README.md": "readme",
    "notes.txt": "notes",
    "pkgA/Cargo.toml": "[package]\nname = 'a'",
    "pkgA/src/main.rs": "fn main() {}",
    "pkgA/doc/guide.md": "# guide",
    "pkgB/Cargo.toml": "[package]\nname = 'b'",
    "pkgB/src/lib.rs": "pub fn b() {}",
    "pkgB/src/deep/file.rs": "pub fn deep() {}",
    "pkgC/lib/z.rs": "pub fn z() {}",
    "target/debug/junk.bin": "binary",
}


def test_manifest_rule_set_scenario(tmp_path: Path):
    _write_tree(
        tmp_path,
        {
            "Cargo.lock": "",
            "Cargo.toml": "",
            "pkgA/Cargo.toml": "",
            "pkgA/src/main.rs": "",
        },
    )
    rule_set = RuleSet(
        rules=(Rule.regex("Cargo.lock"), Rule.regex("Cargo.toml"), Rule.regex(".*/Cargo.toml")),
        traversal="unrestricted",
    )

    snapshot = take_snapshot(tmp_path, rule_set)

    assert snapshot.paths == ("Cargo.lock", "Cargo.toml", "pkgA/Cargo.toml")


def test_per_package_scope_scenario(tmp_path: Path):
    _write_tree(
        tmp_path,
        {
            "pkgA/src/x.rs": "",
            "pkgB/src/y.rs": "",
            "pkgC/lib/z.rs": "",
            "Cargo.toml": "",
        },
    )

    snapshot = per_package_scope(tmp_path, "pkgA", ["pkgC"]).snapshot()

    assert snapshot.paths == ("Cargo.toml", "pkgA/src/x.rs", "pkgC/lib/z.rs")
    assert {"pkgA", "pkgB", "pkgC"} <= set(snapshot.directories)
    assert "pkgB/src" not in snapshot.directories


def test_deps_only_scope_keeps_manifests_only(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)

    snapshot = deps_only_scope(tmp_path).snapshot()

    assert snapshot.paths == ("Cargo.lock", "Cargo.toml", "pkgA/Cargo.toml", "pkgB/Cargo.toml")


def test_deps_only_scope_identity_ignores_source_edits(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)
    scope = deps_only_scope(tmp_path)
    before = scope.snapshot().identity()

    (tmp_path / "pkgA" / "src" / "main.rs").write_text("fn main() { println!(); }", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("changed", encoding="utf-8")
    _write_tree(tmp_path, {"pkgD/src/new.rs": "pub fn new() {}"})

    assert scope.snapshot().identity() == before


def test_deps_only_scope_identity_tracks_manifest_edits(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)
    scope = deps_only_scope(tmp_path)
    before = scope.snapshot().identity()

    (tmp_path / "pkgB" / "Cargo.toml").write_text("[package]\nname = 'b2'", encoding="utf-8")

    assert scope.snapshot().identity() != before


def test_full_workspace_scope_keeps_sources_docs_and_text(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)

    paths = set(full_workspace_scope(tmp_path).snapshot().paths)

    assert {
        "Cargo.lock",
        "Cargo.toml",
        "notes.txt",
        "pkgA/Cargo.toml",
        "pkgA/src/main.rs",
        "pkgA/doc/guide.md",
        "pkgB/src/deep/file.rs",
        "pkgC/lib/z.rs",
    } <= paths
    assert "README.md" not in paths
    assert "target/debug/junk.bin" not in paths


def test_per_package_scope_is_isolated_from_unrelated_siblings(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)
    scope = per_package_scope(tmp_path, "pkgA", ["pkgC"])
    before = scope.snapshot().identity()

    (tmp_path / "pkgB" / "src" / "lib.rs").write_text("pub fn changed() {}", encoding="utf-8")
    (tmp_path / "pkgB" / "src" / "deep" / "file.rs").write_text("// edit", encoding="utf-8")

    assert scope.snapshot().identity() == before


def test_per_package_scope_tracks_declared_extra_dirs(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)
    scope = per_package_scope(tmp_path, "pkgA", ["pkgC"])
    before = scope.snapshot().identity()

    (tmp_path / "pkgC" / "lib" / "z.rs").write_text("pub fn z2() {}", encoding="utf-8")

    assert scope.snapshot().identity() != before


def test_shallow_traversal_reach_discovers_sibling_manifests_only(tmp_path: Path):
    _write_tree(tmp_path, WORKSPACE)
    scope = per_package_scope(tmp_path, "pkgA")

    paths = scope.snapshot().paths

    assert "pkgB/Cargo.toml" in paths
    assert "pkgB/src/deep/file.rs" not in paths
    assert not scope.included(tmp_path / "pkgB" / "src" / "deep" / "file.rs")
    assert scope.included(tmp_path / "pkgB")
    assert not scope.included(tmp_path / "pkgB" / "src")


def test_per_package_scope_rejects_empty_own_dir(tmp_path: Path):
    with pytest.raises(ScopeConfigError, match=r"own directory"):
        per_package_scope(tmp_path, "")
    with pytest.raises(ScopeConfigError, match=r"own directory"):
        per_package_scope(tmp_path, "   ")


def test_per_package_scope_rejects_escaping_module_dirs(tmp_path: Path):
    with pytest.raises(ScopeConfigError, match=r"'\.\.'"):
        per_package_scope(tmp_path, "pkgA", ["../outside"])
    with pytest.raises(ScopeConfigError, match=r"relative"):
        per_package_scope(tmp_path, "/abs/pkgA")


def test_per_package_scope_deduplicates_modules_and_strips_slashes(tmp_path: Path):
    scope = per_package_scope(tmp_path, "pkgA/", ["pkgA", "pkgC/"])

    patterns = [rule.pattern for rule in scope.rule_set.rules]

    assert patterns.count("pkgA") == 1
    assert "pkgC" in patterns
    assert scope.rule_set.traversal == "shallow"


def test_module_rules_escape_regex_metacharacters():
    exact, recursive = module_rules("se.app")

    assert exact.matches("se.app")
    assert recursive.matches("se.app/src/lib.rs")
    assert not recursive.matches("seXapp/src/lib.rs")


def test_nested_module_directory_is_reachable_in_shallow_mode(tmp_path: Path):
    _write_tree(tmp_path, {"crates/core/src/lib.rs": "", "crates/other/src/lib.rs": ""})

    paths = per_package_scope(tmp_path, "crates/core").snapshot().paths

    assert paths == ("crates/core/src/lib.rs",)


def test_module_rules_include_intermediate_directories_of_nested_modules():
    patterns = [(rule.kind, rule.pattern) for rule in module_rules("crates/apps/cli")]

    assert patterns == [
        ("exact", "crates/apps"),
        ("exact", "crates/apps/cli"),
        ("regex", r"crates/apps/cli/.*"),
    ]


def test_deeply_nested_package_scope_keeps_its_own_sources(tmp_path: Path):
    _write_tree(
        tmp_path,
        {
            "Cargo.toml": "[workspace]",
            "crates/apps/cli/Cargo.toml": "[package]",
            "crates/apps/cli/src/main.rs": "fn main() {}",
            "crates/apps/other/src/lib.rs": "pub fn other() {}",
            "crates/libs/core/src/lib.rs": "pub fn core() {}",
        },
    )
    scope = per_package_scope(tmp_path, "crates/apps/cli", ["crates/libs/core"])

    paths = scope.snapshot().paths

    assert paths == (
        "Cargo.toml",
        "crates/apps/cli/Cargo.toml",
        "crates/apps/cli/src/main.rs",
        "crates/libs/core/src/lib.rs",
    )
    assert not scope.included(tmp_path / "crates" / "apps" / "other")

    before = scope.snapshot().identity()
    (tmp_path / "crates" / "apps" / "cli" / "src" / "main.rs").write_text(
        "fn main() { println!(); }", encoding="utf-8"
    )
    assert scope.snapshot().identity() != before


def test_shared_ancestor_rules_are_not_duplicated(tmp_path: Path):
    scope = per_package_scope(tmp_path, "crates/apps/cli", ["crates/apps/shared"])

    patterns = [rule.pattern for rule in scope.rule_set.rules]

    assert patterns.count("crates/apps") == 1


def test_snapshot_materialize_copies_included_files(tmp_path: Path):
    source = tmp_path / "ws"
    _write_tree(source, WORKSPACE)
    snapshot = per_package_scope(source, "pkgA").snapshot()

    dest = snapshot.materialize(tmp_path / "out")

    assert (dest / "pkgA" / "src" / "main.rs").read_text(encoding="utf-8") == "fn main() {}"
    assert (dest / "pkgB" / "Cargo.toml").exists()
    assert not (dest / "pkgB" / "src").exists()
