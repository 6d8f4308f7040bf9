import logging
import threading
import time
from pathlib import Path

import pytest

from workspace_build.framework import toolchain as toolchain_module
from workspace_build.framework.toolchain import SubprocessToolchain


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    source = tmp_path / "src"
    output = tmp_path / "artifacts"
    source.mkdir()
    output.mkdir()
    (source / "Cargo.toml").write_text("[workspace]", encoding="utf-8")
    return source, output


def test_shell_command_runs_in_source_dir_with_build_env(dirs):
    source, output = dirs
    toolchain = SubprocessToolchain(env={"CI": "true"})

    result = toolchain.run(
        'mkdir -p "$WORKSPACE_BUILD_OUT" && cp Cargo.toml "$WORKSPACE_BUILD_OUT/" '
        '&& echo "ci=$CI target=$CARGO_TARGET_DIR"',
        source_dir=source,
        output_dir=output,
        upstream_dir=None,
        cancel_event=threading.Event(),
    )

    assert result.exit_code == 0
    assert not result.cancelled
    assert (output / "out" / "Cargo.toml").read_text(encoding="utf-8") == "[workspace]"
    assert f"ci=true target={output / 'target'}" in result.diagnostics


def test_upstream_dir_is_exported_when_present(dirs, tmp_path: Path):
    source, output = dirs
    upstream = tmp_path / "upstream"
    upstream.mkdir()

    result = SubprocessToolchain().run(
        'echo "upstream=$WORKSPACE_BUILD_UPSTREAM"',
        source_dir=source,
        output_dir=output,
        upstream_dir=upstream,
        cancel_event=threading.Event(),
    )

    assert f"upstream={upstream}" in result.diagnostics


def test_nonzero_exit_keeps_diagnostics_tail(dirs):
    source, output = dirs
    toolchain = SubprocessToolchain(diagnostics_tail_lines=2)

    result = toolchain.run(
        "echo one; echo two; echo 'error: three' >&2; exit 101",
        source_dir=source,
        output_dir=output,
        upstream_dir=None,
        cancel_event=threading.Event(),
    )

    assert result.exit_code == 101
    assert result.diagnostics.splitlines() == ["two", "error: three"]


def test_argv_command_runs_without_shell(dirs):
    source, output = dirs

    result = SubprocessToolchain().run(
        ("sh", "-c", "exit 3"),
        source_dir=source,
        output_dir=output,
        upstream_dir=None,
        cancel_event=threading.Event(),
    )

    assert result.exit_code == 3


def test_missing_program_raises_oserror(dirs):
    source, output = dirs

    with pytest.raises(OSError):
        SubprocessToolchain().run(
            ("definitely-not-a-real-build-tool",),
            source_dir=source,
            output_dir=output,
            upstream_dir=None,
            cancel_event=threading.Event(),
        )


def test_cancellation_terminates_the_process_group(dirs):
    source, output = dirs
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()

    started = time.monotonic()
    try:
        result = SubprocessToolchain().run(
            "sleep 30 & wait",
            source_dir=source,
            output_dir=output,
            upstream_dir=None,
            cancel_event=cancel,
        )
    finally:
        timer.cancel()

    assert result.cancelled
    assert result.exit_code != 0
    assert time.monotonic() - started < 10


def test_background_child_holding_output_does_not_block_return(dirs, monkeypatch, caplog):
    source, output = dirs
    monkeypatch.setattr(toolchain_module, "_OUTPUT_DRAIN_SECONDS", 0.2)
    toolchain = SubprocessToolchain(log=logging.getLogger("toolchain_test"))

    started = time.monotonic()
    with caplog.at_level(logging.WARNING, logger="toolchain_test"):
        result = toolchain.run(
            "sleep 3 & echo done",
            source_dir=source,
            output_dir=output,
            upstream_dir=None,
            cancel_event=threading.Event(),
        )

    assert result.exit_code == 0
    assert time.monotonic() - started < 2.5
    assert "done" in result.diagnostics
    assert any("still held open" in record.getMessage() for record in caplog.records)
