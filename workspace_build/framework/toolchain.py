from __future__ import annotations

import collections
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Mapping

from buildkit.engine.executor import ToolchainResult
from buildkit.stage_types import Command

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.2
_TERMINATE_GRACE_SECONDS = 10.0
_OUTPUT_DRAIN_SECONDS = 5.0


class SubprocessToolchain:
    """Run stage commands as child processes inside the materialized source tree.

    String commands go through the shell (stage commands chain with `&&`); argv lists
    are executed directly. The child sees:

    - `WORKSPACE_BUILD_SRC`: the materialized input snapshot (also the working dir)
    - `CARGO_TARGET_DIR`: `<output>/target`, pre-seeded with upstream artifacts
    - `WORKSPACE_BUILD_OUT`: `<output>/out` for explicitly exported outputs
    - `WORKSPACE_BUILD_UPSTREAM`: the upstream artifact set (read-only), when present
    """

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        diagnostics_tail_lines: int = 200,
        log: logging.Logger | None = None,
    ):
        self._env = dict(env or {})
        self._tail_lines = diagnostics_tail_lines
        self._logger = log or logger

    def environment(
        self,
        *,
        source_dir: Path,
        output_dir: Path,
        upstream_dir: Path | None,
    ) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._env)
        env["WORKSPACE_BUILD_SRC"] = str(source_dir)
        env["WORKSPACE_BUILD_OUT"] = str(output_dir / "out")
        env["CARGO_TARGET_DIR"] = str(output_dir / "target")
        if upstream_dir is not None:
            env["WORKSPACE_BUILD_UPSTREAM"] = str(upstream_dir)
        else:
            env.pop("WORKSPACE_BUILD_UPSTREAM", None)
        return env

    def run(
        self,
        command: Command,
        *,
        source_dir: Path,
        output_dir: Path,
        upstream_dir: Path | None,
        cancel_event: threading.Event,
    ) -> ToolchainResult:
        env = self.environment(
            source_dir=source_dir, output_dir=output_dir, upstream_dir=upstream_dir
        )
        shell = isinstance(command, str)
        self._logger.debug("Running %s in %s", command, source_dir)

        proc = subprocess.Popen(
            command if shell else list(command),
            shell=shell,
            cwd=str(source_dir),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

        tail: collections.deque[str] = collections.deque(maxlen=self._tail_lines)
        tail_lock = threading.Lock()
        reader = threading.Thread(
            target=self._drain, args=(proc, tail, tail_lock), name="toolchain-output", daemon=True
        )
        reader.start()

        cancelled = False
        while True:
            try:
                exit_code = proc.wait(timeout=_POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    cancelled = True
                    exit_code = self._terminate(proc)
                    break

        reader.join(timeout=_OUTPUT_DRAIN_SECONDS)
        if reader.is_alive():
            # A background child inherited stdout and outlived the command.
            self._logger.warning(
                "Output of %s still held open after exit; diagnostics may be incomplete", command
            )
        with tail_lock:
            diagnostics = "".join(tail)
        return ToolchainResult(exit_code=exit_code, diagnostics=diagnostics, cancelled=cancelled)

    def _drain(
        self,
        proc: subprocess.Popen[str],
        tail: collections.deque[str],
        tail_lock: threading.Lock,
    ) -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            with tail_lock:
                tail.append(line)
            self._logger.debug("| %s", line.rstrip("\n"))
        proc.stdout.close()

    def _terminate(self, proc: subprocess.Popen[str]) -> int:
        self._logger.warning("Cancelling toolchain process (pid=%s)", proc.pid)
        self._signal_group(proc, signal.SIGTERM)
        try:
            return proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, signal.SIGKILL)
            return proc.wait()

    def _signal_group(self, proc: subprocess.Popen[str], sig: int) -> None:
        # The command runs in its own session; signal the whole group so shell children
        # (the actual build tool) stop too.
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
