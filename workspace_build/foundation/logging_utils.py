from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def generate_run_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


def setup_operational_logger(
    log_dir: str,
    run_id: str,
    *,
    console_level: int = logging.INFO,
) -> tuple[logging.Logger, str]:
    """
    Configure the operational logger for one build run.

    Logs go to both the console and a UTF-8 file under the provided directory. The
    `buildkit` kernel loggers are attached to the same handlers so stage lifecycle and
    cache decisions land in the run log.
    """

    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{run_id}_oplog.log")

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(console_level)
    stream_handler.setFormatter(formatter)

    logger = logging.getLogger(f"workspace_build.run.{run_id}")
    kernel_logger = logging.getLogger("buildkit")
    for target in (logger, kernel_logger):
        for handler in list(target.handlers):
            target.removeHandler(handler)
            handler.close()
        target.setLevel(logging.DEBUG)
        target.addHandler(file_handler)
        target.addHandler(stream_handler)
        target.propagate = False

    logger.info("Operational logging initialized for run %s", run_id)
    logger.debug("Operational log file: %s", log_file)

    return logger, log_file


def close_operational_logger(logger: logging.Logger) -> None:
    kernel_logger = logging.getLogger("buildkit")
    handlers = set(logger.handlers) | set(kernel_logger.handlers)
    for target in (logger, kernel_logger):
        for handler in list(target.handlers):
            target.removeHandler(handler)
    kernel_logger.propagate = True
    for handler in handlers:
        handler.close()
