# src/herald/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path


# Minimum console level per logger prefix; the first match wins.
_CONSOLE_LEVELS: tuple[tuple[str, int], ...] = (
    # matrix sync loops are chatty
    ("herald.connectors.matrix_", logging.WARNING),
    # one line per sweep/send is enough; per-row debug stays in the file log
    ("herald.tasks.task_scheduler", logging.INFO),
    ("herald.tasks.delivery_executor", logging.INFO),
    ("herald.tasks.task_store", logging.INFO),
    ("herald.conversations.", logging.INFO),
    ("herald.", logging.NOTSET),
)


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the interactive console readable while tasks run in the background.

    herald loggers use the thresholds above; third-party loggers and
    'py.warnings' only reach the console at ERROR+.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for prefix, level in _CONSOLE_LEVELS:
            if record.name.startswith(prefix):
                return record.levelno >= level
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/herald",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """
    Configure logging with:
    - Console handler: readable + filtered for interactive use
    - herald.log: full logs for debugging
    - tasks.log: only the task pipeline (store, executor, delivery, scheduler)

    Call this ONCE, very early (before first logger.info).
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_dir / "herald.log"), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    th = logging.FileHandler(str(log_dir / "tasks.log"), encoding="utf-8")
    th.setLevel(file_level)
    th.setFormatter(fmt)
    th.addFilter(logging.Filter("herald.tasks"))
    root.addHandler(th)

    logging.captureWarnings(True)
