from __future__ import annotations

import logging
import os
from pathlib import Path

DEFAULT_LOG_PATH = "/var/log/bootpool.log"


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    verbosity: int = 0,
    also_console: bool = True,
) -> str:
    """Configure logging.

    The log file always records INFO and above. The console shows warnings
    only, unless verbosity asks for more (1: INFO, 2: DEBUG including
    captured command output).

    Notes:
    - Writing to /var/log may not be permitted (non-global zone, read-only
      media). In that case we fall back to a file in the working directory,
      or to console-only logging if that fails too.

    Returns the actual file path being used ("" when none).
    """

    logger = logging.getLogger()

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_bootpool_configured", False):
        return getattr(logger, "_bootpool_log_path", log_path)

    console_level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logger.setLevel(min(logging.INFO, console_level))

    chosen_path = ""
    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    for candidate in (log_path, str(Path.cwd() / "bootpool.log")):
        try:
            Path(os.path.dirname(candidate) or ".").mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(candidate)
        except OSError:
            continue
        file_handler.setFormatter(fmt)
        file_handler.setLevel(logging.INFO)
        handlers.append(file_handler)
        chosen_path = candidate
        break

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        console.setLevel(console_level)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_bootpool_configured", True)
    setattr(logger, "_bootpool_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path or "<console>"
    )
    return chosen_path
