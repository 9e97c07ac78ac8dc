# Author: PB
# Maintainer: PB
# Original date: 2025.06.01
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/system/logging_setup.py

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_logging(local_log: Optional[Path] = None, debug: bool = False) -> None:
    """Setup loguru logging for the entire application.

    Configures:
    - Console output: WARNING+ only (clean CLI output), DEBUG+ with debug=True
    - File output: DEBUG+ if local_log is configured
    """
    logger.remove()

    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "WARNING",
        format="<level>{level}</level>: {message}",
        colorize=True
    )

    if not local_log:
        return

    try:
        log_dir = Path(local_log)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "snapmirror.log"

        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention="30 days",
            compression="gz"
        )
        logger.debug(f"File logging enabled: {log_file}")

    except Exception as e:
        # Don't fail the entire application if logging setup fails
        logger.warning(f"Failed to setup file logging: {e}")
