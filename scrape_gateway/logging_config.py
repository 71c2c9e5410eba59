"""Logging configuration using loguru"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None, component: str = "gateway") -> None:
    """
    Configure loguru for one process of the cluster.

    The API server, the alert worker and the one-shot commands run as
    separate processes; every record carries the process ``component`` so
    their output can be told apart once collected. When ``log_file`` is a
    directory, the file sink is ``<log_file>/<component>.log``, which keeps
    the server and worker logs separate on a shared volume.

    Args:
        verbose: Enable debug-level logging
        log_file: Optional file or directory path for log output
        component: Process name (``serve``, ``worker``, ``route``, ``stats``)
    """
    logger.remove()
    logger.configure(extra={"component": component})

    log_level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <magenta>{extra[component]}</magenta> | <level>{message}</level>",
        level=log_level,
        colorize=True,
    )

    if log_file:
        if log_file.is_dir():
            log_file = log_file / f"{component}.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | {name}:{function}:{line} | {message}",
            level="DEBUG",
            rotation="1 day" if component == "worker" else "100 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )
        logger.info(f"Logging to file: {log_file}")
