from __future__ import annotations

import asyncio
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Sequence

from .config import DEFAULT_LOG_DIR, OUTPUT_LINE_LIMIT
from .errors import SpawnError
from .types import ProcessHandle

LOGGER = logging.getLogger("KubeAuthProxy.Launcher")

_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 5


def configure_child_logger(
    cluster_name: str, log_dir: Path = DEFAULT_LOG_DIR
) -> tuple[logging.Logger, Path]:
    """Return a non-propagating logger that records proxy output to a rotating file."""

    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(f"KubeAuthProxyChild.{cluster_name}")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_path = log_dir / f"{cluster_name}.log"
    for handler in list(logger.handlers):
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) != log_path.resolve():
            logger.removeHandler(handler)
            handler.close()
    if not any(isinstance(handler, RotatingFileHandler) for handler in logger.handlers):
        handler = RotatingFileHandler(
            log_path, maxBytes=_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
        )
        formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger, log_path


async def spawn_proxy(
    path: str,
    args: Sequence[str],
    *,
    env: Mapping[str, str],
    cwd: Path,
) -> ProcessHandle:
    """Start the proxy binary with piped stdout/stderr."""

    try:
        process = await asyncio.create_subprocess_exec(
            path,
            *args,
            cwd=cwd,
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=OUTPUT_LINE_LIMIT,
        )
    except OSError as exc:
        raise SpawnError(f"Failed to start proxy '{path}': {exc}") from exc

    LOGGER.info("Launched proxy process PID=%s from %s (cwd=%s)", process.pid, path, cwd)
    return process
