"""
Process liveness checks.

Used before any network call so a dead server produces ProcessCrashedError
instead of a generic connection failure.
"""

from __future__ import annotations

import psutil
import structlog

logger = structlog.get_logger()


def is_process_running(pid: int) -> bool:
    """
    Report whether a process with the given id is alive.

    Zombies (exited but not yet reaped) count as not running.
    """
    if pid <= 0:
        return False

    if not psutil.pid_exists(pid):
        return False

    try:
        status = psutil.Process(pid).status()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True

    if status == psutil.STATUS_ZOMBIE:
        logger.debug("Process is a zombie", pid=pid)
        return False
    return True
