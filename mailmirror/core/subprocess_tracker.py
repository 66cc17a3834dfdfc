"""Tunnel PID tracker — ensures cloudflared children die with the preview.

Every spawned tunnel process is registered here. An ``atexit`` handler sends
SIGTERM to the tracked PIDs when the interpreter exits, including exits
caused by an unhandled exception. PIDs are also written to a file so that the
next run can kill tunnels orphaned by a crash (``cleanup_stale_pids``).
"""
from __future__ import annotations

import atexit
import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)

_tracked_pids: set[int] = set()
_pid_file: Path | None = None


def set_pid_file(path: str | Path | None) -> None:
    """Persist tracked PIDs to *path* (``None`` disables persistence)."""
    global _pid_file
    _pid_file = Path(path) if path is not None else None


def tracked_pids() -> frozenset[int]:
    return frozenset(_tracked_pids)


def track(pid: int) -> None:
    """Register a running tunnel PID."""
    _tracked_pids.add(pid)
    _save()


def untrack(pid: int) -> None:
    """Forget a PID whose process has been reaped."""
    if pid in _tracked_pids:
        _tracked_pids.discard(pid)
        _save()


def kill_all() -> None:
    """SIGTERM every tracked PID (the atexit hook)."""
    for pid in list(_tracked_pids):
        try:
            os.kill(pid, signal.SIGTERM)
            logger.debug("Sent SIGTERM to tunnel PID %d", pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Failed to signal PID %d: %s", pid, e)
    _tracked_pids.clear()
    _save()


def cleanup_stale_pids() -> int:
    """Kill tunnels left behind by a crashed run. Returns the number signalled."""
    if not _pid_file or not _pid_file.exists():
        return 0
    killed = 0
    try:
        lines = _pid_file.read_text().splitlines()
    except OSError as e:
        logger.debug("Could not read PID file %s: %s", _pid_file, e)
        lines = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            pid = int(line)
            os.kill(pid, signal.SIGTERM)
        except ValueError:
            continue
        except ProcessLookupError:
            continue  # already gone
        except OSError as e:
            logger.debug("Could not kill stale PID %s: %s", line, e)
            continue
        killed += 1
        logger.info("Killed stale tunnel process PID %d", pid)
    if killed:
        logger.info("Cleaned up %d stale tunnel process(es)", killed)
    try:
        _pid_file.unlink(missing_ok=True)
    except OSError:
        pass
    return killed


def _save() -> None:
    if not _pid_file:
        return
    try:
        _pid_file.parent.mkdir(parents=True, exist_ok=True)
        _pid_file.write_text(
            "\n".join(str(pid) for pid in sorted(_tracked_pids)) + "\n"
            if _tracked_pids else ""
        )
    except OSError as e:
        logger.debug("Could not write PID file %s: %s", _pid_file, e)


# SIGKILL cannot be caught; cleanup_stale_pids() on the next start covers it.
atexit.register(kill_all)
