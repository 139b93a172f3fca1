"""
Process Registry
================

In-memory map from run key to the live handle of an agent run.

Keys are the card id for implementation runs and ``<card>:review`` for
review runs, so both phases of one card can be tracked side by side.
The registry is a cache: it is lost on restart and the store stays
authoritative for which runs are logically active.
"""

import os
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Iterator, Optional

import structlog

from claw_kanban.core.models import RunPhase

logger = structlog.get_logger()

REVIEW_SUFFIX = ":review"


def run_key(card_id: str, phase: RunPhase = RunPhase.RUN) -> str:
    if phase == RunPhase.REVIEW:
        return f"{card_id}{REVIEW_SUFFIX}"
    return card_id


# ==========================================================================
# Handle Interface
# ==========================================================================

class RunHandle(ABC):
    """A live unit of execution: an OS process or an HTTP stream."""

    def __init__(self, card_id: str, agent: str, phase: RunPhase):
        self.card_id = card_id
        self.agent = agent
        self.phase = phase
        self.stop_requested = False
        self.error: Optional[str] = None

    @property
    def key(self) -> str:
        return run_key(self.card_id, self.phase)

    @property
    @abstractmethod
    def pid(self) -> Optional[int]:
        """OS process id, ``-1`` for HTTP streams, ``None`` if never started."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the run to end and return its exit code."""

    @abstractmethod
    async def terminate(self) -> None:
        """Ask the run to stop. Returns without waiting for exit."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key} agent={self.agent} pid={self.pid}>"


# ==========================================================================
# Registry
# ==========================================================================

class ProcessRegistry:
    """At most one live handle per run key."""

    def __init__(self) -> None:
        self._handles: dict[str, RunHandle] = {}

    def register(self, handle: RunHandle) -> None:
        existing = self._handles.get(handle.key)
        if existing is not None and existing is not handle:
            raise ValueError(f"run key already registered: {handle.key}")
        self._handles[handle.key] = handle
        logger.debug("Run handle registered", key=handle.key, pid=handle.pid)

    def get(self, key: str) -> Optional[RunHandle]:
        return self._handles.get(key)

    def discard(self, key: str, handle: RunHandle) -> bool:
        """Remove ``handle`` only if it is still the one stored under ``key``."""
        if self._handles.get(key) is handle:
            del self._handles[key]
            return True
        return False

    def pop(self, key: str) -> Optional[RunHandle]:
        return self._handles.pop(key, None)

    def keys_for_card(self, card_id: str) -> list[str]:
        keys = [card_id, f"{card_id}{REVIEW_SUFFIX}"]
        return [k for k in keys if k in self._handles]

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._handles))


# ==========================================================================
# Process Tree Termination
# ==========================================================================

def kill_process_tree(pid: Optional[int], force: bool = False) -> None:
    """
    Signal an agent process and everything it spawned.

    Agents are started as session leaders, so on POSIX the process group
    id equals the pid. Windows has no process groups to signal; taskkill
    walks the tree instead and always kills hard.
    """
    if not pid or pid < 0:
        return

    if sys.platform == "win32":
        try:
            subprocess.Popen(
                ["taskkill", "/pid", str(pid), "/T", "/F"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("taskkill failed", pid=pid, error=str(e))
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    # The leader may have left its group; hit it directly too.
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    logger.info("Process tree signaled", pid=pid, signal=sig.name)
