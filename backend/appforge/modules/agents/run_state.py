"""
Agent run state - owned by exactly one agent loop invocation

Holds the files written through the tool surface and the completion summary.
The summary latch is a Running -> Terminated transition guarded by a lock, so
only the first completion ever wins even if tool callbacks race.
"""

import threading
from enum import Enum
from typing import Dict, Optional


class RunPhase(str, Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


class AgentRunState:
    """Files and completion summary accumulated during one run"""

    def __init__(self):
        self._lock = threading.Lock()
        self._files: Dict[str, str] = {}
        self._summary: Optional[str] = None
        self._phase = RunPhase.RUNNING
        self.iterations = 0

    @property
    def files(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._files)

    @property
    def summary(self) -> Optional[str]:
        return self._summary

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def is_terminated(self) -> bool:
        return self._phase == RunPhase.TERMINATED

    def record_file(self, path: str, content: str) -> None:
        """Last write per path wins; no merging of contents"""
        with self._lock:
            self._files[path] = content

    def complete(self, summary: str) -> bool:
        """
        Latch the completion summary.

        Returns True only for the call that performed the transition;
        every later call is a no-op returning False.
        """
        with self._lock:
            if self._phase != RunPhase.RUNNING:
                return False
            self._summary = summary
            self._phase = RunPhase.TERMINATED
            return True

    def terminate(self) -> bool:
        """End the run without a summary (iteration budget spent or model failure)"""
        with self._lock:
            if self._phase != RunPhase.RUNNING:
                return False
            self._phase = RunPhase.TERMINATED
            return True

    def __repr__(self):
        return (
            f"<AgentRunState {self._phase.value} files={len(self._files)} "
            f"summary={'yes' if self._summary else 'no'}>"
        )
