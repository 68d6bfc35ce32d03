"""Process-wide registry of active sessions for sshmon.

Bounds resource usage under many concurrent (and possibly idle) attackers:
- Global concurrency cap on active sessions
- Optional cap on concurrent sessions from a single peer address
- Enumeration of live sessions for graceful shutdown

Admission check and insertion happen under one lock, so the number of
registered sessions can never exceed the cap even when connections race.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .session import SessionController

LOGGER = logging.getLogger(__name__)

REJECT_CAPACITY = "capacity"
REJECT_PEER_LIMIT = "peer_limit"


class SessionRegistry:
    """Bounded collection of live ``SessionController`` objects."""

    def __init__(self, max_sessions: int = 50, max_sessions_per_ip: int = 0):
        """Initialize the registry.

        Args:
            max_sessions: Maximum concurrent sessions across all peers
            max_sessions_per_ip: Maximum concurrent sessions per peer address
                (0 disables the per-peer limit)
        """
        self.max_sessions = max_sessions
        self.max_sessions_per_ip = max_sessions_per_ip

        self._sessions: Dict[str, "SessionController"] = {}
        self._per_ip: Counter = Counter()
        self._lock = threading.Lock()
        self._drained = threading.Condition(self._lock)

    def try_admit(self, controller: "SessionController") -> Tuple[bool, str]:
        """Atomically check the caps and register ``controller``.

        Returns:
            Tuple of (admitted, reason). ``reason`` is empty when admitted and
            one of ``REJECT_CAPACITY`` / ``REJECT_PEER_LIMIT`` otherwise.
        """
        session = controller.session
        ip = session.peer_ip
        with self._lock:
            if len(self._sessions) >= self.max_sessions:
                LOGGER.warning(
                    "Session cap reached (%d/%d), rejecting %s",
                    len(self._sessions),
                    self.max_sessions,
                    ip,
                )
                return False, REJECT_CAPACITY

            if self.max_sessions_per_ip and self._per_ip[ip] >= self.max_sessions_per_ip:
                LOGGER.warning(
                    "Peer %s already has %d session(s), rejecting",
                    ip,
                    self._per_ip[ip],
                )
                return False, REJECT_PEER_LIMIT

            self._sessions[session.id] = controller
            self._per_ip[ip] += 1
            LOGGER.debug(
                "Session %s from %s admitted (%d from this IP, %d total)",
                session.id,
                ip,
                self._per_ip[ip],
                len(self._sessions),
            )
            return True, ""

    def remove(self, session_id: str) -> bool:
        """Unregister a session. Returns False if it was not registered."""
        with self._lock:
            controller = self._sessions.pop(session_id, None)
            if controller is None:
                return False
            ip = controller.session.peer_ip
            self._per_ip[ip] -= 1
            if self._per_ip[ip] <= 0:
                del self._per_ip[ip]
            LOGGER.debug(
                "Session %s removed (%d remaining)", session_id, len(self._sessions)
            )
            self._drained.notify_all()
            return True

    def get(self, session_id: str) -> Optional["SessionController"]:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self) -> List["SessionController"]:
        """Snapshot of the currently registered controllers."""
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_stats(self) -> Dict[str, int]:
        """Get current registry statistics."""
        with self._lock:
            return {
                "active_sessions": len(self._sessions),
                "distinct_peers": len(self._per_ip),
                "max_sessions": self.max_sessions,
            }

    def shutdown(self, grace: float = 5.0) -> int:
        """Close every active session and wait for the registry to drain.

        Each session's duration is logged before it is closed. Waits at most
        ``grace`` seconds for sessions to unregister.

        Returns:
            Number of sessions still registered when the grace period ended.
        """
        now = time.time()
        for controller in self.active():
            session = controller.session
            LOGGER.info(
                "Closing active session %s from %s (duration: %.1fs)",
                session.id,
                session.peer_ip,
                now - session.start_time,
            )
            controller.close("shutdown")

        deadline = time.monotonic() + grace
        with self._lock:
            while self._sessions:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._drained.wait(remaining)
            left = len(self._sessions)
        if left:
            LOGGER.warning("%d session(s) still open after %.1fs grace period", left, grace)
        return left


# Global registry instance
_registry: Optional[SessionRegistry] = None
_registry_lock = threading.Lock()


def get_session_registry() -> SessionRegistry:
    """Get or create the global session registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            # Import config here to avoid circular dependency
            from .config import get_config

            session_config = get_config().session
            _registry = SessionRegistry(
                max_sessions=session_config.max_sessions,
                max_sessions_per_ip=session_config.max_sessions_per_ip,
            )
        return _registry
