"""Session lifecycle for sshmon.

One ``SessionController`` owns one attacker connection from admission to
teardown:

    Connecting -> Authenticating -> Interactive -> Closing -> Closed

It filters and admits the peer, accepts every password, builds the
session's private filesystem view and shell, decodes terminal input,
enforces the idle timeout and reports lifecycle events. Logging and
enrichment calls are handed to a background pool so a slow disk or lookup
only ever delays that side work, never the attacker's shell.
"""

from __future__ import annotations

import ipaddress
import logging
import random
import threading
import time
import uuid
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .command_handler import EXIT_SENTINEL, Response, ShellEmulator, is_known_command
from .events import (
    EVENT_AUTHENTICATION,
    EVENT_COMMAND,
    EVENT_CONNECTION,
    EVENT_DISCONNECT,
    EVENT_DOWNLOAD,
    EventLogger,
    get_background_executor,
)
from .filesystem import VirtualFilesystem, home_for
from .metrics import (
    OUTCOME_ERROR,
    OUTCOME_KNOWN,
    OUTCOME_UNKNOWN,
    RESULT_ACCEPTED,
    RESULT_REJECTED_CAPACITY,
    RESULT_REJECTED_FILTER,
    MetricsCollector,
)
from .profiles import Persona
from .registry import SessionRegistry
from .threat_intel import ThreatIntel
from .tty_handler import TTYHandler

LOGGER = logging.getLogger(__name__)

# Longest password fragment written to diagnostic logs.
MAX_LOGGED_PASSWORD = 20


class SessionStatus(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    INTERACTIVE = "interactive"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Session:
    """Mutable state of one attacker connection."""

    peer_ip: str
    peer_port: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start_time: float = field(default_factory=time.time)
    username: Optional[str] = None
    command_count: int = 0
    env: Dict[str, str] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)
    status: SessionStatus = SessionStatus.CONNECTING
    idle_deadline: Optional[float] = None
    intel: Optional[Dict[str, Any]] = None
    end_time: Optional[float] = None
    close_reason: Optional[str] = None

    @property
    def cwd(self) -> str:
        return self.env.get("PWD", "/")

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time


def is_loopback(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    mapped = getattr(addr, "ipv4_mapped", None)
    if mapped is not None:
        addr = mapped
    return addr.is_loopback


def _crlf(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


def _mask(password: Optional[str]) -> str:
    if password is None:
        return ""
    if len(password) > MAX_LOGGED_PASSWORD:
        return password[:MAX_LOGGED_PASSWORD] + "..."
    return password


class SessionController:
    """Drives a single session through its lifecycle."""

    def __init__(
        self,
        session: Session,
        *,
        persona: Persona,
        registry: SessionRegistry,
        events: Optional[EventLogger] = None,
        threat_intel: Optional[ThreatIntel] = None,
        metrics: Optional[MetricsCollector] = None,
        idle_timeout: float = 300.0,
        command_delay: float = 0.0,
        log_localhost: bool = False,
        rng: Optional[random.Random] = None,
        executor: Optional[Executor] = None,
    ):
        self.session = session
        self.persona = persona
        self.registry = registry
        self.events = events
        self.threat_intel = threat_intel
        self.metrics = metrics
        self.idle_timeout = idle_timeout
        self.command_delay = command_delay
        self.log_localhost = log_localhost
        self.rng = rng
        self._executor = executor

        self.channel: Any = None
        self.filesystem: Optional[VirtualFilesystem] = None
        self.shell: Optional[ShellEmulator] = None
        self.tty: Optional[TTYHandler] = None

        self._admitted = False
        self._closing = False
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._exec_lock = threading.Lock()
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()
        self._watchdog: Optional[threading.Thread] = None
        self._close_callbacks: List[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        executor = self._executor or get_background_executor()
        try:
            future = executor.submit(fn, *args, **kwargs)
        except RuntimeError as exc:
            LOGGER.debug("Background pool unavailable for session %s: %s", self.session.id, exc)
            return
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def _emit(self, event: str, **fields: Any) -> None:
        if self.events is None:
            return
        # Nothing follows the disconnect record.
        if self._closing and event != EVENT_DISCONNECT:
            return
        record = {
            "session_id": self.session.id,
            "peer_ip": self.session.peer_ip,
            "peer_port": self.session.peer_port,
        }
        if self.session.intel:
            record["intel"] = dict(self.session.intel)
        record.update(fields)
        self._submit(self.events.emit, event, **record)

    def _enrich(self) -> None:
        if self.threat_intel is None:
            return
        result = self.threat_intel.lookup(self.session.peer_ip)
        if result:
            self.session.intel = result
            LOGGER.info(
                "Peer %s enriched: %s, %s (%s)",
                self.session.peer_ip,
                result.get("city"),
                result.get("country"),
                result.get("asn"),
            )

    def wait_background(self, timeout: Optional[float] = None) -> bool:
        """Wait for this session's submitted side work. True if all finished."""
        with self._pending_lock:
            pending = list(self._pending)
        deadline = None if timeout is None else time.monotonic() + timeout
        for future in pending:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                future.result(timeout=remaining)
            except Exception as exc:
                LOGGER.debug("Background task for session %s did not finish: %s", self.session.id, exc)
                return False
        return True

    # ------------------------------------------------------------------
    # Admission and authentication
    # ------------------------------------------------------------------

    def open(self) -> bool:
        """Apply the peer filter and registry cap. True if admitted."""
        ip = self.session.peer_ip
        if not self.log_localhost and is_loopback(ip):
            LOGGER.info("Skipping loopback connection from %s", ip)
            self._reject(RESULT_REJECTED_FILTER)
            return False

        admitted, reason = self.registry.try_admit(self)
        if not admitted:
            LOGGER.warning("Connection from %s:%s rejected (%s)", ip, self.session.peer_port, reason)
            self._reject(RESULT_REJECTED_CAPACITY)
            return False

        self._admitted = True
        self.session.status = SessionStatus.AUTHENTICATING
        if self.metrics is not None:
            self.metrics.record_connection(RESULT_ACCEPTED)
            self.metrics.record_session_start()
        LOGGER.info("New connection from %s:%s (session %s)", ip, self.session.peer_port, self.session.id)

        self._emit(EVENT_CONNECTION)
        if self.threat_intel is not None:
            self._submit(self._enrich)
        self.touch()
        self._start_watchdog()
        return True

    def _reject(self, result: str) -> None:
        self.session.status = SessionStatus.CLOSED
        self.session.end_time = time.time()
        self.session.close_reason = result
        self._closed.set()
        if self.metrics is not None:
            self.metrics.record_connection(result)

    def on_auth(self, method: str, username: str, password: Optional[str] = None) -> bool:
        """Record an authentication attempt. Passwords are always accepted."""
        self.touch()
        accepted = method == "password"
        LOGGER.info(
            "Auth attempt from %s: %s for '%s' (%s)",
            self.session.peer_ip,
            method,
            username,
            "accepted" if accepted else "refused",
        )
        if password is not None:
            LOGGER.debug("Password tried by %s: '%s'", self.session.peer_ip, _mask(password))
        if accepted:
            self.session.username = username
        if self.metrics is not None:
            self.metrics.record_auth_attempt(method)
        self._emit(
            EVENT_AUTHENTICATION,
            method=method,
            username=username,
            password=password,
            accepted=accepted,
        )
        return accepted

    def on_authenticated(self, username: Optional[str] = None) -> None:
        """Build the session's filesystem, shell and terminal decoder."""
        if self.closed:
            return
        if username:
            self.session.username = username
        user = self.session.username or self.persona.default_username
        self.session.username = user
        self.filesystem = VirtualFilesystem(self.persona, home=home_for(self.persona, user))
        self.shell = ShellEmulator(
            self.persona,
            self.filesystem,
            self.session,
            username=user,
            rng=self.rng,
            delay=self.command_delay,
            wait=self._closed.wait,
            on_download=self._on_download,
        )
        self.tty = TTYHandler()
        self.session.status = SessionStatus.INTERACTIVE
        LOGGER.debug("Session %s interactive as %s", self.session.id, user)

    # ------------------------------------------------------------------
    # Channel I/O
    # ------------------------------------------------------------------

    def _send(self, text: str) -> None:
        channel = self.channel
        if channel is None or not text or self.closed:
            return
        try:
            channel.send(text.encode("utf-8"))
        except Exception as exc:
            LOGGER.debug("Send to %s failed: %s", self.session.peer_ip, exc)
            self.close("transport-error")

    def attach(self, channel: Any) -> None:
        """Start an interactive shell on ``channel``: banner, then prompt."""
        if self.shell is None:
            self.on_authenticated()
        self.channel = channel
        self._send(_crlf(self.shell.banner()))
        self._send(self.shell.prompt())

    def feed(self, data: bytes) -> bool:
        """Process a received chunk. Returns False once the session is closed."""
        if self.closed or self.tty is None:
            return False
        self.touch()
        for result in self.tty.feed(data):
            if result.output:
                self._send(result.output)
            if result.logout:
                self.close("logout")
                return False
            if result.command is not None:
                response = self.execute(result.command)
                if self.closed:
                    return False
                if response is EXIT_SENTINEL:
                    self._send("logout\r\n")
                    self.close("exit")
                    return False
                self._send(_crlf(response))
                self._send(self.shell.prompt())
            elif result.needs_prompt:
                self._send(self.shell.prompt())
        return not self.closed

    def execute(self, command: str) -> Response:
        """Run one submitted line at the per-command fault boundary."""
        return self._execute(command)[0]

    def _execute(self, command: str) -> Tuple[Response, bool]:
        if self.shell is None:
            self.on_authenticated()
        with self._exec_lock:
            self.session.command_count += 1
            outcome = OUTCOME_KNOWN if is_known_command(command) else OUTCOME_UNKNOWN
            failed = False
            try:
                response = self.shell.execute(command)
            except Exception:
                LOGGER.exception(
                    "Command failed in session %s from %s: %r",
                    self.session.id,
                    self.session.peer_ip,
                    command,
                )
                name = command.split()[0] if command.split() else command
                response = f"bash: {name}: Input/output error\n"
                outcome = OUTCOME_ERROR
                failed = True

        if self.closed:
            return response, failed
        output = "" if response is EXIT_SENTINEL else response
        self._emit(EVENT_COMMAND, input=command, output=output)
        if self.metrics is not None:
            self.metrics.record_command(outcome)
        return response, failed

    def run_exec(self, command: str, channel: Any) -> int:
        """Handle a one-shot exec request and end the channel.

        Returns the exit status sent to the client.
        """
        self.channel = channel
        self.touch()
        LOGGER.info("Exec request from %s: %r", self.session.peer_ip, command)
        response, failed = self._execute(command)
        if response is not EXIT_SENTINEL and response and not self.closed:
            self._send(response if response.endswith("\n") else response + "\n")
        status = 1 if failed else 0
        if not self.closed:
            try:
                channel.send_exit_status(status)
            except Exception as exc:
                LOGGER.debug("Could not send exit status to %s: %s", self.session.peer_ip, exc)
        self.close("exec-complete")
        return status

    def _on_download(self, url: str, tool: str) -> None:
        LOGGER.warning(
            "Malware download attempt via %s from %s (session %s): %s",
            tool,
            self.session.peer_ip,
            self.session.id,
            url,
        )
        if self.metrics is not None:
            self.metrics.record_download(tool)
        self._emit(EVENT_DOWNLOAD, url=url, tool=tool, username=self.session.username)

    # ------------------------------------------------------------------
    # Idle timeout
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Push the idle deadline forward."""
        if self.idle_timeout > 0:
            self.session.idle_deadline = time.monotonic() + self.idle_timeout

    def _start_watchdog(self) -> None:
        if self.idle_timeout <= 0:
            return
        self._watchdog = threading.Thread(
            target=self._watch_idle,
            daemon=True,
            name=f"sshmon-idle-{self.session.id[:8]}",
        )
        self._watchdog.start()

    def _watch_idle(self) -> None:
        while not self.closed:
            deadline = self.session.idle_deadline or time.monotonic()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LOGGER.info(
                    "Session %s from %s idle for %.0fs, closing",
                    self.session.id,
                    self.session.peer_ip,
                    self.idle_timeout,
                )
                self.close("idle-timeout")
                return
            if self._closed.wait(remaining):
                return

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def close(self, reason: str = "disconnect") -> bool:
        """Close the session. Only the first call has any effect."""
        with self._close_lock:
            if self._closing:
                return False
            self._closing = True
            self.session.status = SessionStatus.CLOSING
        self._closed.set()

        session = self.session
        session.end_time = time.time()
        session.close_reason = reason

        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as exc:
                LOGGER.debug("Error closing channel for %s: %s", session.peer_ip, exc)

        if self._admitted:
            self.registry.remove(session.id)
            duration = round(session.duration, 2)
            self._emit(
                EVENT_DISCONNECT,
                reason=reason,
                duration=duration,
                command_count=session.command_count,
            )
            if self.metrics is not None:
                self.metrics.record_session_end(duration)
            LOGGER.info(
                "Session with %s ended (%s, duration: %.1fs, commands: %d)",
                session.peer_ip,
                reason,
                duration,
                session.command_count,
            )

        if self.filesystem is not None:
            self.filesystem.discard()
        if self.tty is not None:
            self.tty.reset()

        for callback in self._close_callbacks:
            try:
                callback()
            except Exception as exc:
                LOGGER.debug("Close callback failed for session %s: %s", session.id, exc)

        session.status = SessionStatus.CLOSED
        return True
