"""Main SSH honeypot server for sshmon.

This module wires together:
- SSH transport (Paramiko)
- Session lifecycle (admission, emulated shell, idle timeout)
- Event logging, metrics and IP enrichment
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import List, Optional

import paramiko

from .config import Config, get_config
from .events import EventLogger, get_event_logger, shutdown_background_executor
from .metrics import MetricsCollector
from .profiles import Persona, get_persona
from .registry import SessionRegistry, get_session_registry
from .session import Session, SessionController
from .ssh_interface import SSHServer, create_listening_socket, get_or_create_host_key
from .threat_intel import ThreatIntel, get_threat_intel

LOGGER = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 60
CHANNEL_TIMEOUT = 20
REQUEST_TIMEOUT = 10


class HoneypotServer:
    """Accepts SSH connections and runs one session per connection."""

    def __init__(
        self,
        config: Optional[Config] = None,
        persona: Optional[Persona] = None,
        registry: Optional[SessionRegistry] = None,
        events: Optional[EventLogger] = None,
        threat_intel: Optional[ThreatIntel] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or get_config()
        self.host = self.config.ssh.host
        self.port = self.config.ssh.port
        self.persona = persona or get_persona(self.config.emulation.profile)
        self.registry = registry or get_session_registry()
        self.events = events or get_event_logger()
        self.threat_intel = threat_intel or get_threat_intel()
        self.metrics = metrics

        self._socket: Optional[socket.socket] = None
        self._host_key: Optional[paramiko.PKey] = None
        self._running = False
        self._stopped = threading.Event()
        self._threads: List[threading.Thread] = []

    def new_controller(self, peer_ip: str, peer_port: int) -> SessionController:
        session_cfg = self.config.session
        return SessionController(
            Session(peer_ip=peer_ip, peer_port=peer_port),
            persona=self.persona,
            registry=self.registry,
            events=self.events,
            threat_intel=self.threat_intel,
            metrics=self.metrics,
            idle_timeout=session_cfg.idle_timeout,
            command_delay=session_cfg.command_delay,
            log_localhost=session_cfg.log_localhost,
        )

    def run(self) -> None:
        """Start listening and block until ``shutdown`` is called."""
        self._host_key = get_or_create_host_key(self.config.ssh.host_key_path)
        try:
            self._socket = create_listening_socket(self.host, self.port)
        except OSError as exc:
            LOGGER.error("Failed to bind to %s:%d - %s", self.host, self.port, exc)
            raise

        self._running = True
        LOGGER.info(
            "sshmon listening on %s:%d as %s (%s)",
            self.host,
            self.port,
            self.persona.hostname,
            self.persona.name,
        )

        sock = self._socket
        sock.settimeout(1.0)
        try:
            while self._running:
                try:
                    client, addr = sock.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if not self._running:
                        break
                    raise
                thread = threading.Thread(
                    target=self._handle_client,
                    args=(client, addr),
                    daemon=True,
                    name=f"sshmon-conn-{addr[0]}:{addr[1]}",
                )
                thread.start()
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
        finally:
            self.shutdown()

    def _handle_client(self, client: socket.socket, addr) -> None:
        peer_ip, peer_port = addr[0], addr[1]
        try:
            client.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            client.settimeout(HANDSHAKE_TIMEOUT)
        except OSError as exc:
            LOGGER.warning("Failed to configure client socket: %s", exc)

        controller = self.new_controller(peer_ip, peer_port)
        if not controller.open():
            client.close()
            return

        transport = paramiko.Transport(client)
        controller.add_close_callback(transport.close)
        try:
            transport.local_version = self.config.ssh.banner
            transport.set_keepalive(30)
            transport.add_server_key(self._host_key)
            server = SSHServer(controller)

            try:
                transport.start_server(server=server)
            except (paramiko.SSHException, EOFError, OSError) as exc:
                LOGGER.info("SSH negotiation failed with %s:%s: %s", peer_ip, peer_port, exc)
                return
            LOGGER.debug("Client %s version: %s", peer_ip, transport.remote_version)

            chan = transport.accept(CHANNEL_TIMEOUT)
            if chan is None:
                LOGGER.info("No channel from %s:%s within %ds", peer_ip, peer_port, CHANNEL_TIMEOUT)
                return

            controller.on_authenticated(server.username)
            kind = server.wait_for_request(REQUEST_TIMEOUT)
            if kind is None:
                LOGGER.info("No shell or exec request from %s:%s", peer_ip, peer_port)
                return
            if kind == "exec":
                controller.run_exec(server.exec_command or "", chan)
                return

            controller.attach(chan)
            while not controller.closed:
                data = chan.recv(1024)
                if not data:
                    break
                if not controller.feed(data):
                    break
        except Exception as exc:
            if not controller.closed:
                LOGGER.error("Error in session with %s: %s", peer_ip, exc)
        finally:
            controller.close("disconnect")
            transport.close()
            controller.wait_background(timeout=self.config.session.shutdown_grace)

    def shutdown(self) -> None:
        """Stop accepting, close live sessions and flush pending events."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._running = False
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError as exc:
                LOGGER.debug("Error closing listening socket: %s", exc)
            self._socket = None

        left = self.registry.shutdown(self.config.session.shutdown_grace)
        for thread in self._threads:
            thread.join(timeout=1.0)
        shutdown_background_executor(wait=True)
        self.events.close()
        LOGGER.info("sshmon server stopped (%d session(s) forced)", left)
