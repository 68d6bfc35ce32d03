"""Paramiko-based SSH server interface for sshmon.

This module defines the SSHServer class that accepts any username/password,
refuses public keys, and reports every attempt to the owning session
controller. Channel requests (pty, shell, exec) are recorded so the
connection handler knows which kind of session the client asked for.
"""

from __future__ import annotations

import logging
import socket
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

import paramiko

if TYPE_CHECKING:
    from .session import SessionController

LOGGER = logging.getLogger(__name__)


def get_or_create_host_key(path: Path) -> paramiko.PKey:
    """Load the SSH host key from disk, generating it if missing.

    A persistent key keeps the honeypot's fingerprint stable between runs.
    """
    path = Path(path)
    if path.exists():
        try:
            return paramiko.RSAKey(filename=str(path))
        except (paramiko.SSHException, OSError) as exc:
            LOGGER.error("Failed to load host key %s, regenerating: %s", path, exc)

    key = paramiko.RSAKey.generate(3072)
    path.parent.mkdir(parents=True, exist_ok=True)
    key.write_private_key_file(str(path))
    LOGGER.info("Generated new RSA host key at %s", path)
    return key


class SSHServer(paramiko.ServerInterface):
    """Paramiko ServerInterface that accepts all passwords.

    Authentication is intentionally trivial because this is a honeypot.
    """

    def __init__(self, controller: "SessionController") -> None:
        super().__init__()
        self.controller = controller
        self.pty_info: Dict[str, Any] = {}
        self.exec_command: Optional[str] = None
        self.username: Optional[str] = None
        self.shell_requested = threading.Event()
        self.exec_requested = threading.Event()

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_auth_password(self, username: str, password: str) -> int:
        self.controller.on_auth("password", username, password)
        self.username = username
        return paramiko.AUTH_SUCCESSFUL

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        """Refuse public keys so the client falls back to a password."""
        try:
            key_fp = key.get_fingerprint().hex()
        except (AttributeError, ValueError):
            key_fp = "unknown"
        LOGGER.debug("Public key offered for %s: %s", username, key_fp[:16])
        self.controller.on_auth("publickey", username)
        return paramiko.AUTH_FAILED

    def get_allowed_auths(self, username: str) -> str:
        return "password,publickey"

    def check_channel_pty_request(
        self,
        channel: paramiko.Channel,
        term: bytes,
        width: int,
        height: int,
        pixelwidth: int,
        pixelheight: int,
        modes: bytes,
    ) -> bool:
        term_str = (
            term.decode("utf-8", errors="replace")
            if isinstance(term, bytes)
            else str(term)
        )
        self.pty_info = {"term": term_str, "width": width, "height": height}
        LOGGER.debug("PTY request: term=%s size=%dx%d", term_str, width, height)
        return True

    def check_channel_shell_request(self, channel: paramiko.Channel) -> bool:
        self.shell_requested.set()
        return True

    def check_channel_exec_request(
        self, channel: paramiko.Channel, command: bytes
    ) -> bool:
        """Accept exec requests and capture the command."""
        if isinstance(command, bytes):
            self.exec_command = command.decode("utf-8", errors="replace")
        else:
            self.exec_command = str(command)
        LOGGER.debug("Exec request: %s", self.exec_command)
        self.exec_requested.set()
        return True

    def wait_for_request(self, timeout: float) -> Optional[str]:
        """Block until a shell or exec request arrives.

        Returns ``"shell"``, ``"exec"`` or None on timeout.
        """
        waited = 0.0
        step = 0.1
        while waited < timeout:
            if self.exec_requested.is_set():
                return "exec"
            if self.shell_requested.is_set():
                return "shell"
            if self.controller.closed:
                return None
            self.shell_requested.wait(step)
            waited += step
        if self.exec_requested.is_set():
            return "exec"
        return "shell" if self.shell_requested.is_set() else None


def create_listening_socket(host: str, port: int) -> socket.socket:
    """Create, bind, and listen on a TCP socket for SSH.

    Caller is responsible for closing the socket.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    sock.bind((host, port))
    sock.listen(100)
    return sock


__all__ = [
    "SSHServer",
    "get_or_create_host_key",
    "create_listening_socket",
]
