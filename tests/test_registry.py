"""Tests for the session registry."""

import threading

import pytest

from sshmon.registry import REJECT_CAPACITY, REJECT_PEER_LIMIT, SessionRegistry
from sshmon.session import Session


class StubController:
    """Minimal controller: the registry only needs ``session`` and ``close``."""

    def __init__(self, registry, peer_ip="198.51.100.7"):
        self.registry = registry
        self.session = Session(peer_ip=peer_ip, peer_port=50000)
        self.closed_with = None

    def close(self, reason="disconnect"):
        self.closed_with = reason
        self.registry.remove(self.session.id)


class TestSessionRegistry:
    """Tests for SessionRegistry class."""

    def test_admit_first_session(self):
        registry = SessionRegistry(max_sessions=2)
        admitted, reason = registry.try_admit(StubController(registry))
        assert admitted is True
        assert reason == ""
        assert len(registry) == 1

    def test_admit_and_remove(self):
        registry = SessionRegistry(max_sessions=2)
        controller = StubController(registry)
        registry.try_admit(controller)
        assert registry.get(controller.session.id) is controller
        assert registry.remove(controller.session.id) is True
        assert registry.remove(controller.session.id) is False
        assert registry.get_stats()["active_sessions"] == 0

    def test_global_cap(self):
        registry = SessionRegistry(max_sessions=2)
        for n in range(2):
            assert registry.try_admit(StubController(registry, f"198.51.100.{n}"))[0]
        admitted, reason = registry.try_admit(StubController(registry, "198.51.100.9"))
        assert admitted is False
        assert reason == REJECT_CAPACITY

    def test_per_ip_limit(self):
        registry = SessionRegistry(max_sessions=10, max_sessions_per_ip=1)
        assert registry.try_admit(StubController(registry, "198.51.100.1"))[0]
        admitted, reason = registry.try_admit(StubController(registry, "198.51.100.1"))
        assert admitted is False
        assert reason == REJECT_PEER_LIMIT
        assert registry.try_admit(StubController(registry, "198.51.100.2"))[0]

    def test_removal_frees_a_slot(self):
        registry = SessionRegistry(max_sessions=1)
        first = StubController(registry)
        registry.try_admit(first)
        assert not registry.try_admit(StubController(registry))[0]
        registry.remove(first.session.id)
        assert registry.try_admit(StubController(registry))[0]

    def test_concurrent_admission_never_exceeds_cap(self):
        """Cap + 1 racing connections yield exactly one rejection."""
        cap = 20
        registry = SessionRegistry(max_sessions=cap)
        barrier = threading.Barrier(cap + 1)
        results = []
        lock = threading.Lock()

        def connect(n):
            controller = StubController(registry, f"203.0.113.{n}")
            barrier.wait()
            outcome = registry.try_admit(controller)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=connect, args=(n,)) for n in range(cap + 1)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert sum(1 for admitted, _ in results if not admitted) == 1
        assert len(registry) == cap

    def test_get_stats(self):
        registry = SessionRegistry(max_sessions=5)
        registry.try_admit(StubController(registry, "198.51.100.1"))
        registry.try_admit(StubController(registry, "198.51.100.1"))
        registry.try_admit(StubController(registry, "198.51.100.2"))
        assert registry.get_stats() == {
            "active_sessions": 3,
            "distinct_peers": 2,
            "max_sessions": 5,
        }


class TestShutdown:
    """Tests for graceful shutdown."""

    def test_shutdown_closes_every_session(self):
        registry = SessionRegistry(max_sessions=5)
        controllers = [StubController(registry, f"198.51.100.{n}") for n in range(3)]
        for controller in controllers:
            registry.try_admit(controller)
        assert registry.shutdown(grace=1.0) == 0
        assert all(c.closed_with == "shutdown" for c in controllers)
        assert registry.active() == []

    def test_shutdown_reports_stragglers(self):
        registry = SessionRegistry(max_sessions=5)

        class Stubborn(StubController):
            def close(self, reason="disconnect"):
                self.closed_with = reason

        registry.try_admit(Stubborn(registry))
        assert registry.shutdown(grace=0.05) == 1

    @pytest.mark.parametrize("count", [0, 1])
    def test_shutdown_empty_or_single(self, count):
        registry = SessionRegistry(max_sessions=5)
        for _ in range(count):
            registry.try_admit(StubController(registry))
        assert registry.shutdown(grace=0.1) == 0
