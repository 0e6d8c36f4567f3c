"""Unit tests for the project lock protocol."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import httpx
import pytest

from conftest import ALICE_TOKEN, BOB_TOKEN, INSTANCE
from pyspeleodb.exceptions import (
    SpeleoDBAuthenticationError,
    SpeleoDBNetworkError,
    SpeleoDBNotAuthenticatedError,
    SpeleoDBServerError,
)
from pyspeleodb.locks import LeaseRefresher, ProjectLockProtocol, project_id_of
from pyspeleodb.models import Project
from pyspeleodb.retry import RetryOrchestrator
from pyspeleodb.session import SessionManager


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self):
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def make_protocol(server, token, clock=None, **retry_kwargs):
    sessions = SessionManager(transport=server.transport)
    sessions.authenticate(oauth_token=token, instance=INSTANCE)
    retry = RetryOrchestrator(sleep=Mock(), **retry_kwargs)
    return ProjectLockProtocol(
        sessions,
        retry,
        lease_duration=timedelta(minutes=15),
        clock=clock or FakeClock(),
    )


class TestProjectId:
    """Tests for project_id_of."""

    def test_accepts_project_and_string(self):
        """Test both project references."""
        assert project_id_of("p1") == "p1"
        assert project_id_of(Project(id="p2", name="Cave")) == "p2"

    def test_rejects_blank(self):
        """Test that blank ids are refused."""
        with pytest.raises(ValueError):
            project_id_of("  ")


class TestAcquireOrRefresh:
    """Tests for acquire_or_refresh."""

    def test_acquire_free_project(self, server, clock):
        """Test acquiring an unlocked project."""
        locks = make_protocol(server, ALICE_TOKEN, clock)

        assert locks.acquire_or_refresh("p1") is True

        lock = locks.get_lock("p1")
        assert lock is not None
        assert lock.held_by_this_client
        assert lock.acquired_at == clock.now
        assert lock.lease_expires_at == clock.now + timedelta(minutes=15)
        assert server.lock_holders["p1"] == "alice@example.com"
        assert server.requests[-1].url.path == "/api/v1/projects/p1/acquire/"
        assert server.requests[-1].method == "POST"

    def test_refresh_extends_lease(self, server, clock):
        """Test that refreshing keeps acquired_at and moves the expiry."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        first = locks.get_lock("p1")

        clock.advance(minutes=5)
        assert locks.acquire_or_refresh("p1") is True

        second = locks.get_lock("p1")
        assert second.acquired_at == first.acquired_at
        assert second.lease_expires_at == clock.now + timedelta(minutes=15)
        assert second.lease_expires_at > first.lease_expires_at

    def test_refresh_is_idempotent(self, server, clock):
        """Test that repeated refreshes give the same state without time passing."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        before = locks.get_lock("p1")

        assert locks.acquire_or_refresh("p1") is True
        assert locks.acquire_or_refresh("p1") is True

        assert locks.get_lock("p1") == before
        assert server.lock_holders == {"p1": "alice@example.com"}

    def test_conflict_returns_false(self, server, clock):
        """Test that another holder yields False, not an exception."""
        alice = make_protocol(server, ALICE_TOKEN, clock)
        bob = make_protocol(server, BOB_TOKEN, clock)

        assert alice.acquire_or_refresh("p1") is True
        assert bob.acquire_or_refresh("p1") is False
        assert bob.get_lock("p1") is None
        assert server.lock_holders["p1"] == "alice@example.com"

    def test_conflict_is_not_retried(self, server, clock):
        """Test that a 409 is answered after a single request."""
        server.lock_holders["p1"] = "bob@example.com"
        locks = make_protocol(server, ALICE_TOKEN, clock)
        sent = len(server.requests)

        assert locks.acquire_or_refresh("p1") is False
        assert len(server.requests) == sent + 1

    def test_lost_lock_is_forgotten(self, server, clock):
        """Test that a refused refresh drops the local lock."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")

        # An admin force-released the lock and bob took it
        server.lock_holders["p1"] = "bob@example.com"
        assert locks.acquire_or_refresh("p1") is False
        assert not locks.is_held("p1")

    def test_server_error_is_retried(self, server, clock):
        """Test that 5xx answers are retried before succeeding."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        server.failures = [503, 500]

        assert locks.acquire_or_refresh("p1") is True
        assert server.paths().count("/api/v1/projects/p1/acquire/") == 3

    def test_server_error_surfaces_after_retries(self, server, clock):
        """Test that persistent 5xx raises the last server error."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        server.failures = [500, 502, 503]

        with pytest.raises(SpeleoDBServerError) as exc_info:
            locks.acquire_or_refresh("p1")
        assert exc_info.value.status_code == 503

    def test_network_error_surfaces(self, server, clock):
        """Test that a permanently unreachable server raises a network error."""
        locks = make_protocol(server, ALICE_TOKEN, clock, max_attempts=2)
        request = httpx.Request("POST", "https://speleodb.test/")
        server.failures = [httpx.ConnectError("refused", request=request)] * 2

        with pytest.raises(SpeleoDBNetworkError):
            locks.acquire_or_refresh("p1")

    def test_unauthorized_raises(self, server, clock):
        """Test that a revoked token raises instead of returning False."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        server.users["alice@example.com"] = ("secret", "d" * 40)

        with pytest.raises(SpeleoDBAuthenticationError):
            locks.acquire_or_refresh("p1")

    def test_logged_out_makes_no_request(self, server):
        """Test the local authentication precondition."""
        locks = ProjectLockProtocol(SessionManager(transport=server.transport))

        with pytest.raises(SpeleoDBNotAuthenticatedError):
            locks.acquire_or_refresh("p1")
        with pytest.raises(SpeleoDBNotAuthenticatedError):
            locks.release("p1")
        assert server.requests == []

    def test_expired_lease_is_not_held(self, server, clock):
        """Test that the local lock lapses after the lease."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")

        clock.advance(minutes=15)
        assert locks.get_lock("p1") is None
        assert locks.held_locks() == []

    def test_reacquire_after_expiry_starts_new_lock(self, server, clock):
        """Test that acquiring after expiry resets acquired_at."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        clock.advance(minutes=20)

        assert locks.acquire_or_refresh("p1") is True
        assert locks.get_lock("p1").acquired_at == clock.now


class TestRelease:
    """Tests for release."""

    def test_release_held_lock(self, server, clock):
        """Test releasing a lock held by this client."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")

        assert locks.release("p1") is True
        assert "p1" not in server.lock_holders
        assert locks.get_lock("p1") is None

    def test_release_without_lock_sends_nothing(self, server, clock):
        """Test that releasing an unheld lock never reaches the server."""
        server.lock_holders["p1"] = "bob@example.com"
        locks = make_protocol(server, ALICE_TOKEN, clock)
        sent = len(server.requests)

        assert locks.release("p1") is False
        assert len(server.requests) == sent
        assert server.lock_holders["p1"] == "bob@example.com"

    def test_release_refused_by_server(self, server, clock):
        """Test a release the server refuses."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        server.lock_holders["p1"] = "bob@example.com"

        assert locks.release("p1") is False
        assert not locks.is_held("p1")
        assert server.lock_holders["p1"] == "bob@example.com"

    def test_release_after_lease_estimate_frees_server_lock(self, server, clock):
        """Test that a lock past its local lease is still released on the server."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        clock.advance(hours=1)

        assert not locks.is_held("p1")
        assert locks.is_tracked("p1")
        assert locks.release("p1") is True
        assert "p1" not in server.lock_holders
        assert not locks.is_tracked("p1")

    def test_release_after_lease_lost_to_other_user(self, server, clock):
        """Test that a lock taken over by someone else is left alone."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        clock.advance(hours=1)
        server.lock_holders["p1"] = "bob@example.com"

        assert locks.release("p1") is False
        assert server.lock_holders["p1"] == "bob@example.com"
        assert server.paths()[-1] == "/api/v1/projects/p1/release/"
        assert not locks.is_tracked("p1")

    def test_release_twice_sends_once(self, server, clock):
        """Test that a released lock is not released again."""
        locks = make_protocol(server, ALICE_TOKEN, clock)
        locks.acquire_or_refresh("p1")
        assert locks.release("p1") is True
        sent = len(server.requests)

        assert locks.release("p1") is False
        assert len(server.requests) == sent


class TestMutualExclusion:
    """Concurrent acquisition against a single-holder server."""

    def test_exactly_one_winner(self, server):
        """Test that at most one of many racing clients gets the lock."""
        protocols = [
            make_protocol(server, ALICE_TOKEN if i % 2 else BOB_TOKEN)
            for i in range(2)
        ]
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(2)

        def race(protocol):
            barrier.wait()
            held = protocol.acquire_or_refresh("p2")
            with results_lock:
                results.append((protocol, held))

        threads = [threading.Thread(target=race, args=(p,)) for p in protocols]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [protocol for protocol, held in results if held]
        assert len(winners) == 1
        assert sum(1 for p in protocols if p.is_held("p2")) == 1

    def test_lock_passes_after_release(self, server):
        """Test that the loser can acquire once the winner releases."""
        alice = make_protocol(server, ALICE_TOKEN)
        bob = make_protocol(server, BOB_TOKEN)

        assert alice.acquire_or_refresh("p1")
        assert not bob.acquire_or_refresh("p1")
        assert alice.release("p1")
        assert bob.acquire_or_refresh("p1")
        assert not alice.acquire_or_refresh("p1")


class TestLeaseRefresher:
    """Tests for the background lease refresher."""

    def test_refreshes_periodically(self, server):
        """Test that the refresher keeps calling acquire."""
        locks = make_protocol(server, ALICE_TOKEN)
        locks.acquire_or_refresh("p1")

        with LeaseRefresher(locks, "p1", interval=0.05) as refresher:
            deadline = time.monotonic() + 5
            while (
                server.paths().count("/api/v1/projects/p1/acquire/") < 3
                and time.monotonic() < deadline
            ):
                time.sleep(0.01)
            assert refresher.is_running

        assert not refresher.is_running
        assert server.paths().count("/api/v1/projects/p1/acquire/") >= 3

    def test_reports_lost_lock(self, server):
        """Test that on_lost is called and the thread stops."""
        locks = make_protocol(server, ALICE_TOKEN)
        locks.acquire_or_refresh("p1")
        server.lock_holders["p1"] = "bob@example.com"
        lost = threading.Event()
        on_lost = Mock(side_effect=lambda project_id: lost.set())

        refresher = LeaseRefresher(locks, "p1", interval=0.01, on_lost=on_lost).start()
        try:
            assert lost.wait(5)
        finally:
            refresher.stop(timeout=5)

        on_lost.assert_called_once_with("p1")

    def test_default_interval_is_third_of_lease(self, server):
        """Test the default refresh interval."""
        locks = make_protocol(server, ALICE_TOKEN)
        assert LeaseRefresher(locks, "p1").interval == 300.0

    def test_invalid_interval(self, server):
        """Test that a non-positive interval is refused."""
        locks = make_protocol(server, ALICE_TOKEN)
        with pytest.raises(ValueError):
            LeaseRefresher(locks, "p1", interval=0)
