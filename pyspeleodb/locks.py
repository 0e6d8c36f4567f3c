"""Server-mediated project mutex (lease) protocol.

The SpeleoDB server is the only authority on who holds a project lock. This
module keeps a local cache of the locks this client believes it holds, which
is used to gate uploads and nothing else: two clients (or two threads) calling
:meth:`ProjectLockProtocol.acquire_or_refresh` at the same time both ask the
server, and only the server's answer decides.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

import httpx

from .exceptions import (
    SpeleoDBError,
    SpeleoDBOperationCancelledError,
)
from .models import Project, ProjectLock, Session, utcnow
from .retry import RetryOrchestrator
from .session import SessionManager, raise_for_response
from .utils import DEFAULT_LEASE_MINUTES

logger = logging.getLogger(__name__)

ACQUIRE_ENDPOINT = "/api/v1/projects/{project_id}/acquire/"
RELEASE_ENDPOINT = "/api/v1/projects/{project_id}/release/"

# Statuses meaning "someone else holds the lock" (or we are not the holder)
CONFLICT_STATUSES = frozenset({403, 409, 423})

ProjectRef = Union[Project, str]


def project_id_of(project: ProjectRef) -> str:
    """Accept a Project or a bare id and return the id."""
    project_id = project.id if isinstance(project, Project) else str(project)
    if not project_id or not project_id.strip():
        raise ValueError("Project ID cannot be empty")
    return project_id


class ProjectLockProtocol:
    """Acquires, refreshes and releases project locks on the server."""

    def __init__(
        self,
        sessions: SessionManager,
        retry: Optional[RetryOrchestrator] = None,
        lease_duration: timedelta = timedelta(minutes=DEFAULT_LEASE_MINUTES),
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the lock protocol.

        Args:
            sessions: Session manager used for authenticated requests
            retry: Retry policy for transient failures
            lease_duration: How long a lock is assumed valid after the last
                successful acquire/refresh
            clock: Returns the current UTC time (overridable in tests)
        """
        self.sessions = sessions
        self.retry = retry or RetryOrchestrator()
        self.lease_duration = lease_duration
        self._clock = clock
        self._locks: dict[str, ProjectLock] = {}
        self._lock = threading.Lock()

    # -------------------------
    # Local cache
    # -------------------------

    def get_lock(self, project: ProjectRef) -> Optional[ProjectLock]:
        """Return the cached lock for a project if it is held and unexpired."""
        project_id = project_id_of(project)
        now = self._clock()
        with self._lock:
            lock = self._locks.get(project_id)
            if lock is not None and not lock.is_active(now):
                return None
            return lock

    def is_held(self, project: ProjectRef) -> bool:
        return self.get_lock(project) is not None

    def held_locks(self) -> list[ProjectLock]:
        now = self._clock()
        with self._lock:
            return [lock for lock in self._locks.values() if lock.is_active(now)]

    def is_tracked(self, project: ProjectRef) -> bool:
        """Check whether this client acquired the lock and has not released it.

        Unlike :meth:`is_held`, this stays True after the local lease estimate
        runs out: only the server knows whether the lock is still ours.
        """
        with self._lock:
            return project_id_of(project) in self._locks

    def tracked_locks(self) -> list[ProjectLock]:
        """Locks acquired and not yet released, expired leases included."""
        with self._lock:
            return list(self._locks.values())

    def forget(self, project: ProjectRef) -> None:
        """Drop the local belief about a project without contacting the server."""
        with self._lock:
            self._locks.pop(project_id_of(project), None)

    def clear(self) -> None:
        with self._lock:
            self._locks.clear()

    # -------------------------
    # Server calls
    # -------------------------

    def _post(
        self, session: Session, endpoint: str, project_id: str, action: str
    ) -> httpx.Response:
        response = self.sessions.send(
            "POST",
            endpoint.format(project_id=project_id),
            session=session,
            headers={"Accept": "application/json"},
        )
        # Only 5xx is raised here so the orchestrator can retry it
        if response.status_code >= 500:
            raise_for_response(response, action)
        return response

    def acquire_or_refresh(
        self,
        project: ProjectRef,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Acquire the project lock, or extend it if this client holds it.

        Safe to call repeatedly while editing.

        Args:
            project: Project or project id
            cancel_event: Stops retrying when set

        Returns:
            True if this client holds the lock after the call, False if the
            server reported a conflict or refused the request

        Raises:
            SpeleoDBNotAuthenticatedError: If logged out (no request is sent)
            SpeleoDBAuthenticationError: If the server rejects the token
            SpeleoDBNetworkError: If the server stays unreachable after retries
            SpeleoDBServerError: If the server keeps failing with 5xx
        """
        project_id = project_id_of(project)
        session = self.sessions.require_session()
        action = f"Acquire lock on project {project_id}"

        response = self.retry.execute(
            lambda: self._post(session, ACQUIRE_ENDPOINT, project_id, action),
            cancel_event=cancel_event,
            description=action,
        )

        status_code = response.status_code
        if 200 <= status_code < 300:
            now = self._clock()
            with self._lock:
                current = self._locks.get(project_id)
                if current is not None and current.is_active(now):
                    self._locks[project_id] = current.refreshed(self.lease_duration, now)
                    logger.debug(f"Lock on project {project_id} refreshed")
                else:
                    self._locks[project_id] = ProjectLock.acquired(
                        project_id, self.lease_duration, now
                    )
                    logger.info(f"Lock on project {project_id} acquired")
            return True

        if status_code == 401:
            self.forget(project_id)
            raise_for_response(response, action)

        self.forget(project_id)
        if status_code in CONFLICT_STATUSES:
            logger.info(
                f"Lock on project {project_id} is held by another client "
                f"(status {status_code})"
            )
        else:
            logger.warning(
                f"Could not lock project {project_id}: server answered {status_code}"
            )
        return False

    def release(
        self,
        project: ProjectRef,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Release a lock held by this client.

        Releasing a lock this client never acquired, or already released,
        sends nothing and returns False. A lock whose local lease estimate
        ran out is still released on the server, which answers 403 if the
        lock went to someone else in the meantime.

        Returns:
            True if the server confirmed the release

        Raises:
            SpeleoDBNotAuthenticatedError: If logged out (no request is sent)
            SpeleoDBAuthenticationError: If the server rejects the token
            SpeleoDBNetworkError: If the server stays unreachable after retries
        """
        project_id = project_id_of(project)
        session = self.sessions.require_session()

        if not self.is_tracked(project_id):
            logger.debug(f"Release of project {project_id} skipped: lock not held")
            return False

        action = f"Release lock on project {project_id}"
        response = self.retry.execute(
            lambda: self._post(session, RELEASE_ENDPOINT, project_id, action),
            cancel_event=cancel_event,
            description=action,
        )
        self.forget(project_id)

        status_code = response.status_code
        if 200 <= status_code < 300:
            logger.info(f"Lock on project {project_id} released")
            return True

        if status_code == 401:
            raise_for_response(response, action)

        logger.warning(
            f"Server refused to release project {project_id} (status {status_code})"
        )
        return False


class LeaseRefresher:
    """Keeps a project lease alive from a background thread.

    The thread sleeps on an event between refreshes, so :meth:`stop` wakes it
    immediately. It stops by itself once a refresh is refused or fails, and
    reports that through ``on_lost``.

    Example:
        >>> with LeaseRefresher(locks, project, interval=300):
        ...     edit_survey()
    """

    def __init__(
        self,
        protocol: ProjectLockProtocol,
        project: ProjectRef,
        interval: Optional[float] = None,
        on_lost: Optional[Callable[[str], None]] = None,
    ):
        self.protocol = protocol
        self.project_id = project_id_of(project)
        self.interval = (
            interval
            if interval is not None
            else protocol.lease_duration.total_seconds() / 3
        )
        if self.interval <= 0:
            raise ValueError("Refresh interval must be positive")
        self.on_lost = on_lost
        self.last_error: Optional[SpeleoDBError] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> LeaseRefresher:
        if self.is_running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"speleodb-lease-{self.project_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                held = self.protocol.acquire_or_refresh(
                    self.project_id, cancel_event=self._stop_event
                )
            except SpeleoDBOperationCancelledError:
                return
            except SpeleoDBError as e:
                logger.error(f"Refreshing lock on project {self.project_id} failed: {e}")
                self.last_error = e
                held = False

            if not held:
                logger.warning(f"Lost lock on project {self.project_id}")
                if self.on_lost is not None:
                    self.on_lost(self.project_id)
                return

    def __enter__(self) -> LeaseRefresher:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
