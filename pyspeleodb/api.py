"""API client for SpeleoDB."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar, Union

import httpx

from .config import config
from .exceptions import (
    SpeleoDBError,
    SpeleoDBInvalidResponseError,
    SpeleoDBLockConflictError,
    SpeleoDBProjectNotFoundError,
    SpeleoDBValidationError,
)
from .locks import LeaseRefresher, ProjectLockProtocol, ProjectRef, project_id_of
from .models import (
    Announcement,
    InstanceUrl,
    PluginRelease,
    Project,
    ProjectCreationRequest,
    ProjectLock,
    Session,
    UploadResult,
)
from .retry import RetryOrchestrator
from .session import SessionManager, parse_json, raise_for_response
from .transfer import Archive, FileTransferEngine, ProgressCallback
from .utils import SOFTWARE_NAME

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROJECTS_ENDPOINT = "/api/v1/projects/"
PROJECT_ENDPOINT = "/api/v1/projects/{project_id}/"
ANNOUNCEMENTS_ENDPOINT = "/api/v1/announcements/"
PLUGIN_RELEASES_ENDPOINT = "/api/v1/plugin_releases/"

DEFAULT_MAX_WORKERS = 4


class AsyncOperation(Generic[T]):
    """Handle on an operation running on the client's worker pool.

    ``cancel()`` stops further retries and prevents the call from starting if
    it is still queued. A request already on the wire is not retracted.
    """

    def __init__(self, future: Future[T], cancel_event: threading.Event):
        self.future = future
        self.cancel_event = cancel_event

    def result(self, timeout: Optional[float] = None) -> T:
        return self.future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self.future.exception(timeout)

    def done(self) -> bool:
        return self.future.done()

    def cancelled(self) -> bool:
        return self.future.cancelled()

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if the call had not started and will never run
        """
        self.cancel_event.set()
        return self.future.cancel()

    def add_done_callback(self, fn: Callable[[Future[T]], Any]) -> None:
        self.future.add_done_callback(fn)


class SpeleoDBClient:
    """Client for interacting with a SpeleoDB instance."""

    def __init__(
        self,
        instance: Optional[str] = None,
        project_dir: Union[str, Path, None] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        download_timeout: Optional[float] = None,
        lease_minutes: Optional[int] = None,
        software_version: Optional[str] = None,
        empty_template_checksum: Optional[str] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the SpeleoDB client.

        Unset arguments fall back to the configuration (environment variables
        and ``~/.config/pyspeleodb/config``).

        Args:
            instance: Default instance host used by authenticate()
            project_dir: Directory holding project archives (default: ~/.ariane)
            max_retries: Total attempts per retryable request (default: 3)
            retry_delay: Delay before the first retry in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 60)
            download_timeout: Archive download timeout in seconds (default: 120)
            lease_minutes: Assumed lock lease length (default: 15)
            software_version: Version of the survey software, used to filter
                announcements and plugin releases
            empty_template_checksum: SHA-256 of the blank project template
            max_workers: Worker threads for the ``*_async`` operations
            transport: Optional httpx transport (used by tests)
            sleep: Function used to wait between retries (used by tests)
        """
        self.instance = instance or config.instance
        self.project_dir = Path(project_dir or config.project_dir).expanduser()
        self.software_version = software_version
        self.max_workers = max_workers

        self.sessions = SessionManager(
            timeout=timeout if timeout is not None else config.timeout,
            transport=transport,
        )
        self.retry = RetryOrchestrator(
            max_attempts=max_retries if max_retries is not None else config.max_retries,
            base_delay=retry_delay if retry_delay is not None else config.retry_delay,
            sleep=sleep,
        )
        lease = lease_minutes if lease_minutes is not None else config.lease_minutes
        self.locks = ProjectLockProtocol(
            self.sessions, self.retry, lease_duration=timedelta(minutes=lease)
        )
        self.transfers = FileTransferEngine(
            self.sessions,
            self.project_dir,
            retry=self.retry,
            upload_timeout=self.sessions.timeout,
            download_timeout=(
                download_timeout
                if download_timeout is not None
                else config.download_timeout
            ),
            empty_template_checksum=empty_template_checksum,
        )

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    # =========================
    # Lifecycle
    # =========================

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="speleodb"
                )
            return self._executor

    def close(self) -> None:
        """Shut down the worker pool and release HTTP connections."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        self.sessions.close()

    def __enter__(self) -> SpeleoDBClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _submit(
        self, fn: Callable[..., T], *args: Any, cancellable: bool = True, **kwargs: Any
    ) -> AsyncOperation[T]:
        cancel_event = threading.Event()
        if cancellable:
            kwargs["cancel_event"] = cancel_event
        future = self._get_executor().submit(fn, *args, **kwargs)
        return AsyncOperation(future, cancel_event)

    # =========================
    # Request helpers
    # =========================

    def _resolve_instance(self, instance: Union[str, InstanceUrl, None]) -> InstanceUrl:
        if isinstance(instance, InstanceUrl):
            return instance
        if instance:
            return InstanceUrl.of(instance)
        session = self.sessions.current_session()
        return session.instance if session else InstanceUrl.of(self.instance)

    def _get_json(
        self,
        path: str,
        action: str,
        session: Optional[Session] = None,
        instance: Optional[InstanceUrl] = None,
        cancel_event: Optional[threading.Event] = None,
        not_found: Optional[str] = None,
    ) -> Any:
        """GET a JSON document with retries.

        Args:
            path: API endpoint path
            action: What is being done, for messages
            session: Session for authenticated requests (None = public endpoint)
            instance: Instance for public endpoints
            cancel_event: Stops retrying when set
            not_found: Message of the SpeleoDBProjectNotFoundError raised on 404
        """

        def _attempt() -> Any:
            response = self.sessions.send(
                "GET",
                path,
                authenticated=session is not None,
                session=session,
                instance=instance,
                headers={"Accept": "application/json"},
            )
            if response.status_code == 404 and not_found:
                raise SpeleoDBProjectNotFoundError(not_found, status_code=404)
            raise_for_response(response, action)
            return parse_json(response, action)

        return self.retry.execute(_attempt, cancel_event=cancel_event, description=action)

    @staticmethod
    def _unwrap(payload: Any, action: str, expected: type) -> Any:
        """Return the ``data`` member of a response envelope."""
        data = payload.get("data", payload) if isinstance(payload, dict) else payload
        if not isinstance(data, expected):
            raise SpeleoDBInvalidResponseError(
                f"{action}: unexpected response format ({type(data).__name__})"
            )
        return data

    # =========================
    # Authentication
    # =========================

    def authenticate(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        oauth_token: Optional[str] = None,
        instance: Union[str, InstanceUrl, None] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Session:
        """Log in with email/password or with an OAuth token.

        Args:
            email: Account email (with password)
            password: Account password (with email)
            oauth_token: Personal API token, instead of email/password
            instance: Instance host (defaults to the configured one)
            cancel_event: Stops retrying when set

        Returns:
            The new session

        Raises:
            SpeleoDBInvalidCredentialsError: If not exactly one credential form
                is supplied
            SpeleoDBAuthenticationError: If the server rejects the credentials
            SpeleoDBNetworkError: If the server stays unreachable
        """
        target = instance or self.instance
        return self.retry.execute(
            lambda: self.sessions.authenticate(
                email=email, password=password, oauth_token=oauth_token, instance=target
            ),
            cancel_event=cancel_event,
            description="Authentication",
        )

    def logout(self) -> None:
        """Release held locks, then forget the session.

        Lock release is best effort: failures are logged and logout proceeds.
        Calling logout while logged out is a no-op. The HTTP connection pool
        stays open for transfers already running on the worker pool; it is
        closed by :meth:`close`.
        """
        if self.sessions.is_authenticated():
            for lock in self.locks.tracked_locks():
                try:
                    self.locks.release(lock.project_id)
                except SpeleoDBError as e:
                    logger.warning(
                        f"Could not release lock on project {lock.project_id} "
                        f"during logout: {e}"
                    )
        self.locks.clear()
        self.sessions.logout()

    def is_authenticated(self) -> bool:
        return self.sessions.is_authenticated()

    def current_instance(self) -> InstanceUrl:
        """Instance of the current session.

        Raises:
            SpeleoDBNotAuthenticatedError: If logged out
        """
        return self.sessions.current_instance()

    # =========================
    # Projects
    # =========================

    def list_projects(
        self, cancel_event: Optional[threading.Event] = None
    ) -> list[Project]:
        """List the projects visible to the current user.

        Returns:
            Projects in server order
        """
        session = self.sessions.require_session()
        action = "List projects"
        payload = self._get_json(
            PROJECTS_ENDPOINT, action, session=session, cancel_event=cancel_event
        )
        items = self._unwrap(payload, action, list)
        try:
            projects = [Project.from_api_response(item) for item in items]
        except (ValueError, AttributeError) as e:
            raise SpeleoDBInvalidResponseError(f"{action}: {e}") from e
        logger.debug(f"Listed {len(projects)} project(s)")
        return projects

    def get_project(
        self, project: ProjectRef, cancel_event: Optional[threading.Event] = None
    ) -> Project:
        """Fetch a single project.

        Raises:
            SpeleoDBProjectNotFoundError: If the server answers 404
        """
        project_id = project_id_of(project)
        session = self.sessions.require_session()
        action = f"Get project {project_id}"
        payload = self._get_json(
            PROJECT_ENDPOINT.format(project_id=project_id),
            action,
            session=session,
            cancel_event=cancel_event,
            not_found=f"Project {project_id} not found",
        )
        data = self._unwrap(payload, action, dict)
        try:
            return Project.from_api_response(data)
        except ValueError as e:
            raise SpeleoDBInvalidResponseError(f"{action}: {e}") from e

    def create_project(self, request: ProjectCreationRequest) -> Project:
        """Create a project.

        The request is sent exactly once; creation is never retried since a
        repeated request could create a duplicate project.

        Args:
            request: Validated project parameters

        Returns:
            The project as stored by the server

        Raises:
            SpeleoDBValidationError: If the server rejects the payload (400)
        """
        session = self.sessions.require_session()
        action = "Create project"
        response = self.sessions.send(
            "POST",
            PROJECTS_ENDPOINT,
            session=session,
            json=request.to_payload(),
            headers={"Accept": "application/json"},
        )
        if response.status_code == 400:
            raise_for_response(response, action, SpeleoDBValidationError)
        raise_for_response(response, action)

        data = self._unwrap(parse_json(response, action), action, dict)
        try:
            project = Project.from_api_response(data)
        except ValueError as e:
            raise SpeleoDBInvalidResponseError(f"{action}: {e}") from e
        logger.info(f"Created project {project.id} ({project.name})")
        return project

    # =========================
    # Locks
    # =========================

    def acquire_or_refresh_lock(
        self, project: ProjectRef, cancel_event: Optional[threading.Event] = None
    ) -> bool:
        """Acquire or refresh the project lock. See ProjectLockProtocol."""
        return self.locks.acquire_or_refresh(project, cancel_event=cancel_event)

    def release_lock(
        self, project: ProjectRef, cancel_event: Optional[threading.Event] = None
    ) -> bool:
        """Release a lock held by this client. See ProjectLockProtocol."""
        return self.locks.release(project, cancel_event=cancel_event)

    def get_lock(self, project: ProjectRef) -> Optional[ProjectLock]:
        return self.locks.get_lock(project)

    @contextmanager
    def project_lock(
        self,
        project: ProjectRef,
        keep_alive: bool = False,
        refresh_interval: Optional[float] = None,
    ) -> Iterator[ProjectLock]:
        """Hold a project lock for the duration of a ``with`` block.

        Args:
            project: Project or project id
            keep_alive: Refresh the lease from a background thread
            refresh_interval: Seconds between refreshes (default: lease / 3)

        Raises:
            SpeleoDBLockConflictError: If the lock cannot be acquired

        Example:
            >>> with client.project_lock(project):
            ...     client.upload_project("Surveyed the north branch", project)
        """
        project_id = project_id_of(project)
        if not self.acquire_or_refresh_lock(project_id):
            raise SpeleoDBLockConflictError(
                f"Project {project_id} is locked by another user"
            )

        refresher = (
            LeaseRefresher(self.locks, project_id, interval=refresh_interval).start()
            if keep_alive
            else None
        )
        try:
            lock = self.locks.get_lock(project_id)
            if lock is None:
                raise SpeleoDBLockConflictError(f"Lock on project {project_id} was lost")
            yield lock
        finally:
            if refresher is not None:
                refresher.stop()
            if self.sessions.is_authenticated() and self.locks.is_tracked(project_id):
                self.locks.release(project_id)

    # =========================
    # Archives
    # =========================

    def project_path(self, project: ProjectRef) -> Path:
        """Local archive path of a project."""
        return self.transfers.project_path(project)

    def upload_project(
        self,
        message: str,
        project: ProjectRef,
        archive: Optional[Archive] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """Upload a project archive. This client must hold the project lock.

        Args:
            message: Upload message
            project: Project or project id
            archive: Archive bytes or path (default: the project's local file)
            progress_callback: Optional callback function(bytes_sent, total)
            cancel_event: Stops retrying when set

        Raises:
            SpeleoDBNotAuthenticatedError: If logged out
            SpeleoDBLockConflictError: If this client does not hold the lock
            SpeleoDBUploadError: If the server rejects the upload
        """
        project_id = project_id_of(project)
        self.sessions.require_session()
        if not self.locks.is_held(project_id):
            raise SpeleoDBLockConflictError(
                f"Cannot upload project {project_id}: lock not held by this client"
            )
        return self.transfers.upload(
            message,
            project_id,
            archive=archive,
            progress_callback=progress_callback,
            cancel_event=cancel_event,
        )

    def download_project(
        self,
        project: ProjectRef,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Download a project archive into the project directory.

        Returns:
            Path of the archive

        Raises:
            SpeleoDBProjectNotFoundError: If the project has no archive
            SpeleoDBDownloadError: If the download fails
        """
        return self.transfers.download(
            project, progress_callback=progress_callback, cancel_event=cancel_event
        )

    def verify_download(self, path: Union[str, Path], expected_checksum: str) -> str:
        """Compare a local archive's SHA-256 with an expected value.

        Raises:
            SpeleoDBChecksumMismatchError: If they differ
        """
        return self.transfers.verify(path, expected_checksum)

    # =========================
    # Public endpoints
    # =========================

    def fetch_announcements(
        self,
        instance: Union[str, InstanceUrl, None] = None,
        today: Optional[date] = None,
    ) -> list[Announcement]:
        """Fetch the announcements that apply to this client.

        Keeps active announcements for the survey software that have not
        expired and that either carry no version or this client's version.
        The expiry day itself is still valid, and an announcement without an
        expiry date never expires.
        """
        action = "Fetch announcements"
        payload = self._get_json(
            ANNOUNCEMENTS_ENDPOINT, action, instance=self._resolve_instance(instance)
        )
        items = self._unwrap(payload, action, list)
        today = today or date.today()

        announcements = []
        for item in items:
            if not isinstance(item, dict):
                continue
            announcement = Announcement.from_api_response(item)
            if not announcement.is_active:
                continue
            if announcement.software.upper() != SOFTWARE_NAME:
                continue
            if item.get("expiracy_date"):
                # A date that does not parse counts as expired
                if announcement.expires_at is None or announcement.expires_at < today:
                    continue
            if announcement.version and announcement.version != self.software_version:
                continue
            announcements.append(announcement)

        logger.debug(f"{len(announcements)} of {len(items)} announcement(s) apply")
        return announcements

    def fetch_plugin_releases(
        self,
        instance: Union[str, InstanceUrl, None] = None,
        software_version: Optional[str] = None,
    ) -> list[PluginRelease]:
        """Fetch plugin releases compatible with a software version.

        Args:
            instance: Instance host (defaults to the session's or configured one)
            software_version: Version to match (default: the client's)

        Returns:
            Matching releases; empty when no version is known
        """
        version = software_version or self.software_version
        if not version:
            return []

        action = "Fetch plugin releases"
        payload = self._get_json(
            PLUGIN_RELEASES_ENDPOINT, action, instance=self._resolve_instance(instance)
        )
        items = self._unwrap(payload, action, list)

        releases = [
            PluginRelease.from_api_response(item)
            for item in items
            if isinstance(item, dict)
        ]
        return [
            release
            for release in releases
            if release.software.upper() == SOFTWARE_NAME and release.supports(version)
        ]

    # =========================
    # Asynchronous variants
    # =========================

    def authenticate_async(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        oauth_token: Optional[str] = None,
        instance: Union[str, InstanceUrl, None] = None,
    ) -> AsyncOperation[Session]:
        return self._submit(
            self.authenticate,
            email=email,
            password=password,
            oauth_token=oauth_token,
            instance=instance,
        )

    def logout_async(self) -> AsyncOperation[None]:
        return self._submit(self.logout, cancellable=False)

    def list_projects_async(self) -> AsyncOperation[list[Project]]:
        return self._submit(self.list_projects)

    def create_project_async(
        self, request: ProjectCreationRequest
    ) -> AsyncOperation[Project]:
        return self._submit(self.create_project, request, cancellable=False)

    def acquire_or_refresh_lock_async(self, project: ProjectRef) -> AsyncOperation[bool]:
        return self._submit(self.acquire_or_refresh_lock, project)

    def release_lock_async(self, project: ProjectRef) -> AsyncOperation[bool]:
        return self._submit(self.release_lock, project)

    def upload_project_async(
        self,
        message: str,
        project: ProjectRef,
        archive: Optional[Archive] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> AsyncOperation[UploadResult]:
        return self._submit(
            self.upload_project,
            message,
            project,
            archive=archive,
            progress_callback=progress_callback,
        )

    def download_project_async(
        self,
        project: ProjectRef,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> AsyncOperation[Path]:
        return self._submit(
            self.download_project, project, progress_callback=progress_callback
        )
