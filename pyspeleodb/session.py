"""Authentication state and HTTP access for a SpeleoDB instance."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional, Union

import httpx

from .exceptions import (
    SpeleoDBAPIError,
    SpeleoDBAuthenticationError,
    SpeleoDBConfigError,
    SpeleoDBError,
    SpeleoDBInvalidCredentialsError,
    SpeleoDBInvalidResponseError,
    SpeleoDBNetworkError,
    SpeleoDBNotAuthenticatedError,
    SpeleoDBServerError,
    SpeleoDBTimeoutError,
)
from .models import InstanceUrl, Session, utcnow
from .utils import DEFAULT_CONNECT_TIMEOUT, DEFAULT_INSTANCE, DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

PASSWORD_LOGIN_ENDPOINT = "/api/v1/user/auth/login/"
TOKEN_LOGIN_ENDPOINT = "/api/v1/user/auth-token/"

USER_AGENT = "pyspeleodb (Ariane SpeleoDB client)"


# =========================
# Response helpers
# =========================


def extract_error_message(response: httpx.Response) -> Optional[str]:
    """Pull a human readable error out of a JSON error body, if there is one."""
    try:
        if not response.content:
            return None
        error_data = response.json()
    except (ValueError, httpx.ResponseNotRead):
        return None

    if not isinstance(error_data, dict):
        return None

    msg = (
        error_data.get("error")
        or error_data.get("detail")
        or error_data.get("message")
        or error_data.get("errors")
    )
    return str(msg) if msg else None


def raise_for_response(
    response: httpx.Response,
    action: str,
    error_cls: type[SpeleoDBAPIError] = SpeleoDBAPIError,
) -> None:
    """Raise a typed error for a non-2xx response.

    Args:
        response: The HTTP response
        action: What was attempted, used in the message ("List projects")
        error_cls: Error raised for statuses without a dedicated type

    Raises:
        SpeleoDBAuthenticationError: On 401
        SpeleoDBServerError: On 5xx when no specific error_cls is given
        error_cls: On every other non-2xx status
    """
    status_code = response.status_code
    if 200 <= status_code < 300:
        return

    error_msg = f"{action} failed with status {status_code}"
    detail = extract_error_message(response)
    if detail:
        error_msg = f"{error_msg}: {detail}"

    if status_code == 401:
        raise SpeleoDBAuthenticationError(error_msg, status_code=status_code)
    if status_code >= 500 and error_cls is SpeleoDBAPIError:
        raise SpeleoDBServerError(error_msg, status_code=status_code)
    raise error_cls(error_msg, status_code=status_code)


def parse_json(response: httpx.Response, action: str) -> Any:
    """Decode a JSON body or raise SpeleoDBInvalidResponseError."""
    content_type = response.headers.get("Content-Type", "")
    if "text/html" in content_type:
        raise SpeleoDBInvalidResponseError(
            f"{action}: server returned HTML instead of JSON",
            status_code=response.status_code,
        )
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise SpeleoDBInvalidResponseError(
            f"{action}: invalid JSON response from server",
            status_code=response.status_code,
        ) from e


@contextmanager
def translate_request_errors(description: str) -> Iterator[None]:
    """Convert httpx transport errors into SpeleoDB network errors."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise SpeleoDBTimeoutError(f"{description} timed out: {e}") from e
    except httpx.RequestError as e:
        raise SpeleoDBNetworkError(f"Network error during {description}: {e}") from e


# =========================
# Session manager
# =========================


class SessionManager:
    """Owns the authenticated session and the HTTP connection pool.

    The session is an immutable value. ``authenticate`` and ``logout`` are
    serialized by a lock and replace it with a single assignment, so readers
    always see either the old or the new session, never a mix of both.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the session manager.

        Args:
            timeout: Default request timeout in seconds
            connect_timeout: Connection timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport
        self._session: Optional[Session] = None
        self._write_lock = threading.Lock()
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()

    # -------------------------
    # HTTP client
    # -------------------------

    def _get_client(self) -> httpx.Client:
        """Get or create the shared httpx client."""
        with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.Client(
                    headers={"User-Agent": USER_AGENT},
                    timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        """Close the HTTP client and release connections."""
        with self._client_lock:
            if self._client is not None and not self._client.is_closed:
                self._client.close()
            self._client = None

    # -------------------------
    # Session state
    # -------------------------

    def is_authenticated(self) -> bool:
        return self._session is not None

    def current_session(self) -> Optional[Session]:
        return self._session

    def require_session(self) -> Session:
        """Return the current session or fail without touching the network.

        Raises:
            SpeleoDBNotAuthenticatedError: If no session exists
        """
        session = self._session
        if session is None:
            raise SpeleoDBNotAuthenticatedError("User is not authenticated.")
        return session

    def current_instance(self) -> InstanceUrl:
        return self.require_session().instance

    @staticmethod
    def auth_headers(session: Session) -> dict[str, str]:
        return {"Authorization": session.authorization_header}

    def logout(self) -> None:
        """Forget the current session. Calling it while logged out is a no-op."""
        with self._write_lock:
            if self._session is not None:
                logger.info(f"Logged out from {self._session.instance}")
            self._session = None

    # -------------------------
    # Authentication
    # -------------------------

    def authenticate(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        oauth_token: Optional[str] = None,
        instance: Union[str, InstanceUrl] = DEFAULT_INSTANCE,
    ) -> Session:
        """Log in with either email/password or an OAuth token.

        Args:
            email: Account email (with password)
            password: Account password (with email)
            oauth_token: Personal API token, used instead of email/password
            instance: Host of the SpeleoDB instance

        Returns:
            The new session, which replaces any previous one

        Raises:
            SpeleoDBInvalidCredentialsError: If not exactly one credential form
                is supplied (no request is sent)
            SpeleoDBConfigError: If the instance URL is empty
            SpeleoDBAuthenticationError: If the server rejects the credentials
            SpeleoDBNetworkError: If the server cannot be reached
        """
        has_password = bool(email) and bool(password)
        has_token = bool(oauth_token)
        if (email and not password) or (password and not email):
            raise SpeleoDBInvalidCredentialsError(
                "Both email and password are required for password login"
            )
        if has_password == has_token:
            raise SpeleoDBInvalidCredentialsError(
                "Provide either email and password or an OAuth token"
            )

        try:
            instance_url = (
                instance
                if isinstance(instance, InstanceUrl)
                else InstanceUrl.of(instance)
            )
        except ValueError as e:
            raise SpeleoDBConfigError(str(e)) from e

        with self._write_lock:
            try:
                token = self._request_token(instance_url, email, password, oauth_token)
            except SpeleoDBError:
                self._session = None
                raise

            session = Session(
                token=token, instance=instance_url, authenticated_at=utcnow()
            )
            self._session = session

        logger.info(f"Authenticated against {instance_url}")
        return session

    def _request_token(
        self,
        instance: InstanceUrl,
        email: Optional[str],
        password: Optional[str],
        oauth_token: Optional[str],
    ) -> str:
        client = self._get_client()

        with translate_request_errors("authentication"):
            if oauth_token:
                response = client.get(
                    instance.endpoint(TOKEN_LOGIN_ENDPOINT),
                    headers={
                        "Authorization": f"Token {oauth_token}",
                        "Accept": "application/json",
                    },
                )
            else:
                response = client.post(
                    instance.endpoint(PASSWORD_LOGIN_ENDPOINT),
                    json={"email": email, "password": password},
                    headers={"Accept": "application/json"},
                )

        if not 200 <= response.status_code < 300:
            logger.warning(
                f"Authentication against {instance} rejected "
                f"(status {response.status_code})"
            )
            detail = extract_error_message(response)
            message = f"Authentication failed with status {response.status_code}"
            if detail:
                message = f"{message}: {detail}"
            raise SpeleoDBAuthenticationError(message, status_code=response.status_code)

        data = parse_json(response, "Authentication")
        token = _find_token(data)
        if token:
            return token
        if oauth_token:
            return oauth_token
        raise SpeleoDBInvalidResponseError(
            "Authentication response did not contain a token",
            status_code=response.status_code,
        )

    # -------------------------
    # Requests
    # -------------------------

    def _prepare(
        self,
        path: str,
        authenticated: bool,
        session: Optional[Session],
        instance: Optional[InstanceUrl],
        headers: Optional[dict[str, str]],
    ) -> tuple[str, dict[str, str]]:
        merged = dict(headers or {})
        if authenticated:
            session = session or self.require_session()
            merged.update(self.auth_headers(session))
            base = session.instance
        else:
            current = session or self._session
            base = instance or (current.instance if current else InstanceUrl.default())
        return base.endpoint(path), merged

    def send(
        self,
        method: str,
        path: str,
        *,
        authenticated: bool = True,
        session: Optional[Session] = None,
        instance: Optional[InstanceUrl] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request relative to the session's instance.

        Authenticated requests carry ``Authorization: Token <token>``. Transport
        errors are translated; status codes are left to the caller.

        Raises:
            SpeleoDBNotAuthenticatedError: If authenticated and logged out
            SpeleoDBNetworkError: If the request could not be completed
        """
        url, merged = self._prepare(path, authenticated, session, instance, headers)
        logger.debug(f"{method} {url}")
        with translate_request_errors(f"{method} {path}"):
            return self._get_client().request(method, url, headers=merged, **kwargs)

    @contextmanager
    def stream(
        self,
        method: str,
        path: str,
        *,
        session: Optional[Session] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> Iterator[httpx.Response]:
        """Authenticated streaming request; errors while reading are translated too."""
        url, merged = self._prepare(path, True, session, None, headers)
        logger.debug(f"{method} {url} (streaming)")
        with translate_request_errors(f"{method} {path}"):
            with self._get_client().stream(
                method, url, headers=merged, **kwargs
            ) as response:
                yield response


def _find_token(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    token = data.get("token")
    if not token and isinstance(data.get("data"), dict):
        token = data["data"].get("token")
    return str(token) if token else None
