"""Shared fixtures: an in-memory SpeleoDB server behind httpx.MockTransport."""

import json
import re
import threading
from typing import Any, Optional

import httpx
import pytest

from pyspeleodb.api import SpeleoDBClient
from pyspeleodb.session import SessionManager

INSTANCE = "speleodb.test"
ALICE_TOKEN = "a" * 40
BOB_TOKEN = "b" * 40

PROJECT_PATH = re.compile(r"^/api/v1/projects/([^/]+)/$")
ACTION_PATH = re.compile(
    r"^/api/v1/projects/([^/]+)/(acquire|release|upload/ariane_tml|download/ariane_tml)/$"
)


def parse_multipart(body: bytes, content_type: str) -> dict[str, tuple[dict, bytes]]:
    """Split a multipart/form-data body into {name: (headers, data)}."""
    boundary = content_type.split("boundary=", 1)[1].encode("ascii")
    chunks = body.split(b"--" + boundary)
    assert chunks[0] == b""
    assert chunks[-1] == b"--\r\n"

    parts = {}
    for chunk in chunks[1:-1]:
        assert chunk.startswith(b"\r\n") and chunk.endswith(b"\r\n")
        raw_headers, _, data = chunk[2:-2].partition(b"\r\n\r\n")
        headers = {}
        for line in raw_headers.decode("utf-8").split("\r\n"):
            key, _, value = line.partition(": ")
            headers[key] = value
        name = re.search(r'name="([^"]+)"', headers["Content-Disposition"]).group(1)
        parts[name] = (headers, data)
    return parts


class FakeSpeleoDB:
    """Single-holder SpeleoDB server.

    Every request is handled under one lock, so lock acquisition is atomic the
    way it is on the real server.
    """

    def __init__(self) -> None:
        self.users = {
            "alice@example.com": ("secret", ALICE_TOKEN),
            "bob@example.com": ("hunter2", BOB_TOKEN),
        }
        self.projects: dict[str, dict[str, Any]] = {
            "p1": self._project("p1", "Cueva Grande"),
            "p2": self._project("p2", "agua dulce"),
        }
        self.lock_holders: dict[str, str] = {}
        self.archives: dict[str, bytes] = {}
        self.messages: dict[str, str] = {}
        self.announcements: list[dict[str, Any]] = []
        self.releases: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        # Statuses (or exceptions) returned before normal handling, in order
        self.failures: list[Any] = []
        self._lock = threading.Lock()

    @staticmethod
    def _project(project_id: str, name: str) -> dict[str, Any]:
        return {
            "id": project_id,
            "name": name,
            "description": f"{name} survey",
            "country": "MX",
            "latitude": "20.5",
            "longitude": "-87.3",
            "permission": "ADMIN",
            "modified_date": "2025-01-15T10:30:00.000000Z",
            "active_mutex": None,
        }

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def _user(self, request: httpx.Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        for email, (_, token) in self.users.items():
            if header == f"Token {token}":
                return email
        return None

    def _project_json(self, project_id: str) -> dict[str, Any]:
        data = dict(self.projects[project_id])
        holder = self.lock_holders.get(project_id)
        if holder:
            data["active_mutex"] = {
                "user": holder,
                "creation_date": "2025-01-15T11:00:00Z",
                "modified_date": "2025-01-15T11:00:00Z",
            }
        return data

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            request.read()
            self.requests.append(request)
            if self.failures:
                failure = self.failures.pop(0)
                if isinstance(failure, Exception):
                    raise failure
                return httpx.Response(failure, json={"error": "Injected failure"})
            return self._route(request)

    def _route(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == "/api/v1/user/auth/login/":
            body = json.loads(request.content)
            user = self.users.get(body.get("email"))
            if user and user[0] == body.get("password"):
                return httpx.Response(200, json={"token": user[1]})
            return httpx.Response(401, json={"error": "Invalid credentials"})

        if path == "/api/v1/user/auth-token/":
            if self._user(request):
                token = request.headers["Authorization"].split(" ", 1)[1]
                return httpx.Response(200, json={"data": {"token": token}})
            return httpx.Response(401, json={"detail": "Invalid token."})

        if path == "/api/v1/announcements/":
            return httpx.Response(200, json={"data": self.announcements})
        if path == "/api/v1/plugin_releases/":
            return httpx.Response(200, json={"data": self.releases})

        user = self._user(request)
        if user is None:
            return httpx.Response(401, json={"detail": "Authentication required"})

        if path == "/api/v1/projects/":
            if request.method == "POST":
                return self._create(request)
            return httpx.Response(
                200, json={"data": [self._project_json(pid) for pid in self.projects]}
            )

        match = PROJECT_PATH.match(path)
        if match:
            project_id = match.group(1)
            if project_id not in self.projects:
                return httpx.Response(404, json={"detail": "Not found."})
            return httpx.Response(200, json={"data": self._project_json(project_id)})

        match = ACTION_PATH.match(path)
        if not match:
            return httpx.Response(404, json={"detail": "Not found."})

        project_id, action = match.groups()
        if project_id not in self.projects:
            return httpx.Response(404, json={"detail": "Not found."})
        holder = self.lock_holders.get(project_id)

        if action == "acquire":
            if holder not in (None, user):
                return httpx.Response(409, json={"error": f"Locked by {holder}"})
            self.lock_holders[project_id] = user
            return httpx.Response(200, json={"data": self._project_json(project_id)})

        if action == "release":
            if holder != user:
                return httpx.Response(403, json={"error": "Lock not held"})
            del self.lock_holders[project_id]
            return httpx.Response(200, json={"data": self._project_json(project_id)})

        if action == "upload/ariane_tml":
            if holder != user:
                return httpx.Response(403, json={"error": "Lock not held"})
            parts = parse_multipart(request.content, request.headers["Content-Type"])
            self.messages[project_id] = parts["message"][1].decode("utf-8")
            self.archives[project_id] = parts["artifact"][1]
            return httpx.Response(200, json={"data": self._project_json(project_id)})

        # download
        if project_id not in self.archives:
            return httpx.Response(422, json={"error": "No archive"})
        return httpx.Response(
            200,
            content=self.archives[project_id],
            headers={"Content-Type": "application/octet-stream"},
        )

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if not body.get("name"):
            return httpx.Response(400, json={"error": "name: This field is required."})
        project_id = f"p{len(self.projects) + 1}"
        project = self._project(project_id, body["name"])
        project.update(
            description=body.get("description", ""),
            country=body.get("country", ""),
            latitude=body.get("latitude"),
            longitude=body.get("longitude"),
        )
        self.projects[project_id] = project
        return httpx.Response(201, json={"data": self._project_json(project_id)})


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep real SPELEODB_* variables out of the tests."""
    for key in (
        "SPELEODB_INSTANCE",
        "SPELEODB_EMAIL",
        "SPELEODB_PASSWORD",
        "SPELEODB_OAUTH_TOKEN",
        "SPELEODB_PROJECT_DIR",
        "SPELEODB_TIMEOUT",
        "SPELEODB_DOWNLOAD_TIMEOUT",
        "SPELEODB_MAX_RETRIES",
        "SPELEODB_RETRY_DELAY",
        "SPELEODB_LEASE_MINUTES",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def server():
    """Provide a fresh fake SpeleoDB server."""
    return FakeSpeleoDB()


@pytest.fixture
def sessions(server):
    """Provide a SessionManager wired to the fake server."""
    manager = SessionManager(transport=server.transport)
    yield manager
    manager.close()


def make_client(server: FakeSpeleoDB, tmp_path, **kwargs: Any) -> SpeleoDBClient:
    options = {
        "instance": INSTANCE,
        "project_dir": tmp_path / "ariane",
        "max_retries": 3,
        "retry_delay": 0,
        "timeout": 5,
        "download_timeout": 5,
        "lease_minutes": 15,
        "software_version": "25.1.0",
        "transport": server.transport,
    }
    options.update(kwargs)
    return SpeleoDBClient(**options)


@pytest.fixture
def client(server, tmp_path):
    """Provide a logged-out client wired to the fake server."""
    speleodb = make_client(server, tmp_path)
    yield speleodb
    speleodb.close()


@pytest.fixture
def alice(client):
    """Provide a client logged in as alice."""
    client.authenticate(oauth_token=ALICE_TOKEN)
    return client


@pytest.fixture
def bob(server, tmp_path):
    """Provide a second client, logged in as bob, sharing the same server."""
    speleodb = make_client(server, tmp_path / "bob")
    speleodb.authenticate(email="bob@example.com", password="hunter2")
    yield speleodb
    speleodb.close()
