"""Data models for SpeleoDB API responses and client state."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from .utils import (
    ARCHIVE_EXTENSION,
    DEFAULT_INSTANCE,
    SOFTWARE_NAME,
    compare_versions,
    is_local_address,
    normalize_instance_url,
    parse_iso_date,
    parse_iso_timestamp,
    strip_scheme,
)


def utcnow() -> datetime:
    """Current time as a timezone aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, eq=False)
class InstanceUrl:
    """Normalized address of a SpeleoDB instance.

    The URL always carries a scheme. Equality and hashing ignore case so
    ``InstanceUrl.of("HTTP://EXAMPLE.COM/API/") == InstanceUrl.of("example.com/api")``.
    """

    url: str

    @classmethod
    def of(cls, value: str) -> InstanceUrl:
        """Create an InstanceUrl from raw user input.

        Raises:
            ValueError: If the value is empty
        """
        return cls(normalize_instance_url(value))

    @classmethod
    def default(cls) -> InstanceUrl:
        return cls.of(DEFAULT_INSTANCE)

    @property
    def host(self) -> str:
        """Host (and port) without scheme or path."""
        return strip_scheme(self.url).split("/", 1)[0]

    @property
    def is_local(self) -> bool:
        return is_local_address(self.host)

    @property
    def is_secure(self) -> bool:
        return self.url.startswith("https://")

    def endpoint(self, path: str) -> str:
        """Join an API path onto this instance URL."""
        return f"{self.url}/{path.lstrip('/')}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InstanceUrl):
            return NotImplemented
        return self.url.lower() == other.url.lower()

    def __hash__(self) -> int:
        return hash(self.url.lower())

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class Session:
    """Authenticated context: token plus the instance it is valid for."""

    token: str = field(repr=False)
    instance: InstanceUrl
    authenticated_at: datetime = field(default_factory=utcnow)

    @property
    def authorization_header(self) -> str:
        return f"Token {self.token}"


class AccessLevel(str, Enum):
    """Permission of the current user on a project."""

    ADMIN = "ADMIN"
    READ_AND_WRITE = "READ_AND_WRITE"
    READ_ONLY = "READ_ONLY"

    @classmethod
    def from_string(cls, value: Optional[str]) -> AccessLevel:
        """Parse a permission string, defaulting to READ_ONLY when unknown."""
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.READ_ONLY


@dataclass(frozen=True)
class ActiveMutex:
    """Lock currently held on a project, as reported by the server."""

    user: str
    creation_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    @classmethod
    def from_api_response(cls, data: Optional[dict[str, Any]]) -> Optional[ActiveMutex]:
        if not data:
            return None
        return cls(
            user=str(data.get("user", "unknown user")),
            creation_date=parse_iso_timestamp(data.get("creation_date")),
            modified_date=parse_iso_timestamp(data.get("modified_date")),
        )


@dataclass(frozen=True)
class Project:
    """Snapshot of a SpeleoDB project as returned by one API response."""

    id: str
    name: str
    description: str = ""
    country_code: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    modified_date: Optional[datetime] = None
    permission: AccessLevel = AccessLevel.READ_ONLY
    active_mutex: Optional[ActiveMutex] = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Project:
        """Create a Project from a project JSON object.

        Args:
            data: Project dictionary from the API

        Raises:
            ValueError: If the object has no id
        """
        project_id = data.get("id")
        if project_id in (None, ""):
            raise ValueError(f"Project response without id: {data!r}")

        return cls(
            id=str(project_id),
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            country_code=str(data.get("country") or ""),
            latitude=_to_float(data.get("latitude")),
            longitude=_to_float(data.get("longitude")),
            modified_date=parse_iso_timestamp(data.get("modified_date")),
            permission=AccessLevel.from_string(data.get("permission")),
            active_mutex=ActiveMutex.from_api_response(data.get("active_mutex")),
        )

    @property
    def can_acquire_lock(self) -> bool:
        """Only ADMIN and READ_AND_WRITE users may lock a project."""
        return self.permission in (AccessLevel.ADMIN, AccessLevel.READ_AND_WRITE)

    @property
    def is_locked(self) -> bool:
        return self.active_mutex is not None

    @property
    def archive_name(self) -> str:
        return f"{self.id}.{ARCHIVE_EXTENSION}"


def _to_float(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def sort_projects(projects: list[Project]) -> list[Project]:
    """Sort projects by name, case-insensitively, then by id."""
    return sorted(projects, key=lambda p: (p.name.casefold(), p.id))


@dataclass(frozen=True)
class ProjectCreationRequest:
    """Parameters of a new project."""

    name: str
    description: str
    country_code: str
    latitude: Optional[str] = None
    longitude: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Project name cannot be empty")
        if not self.description or not self.description.strip():
            raise ValueError("Project description cannot be empty")
        if not self.country_code or not self.country_code.strip():
            raise ValueError("Country code cannot be empty")
        _check_coordinate("latitude", self.latitude, 90.0)
        _check_coordinate("longitude", self.longitude, 180.0)

    @property
    def has_coordinates(self) -> bool:
        return bool(
            self.latitude
            and self.latitude.strip()
            and self.longitude
            and self.longitude.strip()
        )

    def to_payload(self) -> dict[str, str]:
        """JSON body for the create project endpoint."""
        payload = {
            "name": self.name.strip(),
            "description": self.description.strip(),
            "country": self.country_code.strip().upper(),
        }
        if self.latitude and self.latitude.strip():
            payload["latitude"] = self.latitude.strip()
        if self.longitude and self.longitude.strip():
            payload["longitude"] = self.longitude.strip()
        return payload


def _check_coordinate(label: str, value: Optional[str], limit: float) -> None:
    if value is None or not value.strip():
        return
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"Invalid {label}: {value!r}") from None
    if not -limit <= number <= limit:
        raise ValueError(f"{label.capitalize()} must be between -{limit} and {limit}")


@dataclass(frozen=True)
class ProjectLock:
    """This client's belief about a project mutex.

    The server is authoritative; this is only a cache used to gate local
    actions such as uploads.
    """

    project_id: str
    held_by_this_client: bool
    acquired_at: datetime
    lease_expires_at: datetime

    @classmethod
    def acquired(
        cls, project_id: str, lease: timedelta, now: Optional[datetime] = None
    ) -> ProjectLock:
        now = now or utcnow()
        return cls(
            project_id=project_id,
            held_by_this_client=True,
            acquired_at=now,
            lease_expires_at=now + lease,
        )

    def refreshed(self, lease: timedelta, now: Optional[datetime] = None) -> ProjectLock:
        """Copy with the lease extended from ``now``; ``acquired_at`` is kept."""
        return replace(self, lease_expires_at=(now or utcnow()) + lease)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.lease_expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.held_by_this_client and not self.is_expired(now)


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a successful archive upload."""

    project_id: str
    checksum: str
    size: int
    message: str


@dataclass(frozen=True)
class Announcement:
    """Public announcement published for the survey software."""

    title: str
    message: str
    header: str = ""
    uuid: str = ""
    software: str = SOFTWARE_NAME
    is_active: bool = True
    expires_at: Optional[date] = None
    version: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Announcement:
        return cls(
            title=str(data.get("title", "")),
            message=str(data.get("message", "")),
            header=str(data.get("header") or ""),
            uuid=str(data.get("uuid") or ""),
            software=str(data.get("software") or ""),
            is_active=bool(data.get("is_active", False)),
            expires_at=parse_iso_date(data.get("expiracy_date")),
            version=data.get("version") or None,
        )


@dataclass(frozen=True)
class PluginRelease:
    """Plugin build published on the server."""

    plugin_version: str
    software: str = SOFTWARE_NAME
    min_software_version: Optional[str] = None
    max_software_version: Optional[str] = None
    operating_system: str = ""
    download_url: str = ""
    sha256_hash: str = ""
    changelog: str = ""

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> PluginRelease:
        return cls(
            plugin_version=str(data.get("plugin_version", "")),
            software=str(data.get("software") or ""),
            min_software_version=data.get("min_software_version") or None,
            max_software_version=data.get("max_software_version") or None,
            operating_system=str(data.get("operating_system") or ""),
            download_url=str(data.get("download_url") or ""),
            sha256_hash=str(data.get("sha256_hash") or ""),
            changelog=str(data.get("changelog") or ""),
        )

    def supports(self, software_version: str) -> bool:
        """Check the software version against this release's bounds."""
        if not software_version:
            return False
        if self.min_software_version and (
            compare_versions(software_version, self.min_software_version) < 0
        ):
            return False
        if self.max_software_version and (
            compare_versions(software_version, self.max_software_version) > 0
        ):
            return False
        return True
