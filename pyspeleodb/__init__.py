"""pyspeleodb - Client library and CLI for SpeleoDB cave survey projects."""

__version__ = "0.1.0"

from .api import AsyncOperation, SpeleoDBClient  # noqa: E402
from .exceptions import (  # noqa: E402
    SpeleoDBAPIError,
    SpeleoDBAuthenticationError,
    SpeleoDBChecksumMismatchError,
    SpeleoDBConfigError,
    SpeleoDBDownloadError,
    SpeleoDBError,
    SpeleoDBFileNotFoundError,
    SpeleoDBInvalidCredentialsError,
    SpeleoDBInvalidResponseError,
    SpeleoDBLockConflictError,
    SpeleoDBNetworkError,
    SpeleoDBNotAuthenticatedError,
    SpeleoDBOperationCancelledError,
    SpeleoDBProjectNotFoundError,
    SpeleoDBServerError,
    SpeleoDBTimeoutError,
    SpeleoDBUploadError,
    SpeleoDBValidationError,
)
from .models import (  # noqa: E402
    AccessLevel,
    Announcement,
    InstanceUrl,
    PluginRelease,
    Project,
    ProjectCreationRequest,
    ProjectLock,
    Session,
    UploadResult,
)

__all__ = [
    "__version__",
    "AsyncOperation",
    "SpeleoDBClient",
    "SpeleoDBAPIError",
    "SpeleoDBAuthenticationError",
    "SpeleoDBChecksumMismatchError",
    "SpeleoDBConfigError",
    "SpeleoDBDownloadError",
    "SpeleoDBError",
    "SpeleoDBFileNotFoundError",
    "SpeleoDBInvalidCredentialsError",
    "SpeleoDBInvalidResponseError",
    "SpeleoDBLockConflictError",
    "SpeleoDBNetworkError",
    "SpeleoDBNotAuthenticatedError",
    "SpeleoDBOperationCancelledError",
    "SpeleoDBProjectNotFoundError",
    "SpeleoDBServerError",
    "SpeleoDBTimeoutError",
    "SpeleoDBUploadError",
    "SpeleoDBValidationError",
    "AccessLevel",
    "Announcement",
    "InstanceUrl",
    "PluginRelease",
    "Project",
    "ProjectCreationRequest",
    "ProjectLock",
    "Session",
    "UploadResult",
]
