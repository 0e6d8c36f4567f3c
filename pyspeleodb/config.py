"""Configuration management for the SpeleoDB client."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional, TypeVar

from dotenv import dotenv_values, set_key, unset_key

from .exceptions import SpeleoDBConfigError
from .utils import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_INSTANCE,
    DEFAULT_LEASE_MINUTES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PROJECT_DIR,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_DELAY,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "pyspeleodb" / "config"

# Keys used both as environment variables and in the config file
INSTANCE_KEY = "SPELEODB_INSTANCE"
EMAIL_KEY = "SPELEODB_EMAIL"
PASSWORD_KEY = "SPELEODB_PASSWORD"
OAUTH_TOKEN_KEY = "SPELEODB_OAUTH_TOKEN"
PROJECT_DIR_KEY = "SPELEODB_PROJECT_DIR"
TIMEOUT_KEY = "SPELEODB_TIMEOUT"
DOWNLOAD_TIMEOUT_KEY = "SPELEODB_DOWNLOAD_TIMEOUT"
MAX_RETRIES_KEY = "SPELEODB_MAX_RETRIES"
RETRY_DELAY_KEY = "SPELEODB_RETRY_DELAY"
LEASE_MINUTES_KEY = "SPELEODB_LEASE_MINUTES"

CREDENTIAL_KEYS = (EMAIL_KEY, PASSWORD_KEY, OAUTH_TOKEN_KEY)


class Config:
    """Settings read from the environment and ``~/.config/pyspeleodb/config``.

    Environment variables take precedence over the config file, which takes
    precedence over built-in defaults. The file uses dotenv syntax.
    """

    def __init__(self, config_path: Optional[Path] = None):
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self._file_values: dict[str, Optional[str]] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the config file."""
        if self._config_path.is_file():
            self._file_values = dict(dotenv_values(self._config_path))
        else:
            self._file_values = {}

    def get_config_path(self) -> Path:
        return self._config_path

    def _get(self, key: str) -> Optional[str]:
        value = os.environ.get(key)
        if value:
            return value
        return self._file_values.get(key) or None

    def _get_number(self, key: str, default: T, cast: Callable[[str], T]) -> T:
        raw = self._get(key)
        if raw is None:
            return default
        try:
            return cast(raw)
        except ValueError as e:
            raise SpeleoDBConfigError(f"Invalid value for {key}: {raw!r}") from e

    # -------------------------
    # Settings
    # -------------------------

    @property
    def instance(self) -> str:
        return self._get(INSTANCE_KEY) or DEFAULT_INSTANCE

    @property
    def email(self) -> Optional[str]:
        return self._get(EMAIL_KEY)

    @property
    def password(self) -> Optional[str]:
        return self._get(PASSWORD_KEY)

    @property
    def oauth_token(self) -> Optional[str]:
        return self._get(OAUTH_TOKEN_KEY)

    @property
    def project_dir(self) -> Path:
        return Path(self._get(PROJECT_DIR_KEY) or DEFAULT_PROJECT_DIR).expanduser()

    @property
    def timeout(self) -> float:
        return self._get_number(TIMEOUT_KEY, DEFAULT_REQUEST_TIMEOUT, float)

    @property
    def download_timeout(self) -> float:
        return self._get_number(DOWNLOAD_TIMEOUT_KEY, DEFAULT_DOWNLOAD_TIMEOUT, float)

    @property
    def max_retries(self) -> int:
        """Total number of attempts per request."""
        return self._get_number(MAX_RETRIES_KEY, DEFAULT_MAX_RETRIES, int)

    @property
    def retry_delay(self) -> float:
        return self._get_number(RETRY_DELAY_KEY, DEFAULT_RETRY_DELAY, float)

    @property
    def lease_minutes(self) -> int:
        return self._get_number(LEASE_MINUTES_KEY, DEFAULT_LEASE_MINUTES, int)

    def is_configured(self) -> bool:
        """True if a usable credential form is available."""
        return bool(self.oauth_token or (self.email and self.password))

    # -------------------------
    # Persistence
    # -------------------------

    def _ensure_file(self) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        if not self._config_path.exists():
            self._config_path.touch()
        # Credentials live in this file
        self._config_path.chmod(0o600)

    def _unset(self, key: str) -> None:
        if key in self._file_values:
            unset_key(self._config_path, key)

    def save_credentials(
        self,
        instance: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        oauth_token: Optional[str] = None,
    ) -> None:
        """Store one credential form (and optionally the instance).

        Saving a token removes a stored email/password and vice versa.

        Raises:
            SpeleoDBConfigError: If not exactly one credential form is given
        """
        has_password = bool(email and password)
        if has_password == bool(oauth_token):
            raise SpeleoDBConfigError(
                "Provide either email and password or an OAuth token to save"
            )

        self._ensure_file()
        if instance:
            set_key(self._config_path, INSTANCE_KEY, instance)

        if oauth_token:
            set_key(self._config_path, OAUTH_TOKEN_KEY, oauth_token)
            self._unset(EMAIL_KEY)
            self._unset(PASSWORD_KEY)
        else:
            set_key(self._config_path, EMAIL_KEY, email or "")
            set_key(self._config_path, PASSWORD_KEY, password or "")
            self._unset(OAUTH_TOKEN_KEY)

        logger.debug(f"Credentials saved to {self._config_path}")
        self.reload()

    def clear_credentials(self) -> None:
        """Remove stored credentials; the instance setting is kept."""
        if not self._config_path.is_file():
            return
        for key in CREDENTIAL_KEYS:
            self._unset(key)
        logger.debug(f"Credentials removed from {self._config_path}")
        self.reload()


config = Config()
