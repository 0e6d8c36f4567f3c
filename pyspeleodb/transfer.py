"""Upload and download of project archives."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Callable, Optional, Union

from .exceptions import (
    SpeleoDBChecksumMismatchError,
    SpeleoDBDownloadError,
    SpeleoDBFileNotFoundError,
    SpeleoDBProjectNotFoundError,
    SpeleoDBUploadError,
)
from .locks import ProjectRef, project_id_of
from .models import Session, UploadResult
from .multipart import MultipartBody, MultipartBodyEncoder, file_part, text_part
from .retry import RetryOrchestrator
from .session import SessionManager, raise_for_response
from .utils import (
    ARCHIVE_EXTENSION,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    TRANSFER_CHUNK_SIZE,
    calculate_checksum,
    calculate_file_checksum,
    format_size,
)

logger = logging.getLogger(__name__)

UPLOAD_ENDPOINT = "/api/v1/projects/{project_id}/upload/ariane_tml/"
DOWNLOAD_ENDPOINT = "/api/v1/projects/{project_id}/download/ariane_tml/"

MESSAGE_FIELD = "message"
ARCHIVE_FIELD = "artifact"
ARCHIVE_CONTENT_TYPE = "application/octet-stream"

ProgressCallback = Callable[[int, int], None]
Archive = Union[bytes, bytearray, str, Path]


class FileTransferEngine:
    """Moves project archives between the server and the local project root.

    Uploads are expected to happen only while the caller holds the project
    lock; this class does not check it, the facade does.
    """

    def __init__(
        self,
        sessions: SessionManager,
        project_root: Union[str, Path],
        retry: Optional[RetryOrchestrator] = None,
        encoder: Optional[MultipartBodyEncoder] = None,
        upload_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        empty_template_checksum: Optional[str] = None,
        chunk_size: int = TRANSFER_CHUNK_SIZE,
    ):
        """Initialize the transfer engine.

        Args:
            sessions: Session manager used for authenticated requests
            project_root: Directory holding ``{project_id}.tml`` archives
            retry: Retry policy for transient failures
            encoder: Multipart encoder (a fresh one by default)
            upload_timeout: Upload request timeout in seconds
            download_timeout: Download request timeout in seconds
            empty_template_checksum: SHA-256 of the blank project template;
                archives matching it are never uploaded
            chunk_size: Bytes per chunk for streamed transfers
        """
        self.sessions = sessions
        self.project_root = Path(project_root).expanduser()
        self.retry = retry or RetryOrchestrator()
        self.encoder = encoder or MultipartBodyEncoder()
        self.upload_timeout = upload_timeout
        self.download_timeout = download_timeout
        self.empty_template_checksum = (
            empty_template_checksum.lower() if empty_template_checksum else None
        )
        self.chunk_size = chunk_size

    def project_path(self, project: ProjectRef) -> Path:
        """Local path of a project's archive: ``{root}/{project_id}.tml``."""
        return self.project_root / f"{project_id_of(project)}.{ARCHIVE_EXTENSION}"

    # =========================
    # Upload
    # =========================

    def _read_archive(self, project_id: str, archive: Optional[Archive]) -> bytes:
        if isinstance(archive, (bytes, bytearray)):
            return bytes(archive)

        path = Path(archive) if archive is not None else self.project_path(project_id)
        if not path.is_file():
            raise SpeleoDBFileNotFoundError(str(path))
        try:
            return path.read_bytes()
        except OSError as e:
            raise SpeleoDBUploadError(f"Failed to read archive {path}: {e}") from e

    def build_upload_body(
        self, message: str, project_id: str, data: bytes
    ) -> MultipartBody:
        """Encode the upload message followed by the archive bytes."""
        return self.encoder.build(
            [
                text_part(MESSAGE_FIELD, message),
                file_part(
                    ARCHIVE_FIELD,
                    data,
                    ARCHIVE_CONTENT_TYPE,
                    filename=f"{project_id}.{ARCHIVE_EXTENSION}",
                ),
            ]
        )

    def _body_stream(
        self, body: MultipartBody, progress_callback: ProgressCallback
    ) -> Iterator[bytes]:
        total = len(body)
        sent = 0
        for chunk in body.iter_chunks(self.chunk_size):
            sent += len(chunk)
            progress_callback(sent, total)
            yield chunk

    def _upload_once(
        self,
        session: Session,
        project_id: str,
        body: MultipartBody,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        content = (
            self._body_stream(body, progress_callback)
            if progress_callback
            else body.body
        )
        response = self.sessions.send(
            "POST",
            UPLOAD_ENDPOINT.format(project_id=project_id),
            session=session,
            content=content,
            headers={
                "Content-Type": body.content_type,
                "Content-Length": str(len(body)),
                "Accept": "application/json",
            },
            timeout=self.upload_timeout,
        )
        raise_for_response(response, f"Upload project {project_id}", SpeleoDBUploadError)

    def upload(
        self,
        message: str,
        project: ProjectRef,
        archive: Optional[Archive] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """Upload a project archive with a commit message.

        Args:
            message: Upload (commit) message, must not be blank
            project: Project or project id
            archive: Archive bytes or path; defaults to the project's file
                under the project root
            progress_callback: Optional callback function(bytes_sent, total)
            cancel_event: Stops retrying when set

        Returns:
            UploadResult with the SHA-256 of the uploaded archive bytes

        Raises:
            ValueError: If the message is blank
            SpeleoDBNotAuthenticatedError: If logged out
            SpeleoDBFileNotFoundError: If the archive file does not exist
            SpeleoDBUploadError: If the server does not answer with 2xx
        """
        if not message or not message.strip():
            raise ValueError("Upload message cannot be empty.")

        project_id = project_id_of(project)
        session = self.sessions.require_session()
        data = self._read_archive(project_id, archive)
        checksum = calculate_checksum(data)

        if self.empty_template_checksum and checksum == self.empty_template_checksum:
            raise SpeleoDBUploadError(
                f"Upload of project {project_id} rejected: the archive is the "
                "empty project template"
            )

        body = self.build_upload_body(message, project_id, data)
        logger.debug(
            f"Uploading project {project_id}: {format_size(len(data))} archive, "
            f"{format_size(len(body))} body"
        )

        self.retry.execute(
            lambda: self._upload_once(session, project_id, body, progress_callback),
            cancel_event=cancel_event,
            description=f"Upload project {project_id}",
        )

        logger.info(f"Uploaded project {project_id} (sha256 {checksum})")
        return UploadResult(
            project_id=project_id, checksum=checksum, size=len(data), message=message
        )

    # =========================
    # Download
    # =========================

    def _download_once(
        self,
        session: Session,
        project_id: str,
        target: Path,
        progress_callback: Optional[ProgressCallback],
    ) -> Path:
        action = f"Download project {project_id}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SpeleoDBDownloadError(
                f"Failed to create directory {target.parent}: {e}"
            ) from e

        with self.sessions.stream(
            "GET",
            DOWNLOAD_ENDPOINT.format(project_id=project_id),
            session=session,
            timeout=self.download_timeout,
        ) as response:
            if response.status_code == 422:
                response.read()
                raise SpeleoDBProjectNotFoundError(
                    f"Project {project_id} (or its archive) was not found on the server",
                    status_code=422,
                )
            if not 200 <= response.status_code < 300:
                response.read()
                raise_for_response(response, action, SpeleoDBDownloadError)

            total = int(response.headers.get("Content-Length") or 0)
            downloaded = 0

            # Write next to the target, then rename, so readers never see a
            # partial archive
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{project_id}.", suffix=".part", dir=target.parent
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=self.chunk_size):
                        f.write(chunk)
                        downloaded += len(chunk)
                        if progress_callback:
                            progress_callback(downloaded, total)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, target)
            except OSError as e:
                raise SpeleoDBDownloadError(f"Failed to write {target}: {e}") from e
            finally:
                if tmp_path.exists():
                    tmp_path.unlink()

        logger.info(f"Downloaded project {project_id} to {target} ({format_size(downloaded)})")
        return target

    def download(
        self,
        project: ProjectRef,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Download a project archive to ``{root}/{project_id}.tml``.

        The file is replaced atomically, so an interrupted download leaves any
        previous archive untouched.

        Returns:
            Path of the downloaded archive

        Raises:
            SpeleoDBNotAuthenticatedError: If logged out
            SpeleoDBProjectNotFoundError: If the server answers 422
            SpeleoDBDownloadError: For any other non-2xx status or a write error
        """
        project_id = project_id_of(project)
        session = self.sessions.require_session()
        target = self.project_path(project_id)

        return self.retry.execute(
            lambda: self._download_once(session, project_id, target, progress_callback),
            cancel_event=cancel_event,
            description=f"Download project {project_id}",
        )

    # =========================
    # Verification
    # =========================

    def checksum(self, path: Union[str, Path]) -> str:
        """SHA-256 of a local archive."""
        path = Path(path)
        if not path.is_file():
            raise SpeleoDBFileNotFoundError(str(path))
        return calculate_file_checksum(path, self.chunk_size)

    def verify(self, path: Union[str, Path], expected_checksum: str) -> str:
        """Check a local archive against an expected SHA-256.

        Raises:
            SpeleoDBChecksumMismatchError: If the digests differ
        """
        actual = self.checksum(path)
        if actual != expected_checksum.lower():
            raise SpeleoDBChecksumMismatchError(expected_checksum, actual, str(path))
        return actual
