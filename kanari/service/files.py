from __future__ import annotations

import re
from typing import Any, List, Optional

from kanari.logging import get_logger
from kanari.service import extraction
from kanari.service.errors import BadRequestError
from kanari.service.fs import BlobStore
from kanari.service.ownership import OwnershipGuard
from kanari.storage.models import ProjectFile

logger = get_logger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^\w\-_\. ]")


def sanitize_filename(raw: Optional[str]) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", raw or "").lstrip(".")[:255]
    return cleaned or "untitled"


class FileService:
    def __init__(
        self,
        store: Any,
        blobs: BlobStore,
        *,
        max_upload_bytes: int,
        guard: Optional[OwnershipGuard] = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.max_upload_bytes = max_upload_bytes
        self.guard = guard or OwnershipGuard(store)

    def upload(
        self,
        user_id: str,
        project_id: str,
        *,
        filename: Optional[str],
        mime: Optional[str],
        data: bytes,
    ) -> ProjectFile:
        project = self.guard.assert_project_access(user_id, project_id)
        if not data:
            raise BadRequestError("uploaded file is empty", error_code="file_empty")
        if len(data) > self.max_upload_bytes:
            raise BadRequestError(
                "file too large",
                error_code="file_too_large",
                detail={"max_bytes": self.max_upload_bytes},
            )
        mime_type = (mime or "application/octet-stream").split(";", 1)[0].strip().lower()
        if not extraction.is_allowed_upload(mime_type):
            raise BadRequestError(
                f"unsupported file type '{mime_type}'",
                error_code="unsupported_file_type",
            )
        locator = self.blobs.save(data)
        record = self.store.create_file(
            project.id,
            user_id,
            name=sanitize_filename(filename),
            mime=mime_type,
            size=len(data),
            storage_url=locator,
        )
        logger.info(
            "file_uploaded",
            file_id=record.id,
            project_id=project.id,
            mime=mime_type,
            size=record.size,
        )
        return record

    def list(self, user_id: str, project_id: str) -> List[ProjectFile]:
        project = self.guard.assert_project_access(user_id, project_id)
        return self.store.list_files(project.id)

    def delete(self, user_id: str, file_id: str) -> None:
        record = self.guard.assert_file_owned(user_id, file_id)
        self.blobs.delete(record.storage_url)
        self.store.delete_file(record.id)
        logger.info("file_deleted", file_id=record.id, project_id=record.project_id)
