from __future__ import annotations

from typing import Any

from kanari.service.errors import ForbiddenError, NotFoundError
from kanari.storage.models import Chat, Project, ProjectFile


class OwnershipGuard:
    """User-owns-resource checks shared by every service.

    Chat and message surfaces answer NotFound for resources that exist but
    belong to someone else, so probing ids reveals nothing. The project and
    file CRUD surfaces distinguish a missing row from a foreign one.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def assert_project_owned(self, user_id: str, project_id: str) -> Project:
        project = self.store.get_project(project_id, user_id=user_id)
        if not project:
            raise NotFoundError("project not found", error_code="project_not_found")
        return project

    def assert_chat_owned(self, user_id: str, chat_id: str) -> Chat:
        chat = self.store.get_chat(chat_id, user_id=user_id)
        if not chat:
            raise NotFoundError("chat not found", error_code="chat_not_found")
        return chat

    def assert_project_access(self, user_id: str, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if not project:
            raise NotFoundError("project not found", error_code="project_not_found")
        if project.user_id != user_id:
            raise ForbiddenError(
                "project is owned by another user", error_code="project_forbidden"
            )
        return project

    def assert_file_owned(self, user_id: str, file_id: str) -> ProjectFile:
        record = self.store.get_file(file_id)
        if not record:
            raise NotFoundError("file not found", error_code="file_not_found")
        if record.user_id != user_id:
            raise ForbiddenError("file is owned by another user", error_code="file_forbidden")
        return record
