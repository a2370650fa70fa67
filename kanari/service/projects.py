from __future__ import annotations

from typing import Any, Dict, List, Optional

from kanari.logging import get_logger
from kanari.service import model_registry
from kanari.service.errors import BadRequestError, NotFoundError
from kanari.service.fs import BlobStore
from kanari.service.ownership import OwnershipGuard
from kanari.storage.models import Project

logger = get_logger(__name__)


def _validate_model(model: Optional[str]) -> str:
    if model is None:
        return model_registry.default_model_id()
    if not model_registry.is_known_model(model):
        raise BadRequestError(f"unknown model '{model}'", error_code="invalid_model")
    return model


def _validate_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise BadRequestError("project name is required", error_code="name_required")
    return cleaned


class ProjectService:
    def __init__(
        self, store: Any, blobs: BlobStore, *, guard: Optional[OwnershipGuard] = None
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.guard = guard or OwnershipGuard(store)

    def create(
        self,
        user_id: str,
        name: str,
        *,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        params: Optional[Dict] = None,
    ) -> Project:
        project = self.store.create_project(
            user_id,
            _validate_name(name),
            system_prompt=system_prompt,
            model=_validate_model(model),
            params=params,
        )
        logger.info("project_created", project_id=project.id, model=project.model)
        return project

    def list(self, user_id: str) -> List[Project]:
        return self.store.list_projects(user_id)

    def get(self, user_id: str, project_id: str) -> Project:
        return self.guard.assert_project_access(user_id, project_id)

    def update(self, user_id: str, project_id: str, changes: Dict[str, Any]) -> Project:
        """Apply a partial update; only keys present in ``changes`` are touched.

        An explicit ``None`` model resets the project to the default model.
        """
        self.guard.assert_project_access(user_id, project_id)
        fields: Dict[str, Any] = {}
        if "name" in changes:
            fields["name"] = _validate_name(changes["name"])
        if "system_prompt" in changes:
            fields["system_prompt"] = changes["system_prompt"]
        if "model" in changes:
            fields["model"] = _validate_model(changes["model"])
        if "params" in changes:
            fields["params"] = changes["params"]
        project = self.store.update_project(project_id, **fields)
        if not project:
            raise NotFoundError("project not found", error_code="project_not_found")
        return project

    def delete(self, user_id: str, project_id: str) -> None:
        self.guard.assert_project_access(user_id, project_id)
        removed = self.store.delete_project(project_id)
        for record in removed:
            self.blobs.delete(record.storage_url)
        logger.info("project_deleted", project_id=project_id, files_removed=len(removed))
