# chatprojects/core/collaborators.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, Field

from chatprojects.core.settings import AppSettings

log = logging.getLogger("app.collaborators")


class ProjectSettings(BaseModel):
    id: int
    name: str = ""
    instructions: Optional[str] = None
    model: Optional[str] = None
    vector_store_id: Optional[str] = None
    max_results: Optional[int] = None
    allowed_user_ids: List[int] = Field(default_factory=list)


class CredentialStore(Protocol):
    def get_credential(self, provider: str) -> Optional[str]:
        ...

    def set_credential(self, provider: str, api_key: Optional[str]) -> None:
        ...


class ProjectStore(Protocol):
    def get_project(self, project_id: int) -> Optional[ProjectSettings]:
        ...


class AccessPolicy(Protocol):
    def can_use_chat(self, user_id: int) -> bool:
        ...

    def can_access_project(self, user_id: int, project_id: int) -> bool:
        ...


class SettingsCredentialStore:
    """Credentials from environment settings, with in-process overrides."""

    def __init__(self, settings: AppSettings) -> None:
        self._settings = settings
        self._overrides: Dict[str, Optional[str]] = {}

    def get_credential(self, provider: str) -> Optional[str]:
        if provider in self._overrides:
            return self._overrides[provider]
        return self._settings.api_key_for(provider)

    def set_credential(self, provider: str, api_key: Optional[str]) -> None:
        self._overrides[provider] = api_key or None


class InMemoryProjectStore:
    def __init__(self, projects: Iterable[ProjectSettings] = ()) -> None:
        self._projects: Dict[int, ProjectSettings] = {p.id: p for p in projects}

    def get_project(self, project_id: int) -> Optional[ProjectSettings]:
        return self._projects.get(project_id)

    def add(self, project: ProjectSettings) -> None:
        self._projects[project.id] = project

    @classmethod
    def from_file(cls, path: Optional[str]) -> "InMemoryProjectStore":
        if not path:
            return cls()
        p = Path(path)
        if not p.exists():
            log.warning({"event": "projects_file_missing", "path": str(p)})
            return cls()
        raw = json.loads(p.read_text(encoding="utf-8"))
        return cls(ProjectSettings.model_validate(item) for item in raw)


class ProjectMembershipPolicy:
    """Any authenticated user may chat; projects may restrict to listed users."""

    def __init__(self, projects: ProjectStore) -> None:
        self._projects = projects

    def can_use_chat(self, user_id: int) -> bool:
        return user_id > 0

    def can_access_project(self, user_id: int, project_id: int) -> bool:
        project = self._projects.get_project(project_id)
        if project is None or user_id <= 0:
            return False
        return not project.allowed_user_ids or user_id in project.allowed_user_ids
