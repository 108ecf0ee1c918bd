# apps/api/deps.py
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from chatprojects.core.auth import Caller, TokenAuthenticator
from chatprojects.core.collaborators import (
    AccessPolicy,
    CredentialStore,
    InMemoryProjectStore,
    ProjectMembershipPolicy,
    ProjectStore,
    SettingsCredentialStore,
)
from chatprojects.core.settings import get_settings


@lru_cache(maxsize=1)
def get_credential_store() -> CredentialStore:
    return SettingsCredentialStore(get_settings())


@lru_cache(maxsize=1)
def get_project_store() -> ProjectStore:
    return InMemoryProjectStore.from_file(get_settings().projects_file)


def get_access_policy(projects: ProjectStore = Depends(get_project_store)) -> AccessPolicy:
    return ProjectMembershipPolicy(projects)


@lru_cache(maxsize=1)
def get_authenticator() -> TokenAuthenticator:
    return TokenAuthenticator(get_settings().auth_tokens)


def get_caller(
    authorization: Optional[str] = Header(None),
    authenticator: TokenAuthenticator = Depends(get_authenticator),
) -> Optional[Caller]:
    return authenticator.authenticate(authorization)


def require_caller(caller: Optional[Caller] = Depends(get_caller)) -> Caller:
    if caller is None:
        raise HTTPException(status_code=401, detail="You must be logged in.")
    return caller
