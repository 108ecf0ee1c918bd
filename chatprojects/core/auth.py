# chatprojects/core/auth.py
from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Caller:
    user_id: int


class TokenAuthenticator:
    """Resolve ``Authorization: Bearer <token>`` headers to a caller."""

    def __init__(self, tokens: Dict[str, int]) -> None:
        self._tokens = dict(tokens)

    def authenticate(self, authorization: Optional[str]) -> Optional[Caller]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        token = token.strip()
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known, token):
                return Caller(user_id=user_id)
        return None
