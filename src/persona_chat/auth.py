"""Principal resolution.

Real deployments put an identity provider in front of the service; this
module only maps an already-issued bearer token to a principal.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: Optional[str] = None


class TokenAuth:
    """Static token table, usually from the ``auth.tokens`` config section.

    Values may be a plain user id or a mapping with ``user_id`` / ``email``.
    """

    def __init__(self, tokens: Optional[Mapping[str, Any]] = None) -> None:
        self._principals: Dict[str, Principal] = {}
        for token, value in (tokens or {}).items():
            if isinstance(value, Mapping):
                user_id = str(value.get("user_id") or "").strip()
                email = value.get("email")
            else:
                user_id, email = str(value or "").strip(), None
            if token and user_id:
                self._principals[str(token)] = Principal(user_id=user_id, email=email)

    def resolve(self, token: Optional[str]) -> Optional[Principal]:
        if not token:
            return None
        return self._principals.get(token.strip())

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "TokenAuth":
        return cls((cfg.get("auth") or {}).get("tokens") or {})


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer ...`` header value."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
