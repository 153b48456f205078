"""API key based authentication utilities."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from ..config import Settings


class Role(str, Enum):
    """Role enumeration for API keys."""

    ADMIN = "admin"
    OPERATOR = "operator"


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def build_role_map(settings: Settings) -> Dict[str, Role]:
    role_map: Dict[str, Role] = {}
    role_map.update({key: Role.OPERATOR for key in settings.operator_api_keys})
    role_map.update({key: Role.ADMIN for key in settings.admin_api_keys})
    return role_map


def get_current_role(request: Request, api_key: Optional[str] = Security(_api_key_header)) -> Role:
    """Validate API key and return the associated role."""

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing API key")

    role_map = build_role_map(request.app.state.runtime.settings)
    try:
        return role_map[api_key]
    except KeyError as exc:
        raise HTTPException(status_code=403, detail="Invalid API key") from exc


def require_roles(*allowed_roles: Role):
    """FastAPI dependency to enforce role-based access control."""

    allowed_set = {Role(role) for role in allowed_roles}

    def _dependency(role: Role = Depends(get_current_role)) -> Role:
        if role not in allowed_set:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return role

    return _dependency


__all__ = ["Role", "build_role_map", "get_current_role", "require_roles"]
