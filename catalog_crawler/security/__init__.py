"""Security utilities for the catalog crawler API."""

from .api_keys import Role, get_current_role, require_roles

__all__ = ["Role", "get_current_role", "require_roles"]
