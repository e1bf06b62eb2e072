from __future__ import annotations

from typing import Protocol


class AccessPolicy(Protocol):
    """Capability check supplied by the surrounding product.

    Role and file-permission precedence live behind these two booleans; the
    engine never inspects roles itself.
    """

    def can_edit(self, user_id: str, file_id: str) -> bool: ...

    def can_access_project(self, user_id: str, project_id: str) -> bool: ...


class AllowAllAccess:
    """Default policy for single-tenant/dev deployments."""

    def can_edit(self, user_id: str, file_id: str) -> bool:
        return bool(user_id)

    def can_access_project(self, user_id: str, project_id: str) -> bool:
        return bool(user_id)
