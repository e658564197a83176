from __future__ import annotations

import uuid
from dataclasses import dataclass, field


STAFF_PERMISSION = "requests.manage"


@dataclass(slots=True)
class AuthContext:
    """Caller identity and capabilities used for company scoping and permission checks."""

    user_id: str
    company_id: uuid.UUID | None = None
    correlation_id: str | None = None
    permissions: list[str] = field(default_factory=list)
    is_system: bool = False

    def has(self, permission: str) -> bool:
        return self.is_system or permission in self.permissions

    @property
    def is_staff(self) -> bool:
        return self.has(STAFF_PERMISSION)

    @classmethod
    def system(cls, actor_id: str = "system", *, correlation_id: str | None = None) -> AuthContext:
        return cls(user_id=actor_id, correlation_id=correlation_id, is_system=True)
