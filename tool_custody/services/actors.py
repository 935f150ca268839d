from __future__ import annotations

from dataclasses import dataclass

from tool_custody.services.errors import PermissionDeniedError, ValidationFailedError


ROLE_ADMIN = "admin"
ROLE_USER = "user"
KNOWN_ROLES = {ROLE_ADMIN, ROLE_USER}


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def build_actor(raw_user_id: int | str | None, raw_role: str | None) -> Actor:
    raw = str(raw_user_id if raw_user_id is not None else "").strip()
    if not raw or not raw.isdigit() or int(raw) <= 0:
        raise ValidationFailedError("Actor id must be a positive number.", field="actorID")
    role = (raw_role or ROLE_USER).strip().lower()
    if role not in KNOWN_ROLES:
        raise ValidationFailedError(f"Unknown actor role: {raw_role}", field="actorRole")
    return Actor(user_id=int(raw), role=role)


def require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError(f"Admin role required to {action}.", entity_id=actor.user_id)
