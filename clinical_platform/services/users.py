"""In-memory users, sessions and role-based permissions."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from loguru import logger

from clinical_platform.services.base import UserService


DEFAULT_ROLE_PERMISSIONS: Dict[str, Set[str]] = {
    "admin": {"*"},
    "data-manager": {"workflow:start", "workflow:approve", "module:execute", "document:write"},
    "investigator": {"workflow:start", "document:read"},
    "monitor": {"document:read", "audit:read"},
}


class InMemoryUserService(UserService):
    """User service keeping users and sessions in memory.

    A user holds a set of roles; permissions come from the role table, with
    ``*`` granting everything.
    """

    def __init__(
        self,
        role_permissions: Optional[Dict[str, Set[str]]] = None,
        session_ttl: timedelta = timedelta(hours=8)
    ):
        self.role_permissions = role_permissions or DEFAULT_ROLE_PERMISSIONS
        self.session_ttl = session_ttl
        self._users: Dict[str, Dict[str, Any]] = {
            "system": {"id": "system", "name": "System", "roles": ["admin"]},
        }
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def add_user(self, user_id: str, name: str, roles: List[str]) -> Dict[str, Any]:
        user = {"id": user_id, "name": name, "roles": list(roles)}
        self._users[user_id] = user
        return dict(user)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._users.get(user_id)
        return dict(user) if user else None

    async def create_session(self, user_id: str) -> Dict[str, Any]:
        if user_id not in self._users:
            raise KeyError(f"Unknown user '{user_id}'")
        now = datetime.now()
        session = {
            "id": str(uuid4()),
            "user_id": user_id,
            "created_at": now,
            "expires_at": now + self.session_ttl,
        }
        self._sessions[session["id"]] = session
        logger.info(f"Session created for {user_id}")
        return dict(session)

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session["expires_at"] <= datetime.now():
            del self._sessions[session_id]
            return None
        return dict(session)

    async def end_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def _permissions(self, user_id: str) -> Set[str]:
        user = self._users.get(user_id)
        if user is None:
            return set()
        permissions: Set[str] = set()
        for role in user["roles"]:
            permissions |= self.role_permissions.get(role, set())
        return permissions

    async def has_permission(self, user_id: str, permission: str) -> bool:
        permissions = self._permissions(user_id)
        return "*" in permissions or permission in permissions

    async def has_role(self, user_id: str, role: str) -> bool:
        user = self._users.get(user_id)
        return bool(user) and role in user["roles"]

    async def shutdown(self) -> None:
        self._sessions.clear()

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "users": len(self._users), "sessions": len(self._sessions)}
