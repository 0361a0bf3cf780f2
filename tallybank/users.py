"""
User Identity Module

Users of the bank and their role. Authentication, sessions and permission
checks belong to the outer web layer; the engine only needs to know who a
user is and whether they are an admin or a client.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .constants import Role
from .exceptions import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord


@dataclass
class User(StorageRecord):
    """A bank user. Only the profile fields are mutable."""
    username: str
    name: str
    surname: str
    role: Role = Role.CLIENT

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}".strip()

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class UserManager:
    """Creates and looks up users"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "users"

    def create_user(self, username: str, name: str, surname: str,
                    role: Role = Role.CLIENT) -> User:
        """
        Create a new user

        Raises:
            ValidationError: If the username is blank or already taken
        """
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")

        with self.storage.atomic():
            if self.get_user_by_username(username):
                raise ValidationError(f"Username '{username}' is already taken")

            now = datetime.now(timezone.utc)
            user = User(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                username=username,
                name=name,
                surname=surname,
                role=role
            )
            self.storage.save(self.table_name, user.id, self._user_to_dict(user))

            self.audit_trail.log_event(
                AuditEventType.USER_CREATED,
                "user",
                user.id,
                {"username": username, "role": role.label}
            )

        return user

    def get_user(self, user_id: str) -> User:
        """Get user by ID, raising NotFoundError when absent"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            raise NotFoundError(f"User {user_id} not found")
        return self._user_from_dict(data)

    def get_user_by_username(self, username: str) -> Optional[User]:
        users = self.storage.find(self.table_name, {"username": username})
        if not users:
            return None
        return self._user_from_dict(users[0])

    def list_users(self, role: Optional[Role] = None) -> List[User]:
        """List users, optionally filtered by role, sorted by username"""
        if role is None:
            rows = self.storage.load_all(self.table_name)
        else:
            rows = self.storage.find(self.table_name, {"role": role.code})
        users = [self._user_from_dict(row) for row in rows]
        return sorted(users, key=lambda u: u.username)

    def list_clients(self) -> List[User]:
        return self.list_users(Role.CLIENT)

    def update_profile(self, user_id: str, name: Optional[str] = None,
                       surname: Optional[str] = None,
                       username: Optional[str] = None) -> User:
        """Update the mutable profile fields of a user"""
        with self.storage.atomic():
            user = self.get_user(user_id)
            changes: Dict[str, Any] = {}

            if username is not None and username != user.username:
                existing = self.get_user_by_username(username)
                if existing and existing.id != user_id:
                    raise ValidationError(f"Username '{username}' is already taken")
                user.username = username
                changes["username"] = username
            if name is not None:
                user.name = name
                changes["name"] = name
            if surname is not None:
                user.surname = surname
                changes["surname"] = surname

            if changes:
                user.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.table_name, user.id, self._user_to_dict(user))
                self.audit_trail.log_event(AuditEventType.USER_UPDATED, "user", user.id, changes)

        return user

    def _user_to_dict(self, user: User) -> Dict[str, Any]:
        result = user.to_dict()
        result["role"] = user.role.code
        return result

    def _user_from_dict(self, data: Dict[str, Any]) -> User:
        data = dict(data)
        data["role"] = Role.from_code(data["role"])
        return User.from_dict(data)
