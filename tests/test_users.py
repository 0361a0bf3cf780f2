"""
Test suite for user identities
"""

import pytest

from tallybank.audit import AuditTrail, AuditEventType
from tallybank.constants import Role
from tallybank.exceptions import NotFoundError, ValidationError
from tallybank.storage import InMemoryStorage
from tallybank.users import UserManager


class TestUserManager:
    """Test user creation and lookup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.users = UserManager(self.storage, self.audit_trail)

    def test_create_and_get_user(self):
        user = self.users.create_user("jdoe", "Jane", "Doe")

        loaded = self.users.get_user(user.id)
        assert loaded.username == "jdoe"
        assert loaded.full_name == "Jane Doe"
        assert loaded.role == Role.CLIENT
        assert not loaded.is_admin
        assert len(self.audit_trail.get_events_by_type(AuditEventType.USER_CREATED)) == 1

    def test_usernames_are_unique_and_required(self):
        self.users.create_user("jdoe", "Jane", "Doe")

        with pytest.raises(ValidationError, match="already taken"):
            self.users.create_user("jdoe", "John", "Doe")
        with pytest.raises(ValidationError, match="required"):
            self.users.create_user("  ", "No", "Name")

    def test_get_missing_user(self):
        with pytest.raises(NotFoundError):
            self.users.get_user("nobody")
        assert self.users.get_user_by_username("nobody") is None

    def test_list_by_role(self):
        self.users.create_user("zed", "Zed", "Z")
        self.users.create_user("admin", "Ada", "Admin", role=Role.ADMIN)
        self.users.create_user("amy", "Amy", "A")

        assert [u.username for u in self.users.list_users()] == ["admin", "amy", "zed"]
        assert [u.username for u in self.users.list_clients()] == ["amy", "zed"]
        assert self.users.list_users(Role.ADMIN)[0].is_admin

    def test_update_profile(self):
        user = self.users.create_user("jdoe", "Jane", "Doe")
        self.users.create_user("taken", "T", "T")

        updated = self.users.update_profile(user.id, surname="Smith", username="jsmith")
        assert updated.full_name == "Jane Smith"
        assert self.users.get_user_by_username("jsmith").id == user.id

        with pytest.raises(ValidationError):
            self.users.update_profile(user.id, username="taken")
