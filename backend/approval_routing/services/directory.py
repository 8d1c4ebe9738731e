"""Identity directory: who holds which role, who reports to whom.

The engine never owns user records. It consults an ``IdentityDirectory`` at
evaluation time; ``StaticDirectory`` is an in-memory implementation loaded from
a JSON file (``DIRECTORY_FILE``) or built directly in tests.

JSON layout::

    {
      "users": {
        "alice": {"roles": ["manager"], "department": "finance", "manager": "carol"},
        "carol": {"roles": ["director"], "department": "finance", "executive": true}
      },
      "department_heads": {"finance": "carol"}
    }
"""
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from approval_routing.core.config import settings

logger = logging.getLogger(__name__)


class IdentityDirectory(Protocol):
    """Read-only lookups the approver sources depend on."""

    def users_with_role(self, role: str) -> list[str]:
        ...

    def manager_of(self, user_id: str) -> str | None:
        ...

    def department_head(self, department: str) -> str | None:
        ...

    def executives(self) -> list[str]:
        ...

    def department_of(self, user_id: str) -> str | None:
        ...

    def has_role(self, user_id: str, role: str) -> bool:
        ...


@dataclass
class DirectoryUser:
    user_id: str
    roles: frozenset[str] = frozenset()
    department: str | None = None
    manager: str | None = None
    executive: bool = False


@dataclass
class StaticDirectory:
    users: dict[str, DirectoryUser] = field(default_factory=dict)
    department_heads: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "StaticDirectory":
        users = {
            user_id: DirectoryUser(
                user_id=user_id,
                roles=frozenset(r.lower() for r in entry.get("roles", [])),
                department=entry.get("department"),
                manager=entry.get("manager"),
                executive=bool(entry.get("executive", False)),
            )
            for user_id, entry in data.get("users", {}).items()
        }
        return cls(users=users, department_heads=dict(data.get("department_heads", {})))

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticDirectory":
        with open(path, encoding="utf-8") as fh:
            return cls.from_dict(json.load(fh))

    def users_with_role(self, role: str) -> list[str]:
        wanted = role.lower()
        return sorted(u.user_id for u in self.users.values() if wanted in u.roles)

    def manager_of(self, user_id: str) -> str | None:
        user = self.users.get(user_id)
        return user.manager if user else None

    def department_head(self, department: str) -> str | None:
        return self.department_heads.get(department)

    def executives(self) -> list[str]:
        return sorted(u.user_id for u in self.users.values() if u.executive)

    def department_of(self, user_id: str) -> str | None:
        user = self.users.get(user_id)
        return user.department if user else None

    def has_role(self, user_id: str, role: str) -> bool:
        user = self.users.get(user_id)
        return bool(user and role.lower() in user.roles)


@lru_cache
def get_directory() -> IdentityDirectory:
    """Directory used by the API and workers; empty when DIRECTORY_FILE is unset."""
    if not settings.DIRECTORY_FILE:
        logger.warning("DIRECTORY_FILE not set; role and hierarchy approvers will resolve to nobody.")
        return StaticDirectory()
    directory = StaticDirectory.from_file(settings.DIRECTORY_FILE)
    logger.info("Loaded identity directory with %d users from %s", len(directory.users), settings.DIRECTORY_FILE)
    return directory
