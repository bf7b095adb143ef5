"""
Organization role hierarchy and permission resolution.

Roles form a fixed total order:

    viewer < developer < project_manager < billing_manager < admin < owner

Each role is granted its own permissions plus everything granted to the roles
below it. Stored custom permissions are an additive overlay on top of the
role-derived set; they can never take a permission away, so demoting a member
always shrinks what the role contributes.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Tuple, Union


class Role(str, Enum):
    VIEWER = "viewer"
    DEVELOPER = "developer"
    PROJECT_MANAGER = "project_manager"
    BILLING_MANAGER = "billing_manager"
    ADMIN = "admin"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self) + 1

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()

    def includes(self, other: "Role") -> bool:
        """True when this role is at least as high as ``other``."""
        return self.rank >= other.rank

    def outranks(self, other: "Role") -> bool:
        return self.rank > other.rank

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown organization role: {value!r}") from exc

    @classmethod
    def choices(cls) -> List[Tuple[str, str]]:
        return [(role.value, role.label) for role in cls]


_ROLE_ORDER: Tuple[Role, ...] = tuple(Role)


class Permission(str, Enum):
    VIEW_ORGANIZATION = "view_organization"
    VIEW_PROJECTS = "view_projects"
    CREATE_PROJECTS = "create_projects"
    EDIT_PROJECTS = "edit_projects"
    MANAGE_PROJECTS = "manage_projects"
    VIEW_MEMBERS = "view_members"
    VIEW_BILLING = "view_billing"
    MANAGE_BILLING = "manage_billing"
    MANAGE_SEATS = "manage_seats"
    INVITE_MEMBERS = "invite_members"
    MANAGE_MEMBERS = "manage_members"
    MANAGE_ROLES = "manage_roles"
    MANAGE_SETTINGS = "manage_settings"
    DELETE_ORGANIZATION = "delete_organization"
    TRANSFER_OWNERSHIP = "transfer_ownership"


# Permissions introduced at each level; lower grants are inherited.
_ROLE_GRANTS: Dict[Role, FrozenSet[Permission]] = {
    Role.VIEWER: frozenset({Permission.VIEW_ORGANIZATION, Permission.VIEW_PROJECTS}),
    Role.DEVELOPER: frozenset({Permission.CREATE_PROJECTS, Permission.EDIT_PROJECTS}),
    Role.PROJECT_MANAGER: frozenset({Permission.MANAGE_PROJECTS, Permission.VIEW_MEMBERS}),
    Role.BILLING_MANAGER: frozenset(
        {Permission.VIEW_BILLING, Permission.MANAGE_BILLING, Permission.MANAGE_SEATS}
    ),
    Role.ADMIN: frozenset(
        {
            Permission.INVITE_MEMBERS,
            Permission.MANAGE_MEMBERS,
            Permission.MANAGE_ROLES,
            Permission.MANAGE_SETTINGS,
        }
    ),
    Role.OWNER: frozenset({Permission.DELETE_ORGANIZATION, Permission.TRANSFER_OWNERSHIP}),
}


def _derive_role_permissions() -> Dict[Role, FrozenSet[Permission]]:
    derived: Dict[Role, FrozenSet[Permission]] = {}
    accumulated: FrozenSet[Permission] = frozenset()
    for role in _ROLE_ORDER:
        accumulated = accumulated | _ROLE_GRANTS[role]
        derived[role] = accumulated
    return derived


_ROLE_PERMISSIONS = _derive_role_permissions()

PermissionSet = FrozenSet[Permission]


def permissions_for_role(role: Union[str, Role]) -> PermissionSet:
    return _ROLE_PERMISSIONS[Role.parse(role)]


def parse_permissions(values: Iterable[Union[str, Permission]]) -> PermissionSet:
    """Validate a stored permission overlay against the fixed permission set."""
    if values is None:
        return frozenset()
    if isinstance(values, (str, bytes, dict)):
        raise ValueError("Custom permissions must be a list of permission names.")

    parsed = set()
    unknown = []
    for value in values:
        try:
            parsed.add(value if isinstance(value, Permission) else Permission(str(value)))
        except ValueError:
            unknown.append(str(value))
    if unknown:
        raise ValueError(f"Unknown permissions: {', '.join(sorted(unknown))}")
    return frozenset(parsed)


def is_membership_active(membership) -> bool:
    if membership is None:
        return False
    if not getattr(membership, "is_active", False):
        return False
    return getattr(membership, "status", "active") == "active"


def resolve(membership) -> PermissionSet:
    """Effective permissions of a membership: role grants plus the custom overlay."""
    if not is_membership_active(membership):
        return frozenset()
    role_permissions = permissions_for_role(membership.role)
    custom = parse_permissions(getattr(membership, "custom_permissions", None) or [])
    return role_permissions | custom


def authorize(membership, required: Union[Role, Permission]) -> bool:
    """Check a membership against a minimum role or a named permission."""
    if not is_membership_active(membership):
        return False
    if isinstance(required, Role):
        return Role.parse(membership.role).includes(required)
    if isinstance(required, Permission):
        return required in resolve(membership)
    raise TypeError(f"Unsupported authorization requirement: {required!r}")


__all__ = [
    "Role",
    "Permission",
    "PermissionSet",
    "permissions_for_role",
    "parse_permissions",
    "is_membership_active",
    "resolve",
    "authorize",
]
