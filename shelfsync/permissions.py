from enum import Enum
from typing import Iterable, Mapping, Optional


class Role(str, Enum):
    PLATFORM_ADMIN = "platform_admin"
    STORE_ADMIN = "store_admin"
    STORE_MANAGER = "store_manager"
    STORE_EMPLOYEE = "store_employee"
    STORE_VIEWER = "store_viewer"


class Resource(str, Enum):
    SPACES = "spaces"
    PEOPLE = "people"
    CONFERENCE = "conference"
    SETTINGS = "settings"
    USERS = "users"
    AUDIT = "audit"
    SYNC = "sync"
    LABELS = "labels"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    IMPORT = "import"
    ASSIGN = "assign"
    TOGGLE = "toggle"
    TRIGGER = "trigger"
    VIEW = "view"
    MANAGE = "manage"


_CRUD = frozenset({Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE})

CAPABILITIES: Mapping[Role, Mapping[Resource, frozenset]] = {
    Role.STORE_ADMIN: {
        Resource.SPACES: _CRUD,
        Resource.PEOPLE: _CRUD | {Action.IMPORT, Action.ASSIGN},
        Resource.CONFERENCE: _CRUD | {Action.TOGGLE},
        Resource.SETTINGS: frozenset({Action.READ, Action.UPDATE}),
        Resource.USERS: _CRUD,
        Resource.AUDIT: frozenset({Action.READ}),
        Resource.SYNC: frozenset({Action.TRIGGER, Action.VIEW, Action.MANAGE}),
        Resource.LABELS: frozenset({Action.VIEW, Action.MANAGE}),
    },
    Role.STORE_MANAGER: {
        Resource.SPACES: _CRUD,
        Resource.PEOPLE: _CRUD | {Action.IMPORT, Action.ASSIGN},
        Resource.CONFERENCE: _CRUD | {Action.TOGGLE},
        Resource.SETTINGS: frozenset({Action.READ}),
        Resource.SYNC: frozenset({Action.TRIGGER, Action.VIEW}),
        Resource.LABELS: frozenset({Action.VIEW, Action.MANAGE}),
    },
    Role.STORE_EMPLOYEE: {
        Resource.SPACES: frozenset({Action.READ, Action.UPDATE}),
        Resource.PEOPLE: frozenset({Action.READ, Action.UPDATE}),
        Resource.CONFERENCE: frozenset({Action.READ, Action.UPDATE}),
        Resource.SYNC: frozenset({Action.VIEW}),
        Resource.LABELS: frozenset({Action.VIEW}),
    },
    Role.STORE_VIEWER: {
        Resource.SPACES: frozenset({Action.READ}),
        Resource.PEOPLE: frozenset({Action.READ}),
        Resource.CONFERENCE: frozenset({Action.READ}),
        Resource.SYNC: frozenset({Action.VIEW}),
        Resource.LABELS: frozenset({Action.VIEW}),
    },
}


def parse_role(value: Optional[str]) -> Optional[Role]:
    if value is None:
        return None
    try:
        return Role(value.lower())
    except ValueError:
        return None


def has_permission(role: Optional[Role], resource: Resource, action: Action) -> bool:
    if role is None:
        return False
    if role is Role.PLATFORM_ADMIN:
        return True
    return action in CAPABILITIES.get(role, {}).get(resource, frozenset())


def can(
    global_role: Optional[Role],
    store_roles: Mapping[int, Role],
    store_id: Optional[int],
    resource: Resource,
    action: Action,
) -> bool:
    """Check an action for one store, or for any of the user's stores when store_id is None."""
    if global_role is Role.PLATFORM_ADMIN:
        return True
    if store_id is None:
        return any(has_permission(role, resource, action) for role in store_roles.values())
    return has_permission(store_roles.get(store_id), resource, action)


def permitted_store_ids(
    store_roles: Mapping[int, Role], resource: Resource, action: Action
) -> list[int]:
    return sorted(
        store_id
        for store_id, role in store_roles.items()
        if has_permission(role, resource, action)
    )


def roles_from_memberships(memberships: Iterable[tuple[int, str]]) -> dict[int, Role]:
    roles: dict[int, Role] = {}
    for store_id, raw in memberships:
        role = parse_role(raw)
        if role is not None and role is not Role.PLATFORM_ADMIN:
            roles[store_id] = role
    return roles
