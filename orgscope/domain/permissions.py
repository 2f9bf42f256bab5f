from __future__ import annotations

from enum import StrEnum


class PermissionAction(StrEnum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


# Grants without a qualifier are stored with an empty resource so the
# (unit_id, module, action, resource) unique constraint also covers them.
NO_RESOURCE = ""


def normalize_resource(resource: str | None) -> str:
    if resource is None:
        return NO_RESOURCE
    return resource.strip()


def denormalize_resource(resource: str | None) -> str | None:
    if not resource:
        return None
    return resource


def permission_key(module: str, action: PermissionAction | str, resource: str | None = None) -> str:
    key = f"{module}.{PermissionAction(action).value}"
    stored = denormalize_resource(resource)
    if stored is not None:
        key = f"{key}:{stored}"
    return key


def grant_matches(
    grant_module: str,
    grant_action: PermissionAction | str,
    grant_resource: str | None,
    module: str,
    action: PermissionAction | str,
    resource: str | None = None,
) -> bool:
    """Match a stored grant against a permission query.

    A query without a resource is satisfied by any grant on the same module and
    action; a query with a resource needs a grant on exactly that resource.
    """
    if grant_module != module or PermissionAction(grant_action) != PermissionAction(action):
        return False
    if resource is None:
        return True
    return denormalize_resource(grant_resource) == resource
