from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from orgscope.domain.hierarchy import MembershipRole, UnitType
from orgscope.domain.models import (
    OrgUnit,
    OrgUnitCreate,
    PermissionGrantCreate,
    PermissionGrantRead,
    User,
    UserCreate,
)
from orgscope.domain.permissions import PermissionAction
from orgscope.infra import db, events
from orgscope.services.errors import DuplicateGrantError, NotFoundError
from orgscope.services.membership_service import MembershipService
from orgscope.services.org_unit_service import OrgUnitService
from orgscope.services.permission_service import PermissionService
from orgscope.services.user_service import UserService


@pytest.fixture()
def org_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "permissions_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    events.event_bus.clear()
    test_engine.dispose()


def _unit(code: str, unit_type: UnitType = UnitType.DIRECCION, parent: OrgUnit | None = None) -> OrgUnit:
    return OrgUnitService().create(
        OrgUnitCreate(
            code=code,
            name=f"Unit {code}",
            unit_type=unit_type,
            parent_id=parent.id if parent is not None else None,
        )
    )


def _user(username: str) -> User:
    return UserService().create_user(UserCreate(username=username, full_name=username.title()))


def _grant(module: str, action: PermissionAction, resource: str | None = None) -> PermissionGrantCreate:
    return PermissionGrantCreate(module=module, action=action, resource=resource)


def test_grant_and_duplicate(org_engine: Engine) -> None:
    service = PermissionService()
    unit = _unit("HR")

    grant = service.grant(unit.id, _grant("hr", PermissionAction.READ))
    assert grant.resource == ""
    assert PermissionGrantRead.model_validate(grant).resource is None

    with pytest.raises(DuplicateGrantError):
        service.grant(unit.id, _grant("hr", PermissionAction.READ))
    with pytest.raises(DuplicateGrantError):
        service.grant(unit.id, _grant("hr", PermissionAction.READ, None))

    scoped = service.grant(unit.id, _grant("hr", PermissionAction.READ, "payroll"))
    assert scoped.resource == "payroll"

    with pytest.raises(NotFoundError):
        service.grant("missing", _grant("hr", PermissionAction.READ))


def test_list_and_revoke(org_engine: Engine) -> None:
    service = PermissionService()
    unit = _unit("HR")
    read = service.grant(unit.id, _grant("hr", PermissionAction.READ))
    service.grant(unit.id, _grant("hr", PermissionAction.UPDATE))
    service.grant(unit.id, _grant("finance", PermissionAction.READ))

    assert len(service.list_unit_grants(unit.id)) == 3
    assert len(service.list_unit_grants(unit.id, module="hr")) == 2
    only_read = service.list_unit_grants(unit.id, action=PermissionAction.READ)
    assert sorted(item.module for item in only_read) == ["finance", "hr"]

    service.revoke(read.id)
    assert len(service.list_unit_grants(unit.id, module="hr")) == 1
    with pytest.raises(NotFoundError):
        service.revoke(read.id)
    with pytest.raises(NotFoundError):
        service.list_unit_grants("missing")


def test_grant_bulk_is_idempotent_and_copy(org_engine: Engine) -> None:
    service = PermissionService()
    source = _unit("SRC")
    target = _unit("DST")
    existing = service.grant(source.id, _grant("hr", PermissionAction.READ))

    result = service.grant_bulk(
        source.id,
        [
            _grant("hr", PermissionAction.READ),
            _grant("hr", PermissionAction.CREATE, "leave"),
            _grant("hr", PermissionAction.CREATE, "leave"),
        ],
    )
    assert len(result) == 2
    assert result[0].id == existing.id
    assert len(service.list_unit_grants(source.id)) == 2

    service.grant(target.id, _grant("hr", PermissionAction.READ))
    copied = service.copy_grants(source.id, target.id)
    assert len(copied) == 2
    assert {(item.module, item.action, item.resource) for item in service.list_unit_grants(target.id)} == {
        ("hr", PermissionAction.READ, ""),
        ("hr", PermissionAction.CREATE, "leave"),
    }


def test_effective_permissions_are_direct_membership_only(org_engine: Engine) -> None:
    permissions = PermissionService()
    memberships = MembershipService()
    parent = _unit("DIR")
    child = _unit("COORD", UnitType.COORDINACION, parent)
    sibling = _unit("OTHER")
    user = _user("worker")

    permissions.grant(parent.id, _grant("finance", PermissionAction.READ))
    permissions.grant(child.id, _grant("hr", PermissionAction.READ))
    permissions.grant(child.id, _grant("hr", PermissionAction.UPDATE, "payroll"))
    permissions.grant(sibling.id, _grant("hr", PermissionAction.READ))
    memberships.assign(child.id, user.id, MembershipRole.MEMBER)

    # Membership in the child does not inherit grants of the parent.
    assert permissions.effective_permission_keys(user.id) == ["hr.read", "hr.update:payroll"]
    assert permissions.has_permission(user.id, child.id, "hr", PermissionAction.READ) is True
    assert permissions.has_permission(user.id, parent.id, "finance", PermissionAction.READ) is False
    assert permissions.has_permission_anywhere(user.id, "finance", "read") is False

    memberships.assign(sibling.id, user.id)
    effective = permissions.effective_permissions(user.id)
    by_key = {item.key: item for item in effective}
    assert sorted(by_key) == ["hr.read", "hr.update:payroll"]
    assert by_key["hr.read"].unit_ids == sorted([child.id, sibling.id])
    assert by_key["hr.update:payroll"].resource == "payroll"
    assert by_key["hr.read"].resource is None

    with pytest.raises(NotFoundError):
        permissions.effective_permissions("missing")


def test_has_permission_resource_matching(org_engine: Engine) -> None:
    permissions = PermissionService()
    unit = _unit("HR")
    user = _user("worker")
    outsider = _user("outsider")
    MembershipService().assign(unit.id, user.id)
    permissions.grant(unit.id, _grant("hr", PermissionAction.UPDATE, "payroll"))
    permissions.grant(unit.id, _grant("hr", PermissionAction.READ))

    assert permissions.has_permission(user.id, unit.id, "hr", "update") is True
    assert permissions.has_permission(user.id, unit.id, "hr", "update", "payroll") is True
    assert permissions.has_permission(user.id, unit.id, "hr", "update", "leave") is False
    assert permissions.has_permission(user.id, unit.id, "hr", "read", "payroll") is False
    assert permissions.has_permission(user.id, unit.id, "hr", "delete") is False
    assert permissions.has_permission(outsider.id, unit.id, "hr", "read") is False
    assert permissions.has_permission_anywhere(user.id, "hr", PermissionAction.UPDATE, "payroll") is True
    assert permissions.effective_permission_keys(outsider.id) == []


def test_removed_membership_drops_permissions(org_engine: Engine) -> None:
    permissions = PermissionService()
    memberships = MembershipService()
    unit = _unit("HR")
    user = _user("worker")
    memberships.assign(unit.id, user.id)
    permissions.grant(unit.id, _grant("hr", PermissionAction.READ))
    assert permissions.has_permission_anywhere(user.id, "hr", "read") is True

    memberships.remove(unit.id, user.id)
    assert permissions.has_permission_anywhere(user.id, "hr", "read") is False


def test_child_grants_do_not_reach_parent_members(org_engine: Engine) -> None:
    permissions = PermissionService()
    parent = _unit("DIR")
    child = _unit("COORD", UnitType.COORDINACION, parent)
    grandchild = _unit("DEPT", UnitType.DEPARTAMENTO, child)
    director = _user("director")
    MembershipService().assign(parent.id, director.id, MembershipRole.HEAD)

    permissions.grant(parent.id, _grant("reports", PermissionAction.READ))
    permissions.grant(child.id, _grant("hr", PermissionAction.UPDATE))
    permissions.grant(grandchild.id, _grant("finance", PermissionAction.DELETE))

    assert permissions.effective_permission_keys(director.id) == ["reports.read"]
    assert permissions.has_permission(director.id, child.id, "hr", PermissionAction.UPDATE) is False
    assert permissions.has_permission_anywhere(director.id, "finance", PermissionAction.DELETE) is False
