from __future__ import annotations

import runpy
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from orgscope.domain.hierarchy import MembershipRole, UnitType
from orgscope.domain.models import OrgUnit, OrgUnitCreate, UserCreate
from orgscope.infra import db, events
from orgscope.services.errors import NotFoundError
from orgscope.services.hierarchy_validator import HierarchyValidator
from orgscope.services.membership_service import MembershipService
from orgscope.services.org_unit_service import OrgUnitService
from orgscope.services.traversal_service import TraversalService
from orgscope.services.user_service import UserService


@pytest.fixture()
def org_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "traversal_test.db"
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


def _unit(service: OrgUnitService, code: str, unit_type: UnitType, parent: OrgUnit | None = None) -> OrgUnit:
    return service.create(
        OrgUnitCreate(
            code=code,
            name=f"Unit {code}",
            unit_type=unit_type,
            parent_id=parent.id if parent is not None else None,
        )
    )


def test_abc_chain_queries(org_engine: Engine) -> None:
    units = OrgUnitService()
    a = _unit(units, "A", UnitType.DIRECCION)
    b = _unit(units, "B", UnitType.COORDINACION, a)
    c = _unit(units, "C", UnitType.DEPARTAMENTO, b)
    traversal = TraversalService()

    ancestors = traversal.ancestors(c.id)
    assert [item.id for item in ancestors] == [b.id, a.id]
    assert [item.level for item in ancestors] == [1, 2]

    descendants = traversal.descendants(a.id)
    assert [(item.id, item.level) for item in descendants] == [(b.id, 1), (c.id, 2)]

    path = traversal.path(c.id)
    assert [item.code for item in path] == ["A", "B", "C"]
    assert path[-1].level == 0

    assert traversal.ancestors(a.id) == []
    assert traversal.descendants(c.id) == []
    assert [item.code for item in traversal.path(a.id)] == ["A"]


def test_queries_on_missing_unit_raise(org_engine: Engine) -> None:
    traversal = TraversalService()
    with pytest.raises(NotFoundError):
        traversal.ancestors("missing")
    with pytest.raises(NotFoundError):
        traversal.descendants("missing")
    with pytest.raises(NotFoundError):
        traversal.path("missing")
    with pytest.raises(NotFoundError):
        traversal.hierarchy_stats("missing")


def test_descendants_ordered_by_level_then_code(org_engine: Engine) -> None:
    units = OrgUnitService()
    root = _unit(units, "ROOT", UnitType.DIRECCION)
    zeta = _unit(units, "Z-COORD", UnitType.COORDINACION, root)
    alpha = _unit(units, "A-COORD", UnitType.COORDINACION, root)
    _unit(units, "B-DEPT", UnitType.DEPARTAMENTO, zeta)
    _unit(units, "A-DEPT", UnitType.DEPARTAMENTO, alpha)
    _unit(units, "OFF", UnitType.OFICINA, alpha)

    codes = [(item.code, item.level) for item in TraversalService().descendants(root.id)]
    assert codes == [
        ("A-COORD", 1),
        ("Z-COORD", 1),
        ("A-DEPT", 2),
        ("B-DEPT", 2),
        ("OFF", 2),
    ]


def test_walks_terminate_on_corrupted_cycle(org_engine: Engine) -> None:
    units = OrgUnitService()
    a = _unit(units, "A", UnitType.DIRECCION)
    b = _unit(units, "B", UnitType.COORDINACION, a)

    # Bypass the service checks to plant a cycle directly in storage.
    with Session(org_engine) as session:
        row = session.get(OrgUnit, a.id)
        assert row is not None
        row.parent_id = b.id
        session.add(row)
        session.commit()

    traversal = TraversalService()
    assert [item.id for item in traversal.ancestors(b.id)] == [a.id]
    assert [item.id for item in traversal.descendants(a.id)] == [b.id]
    with Session(org_engine) as session:
        assert HierarchyValidator().is_descendant(session, "unrelated", a.id) is False


def test_is_descendant(org_engine: Engine) -> None:
    units = OrgUnitService()
    a = _unit(units, "A", UnitType.DIRECCION)
    b = _unit(units, "B", UnitType.COORDINACION, a)
    c = _unit(units, "C", UnitType.DEPARTAMENTO, b)
    other = _unit(units, "D", UnitType.DIRECCION)
    validator = HierarchyValidator()

    with Session(org_engine) as session:
        assert validator.is_descendant(session, a.id, c.id) is True
        assert validator.is_descendant(session, c.id, c.id) is True
        assert validator.is_descendant(session, c.id, a.id) is False
        assert validator.is_descendant(session, other.id, c.id) is False
        assert validator.is_descendant(session, a.id, "missing") is False


def test_hierarchy_stats(org_engine: Engine) -> None:
    units = OrgUnitService()
    memberships = MembershipService()
    users = UserService()
    root = _unit(units, "ROOT", UnitType.DIRECCION)
    coord = _unit(units, "COORD", UnitType.COORDINACION, root)
    dept = _unit(units, "DEPT", UnitType.DEPARTAMENTO, coord)
    office = _unit(units, "OFF", UnitType.OFICINA, root)

    first = users.create_user(UserCreate(username="ana", full_name="Ana"))
    second = users.create_user(UserCreate(username="luis", full_name="Luis"))
    memberships.assign(root.id, first.id, MembershipRole.HEAD)
    memberships.assign(dept.id, second.id)
    memberships.assign(office.id, first.id)

    stats = TraversalService().hierarchy_stats(root.id)
    assert stats.unit.code == "ROOT"
    assert stats.total_descendants == 3
    assert stats.max_depth == 2
    assert stats.direct_children_count == 2
    assert stats.total_memberships_in_subtree == 3
    assert stats.counts_by_type == {
        UnitType.COORDINACION: 1,
        UnitType.DEPARTAMENTO: 1,
        UnitType.OFICINA: 1,
    }

    leaf = TraversalService().hierarchy_stats(dept.id)
    assert leaf.total_descendants == 0
    assert leaf.max_depth == 0
    assert leaf.total_memberships_in_subtree == 1
    assert leaf.counts_by_type == {}


def test_children_tree_and_staff(org_engine: Engine) -> None:
    units = OrgUnitService()
    users = UserService()
    memberships = MembershipService()
    root = _unit(units, "ROOT", UnitType.DIRECCION)
    coord = _unit(units, "COORD", UnitType.COORDINACION, root)
    _unit(units, "DEPT", UnitType.DEPARTAMENTO, coord)
    hidden = units.create(
        OrgUnitCreate(
            code="HIDDEN",
            name="Hidden",
            unit_type=UnitType.COORDINACION,
            parent_id=root.id,
            is_active=False,
        )
    )
    _unit(units, "UNDER-HIDDEN", UnitType.UNIDAD, hidden)

    zoe = users.create_user(UserCreate(username="zoe", full_name="Zoe Perez"))
    ana = users.create_user(UserCreate(username="ana", full_name="Ana Gomez", email="ana@example.org"))
    memberships.assign(coord.id, zoe.id, MembershipRole.HEAD)
    memberships.assign(coord.id, ana.id, is_primary=True)

    traversal = TraversalService()
    children = traversal.children(root.id)
    assert [(item.code, item.children_count, item.member_count) for item in children] == [
        ("COORD", 1, 2),
        ("HIDDEN", 1, 0),
    ]

    tree = traversal.tree()
    assert [node.code for node in tree] == ["ROOT"]
    assert [node.code for node in tree[0].children] == ["COORD"]
    assert tree[0].children_count == 1
    assert [node.code for node in tree[0].children[0].children] == ["DEPT"]
    assert tree[0].children[0].member_count == 2

    full = traversal.tree(active_only=False)
    assert [node.code for node in full[0].children] == ["COORD", "HIDDEN"]
    assert [node.code for node in full[0].children[1].children] == ["UNDER-HIDDEN"]

    staff = traversal.staff(coord.id)
    assert [item.full_name for item in staff] == ["Ana Gomez", "Zoe Perez"]
    assert staff[0].email == "ana@example.org"
    assert staff[0].is_primary is True
    assert staff[1].role == MembershipRole.HEAD


def test_path_and_ancestors_agree_on_seeded_chart(org_engine: Engine) -> None:
    script_path = Path(__file__).resolve().parents[1] / "infra" / "scripts" / "seed_organization.py"
    seed_script = runpy.run_path(str(script_path))
    created = seed_script["seed"]()
    assert created == len(seed_script["UNITS"])
    assert seed_script["seed"]() == 0

    units = OrgUnitService()
    traversal = TraversalService()
    max_depth = 0
    for code, *_ in seed_script["UNITS"]:
        unit = units.get_by_code(code)
        ancestors = traversal.ancestors(unit.id)
        path = traversal.path(unit.id)

        assert [item.id for item in path] == [*(item.id for item in reversed(ancestors)), unit.id]
        assert [item.level for item in ancestors] == list(range(1, len(ancestors) + 1))
        for ancestor in ancestors:
            below = {item.id: item.level for item in traversal.descendants(ancestor.id)}
            assert below[unit.id] == ancestor.level
        max_depth = max(max_depth, len(ancestors))

    assert max_depth == 5
    office = units.get_by_code("OF-VENT")
    assert [item.code for item in traversal.path(office.id)] == [
        "DIR-FIN",
        "COORD-CONT",
        "DEPT-CP",
        "UNID-ARCH",
        "SEC-PAGOS",
        "OF-VENT",
    ]
    finance = units.get_by_code("DIR-FIN")
    stats = traversal.hierarchy_stats(finance.id)
    levels = [item.level for item in traversal.descendants(finance.id)]
    assert levels == sorted(levels)
    assert stats.max_depth == max(levels) == 5
