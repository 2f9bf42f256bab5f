from __future__ import annotations

from collections import Counter
from typing import Any

from sqlmodel import Session, col, select

from orgscope.domain.hierarchy import MembershipRole, UnitType, role_seniority, unit_type_rank
from orgscope.domain.models import OrgUnit, UnitMembership, User
from orgscope.infra.db import get_engine
from orgscope.services.unit_store import UnitStore

TOP_UNITS_LIMIT = 10


def _user_brief(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "full_name": user.full_name,
        "email": user.email,
        "phone": user.phone,
    }


def _unit_brief(unit: OrgUnit) -> dict[str, Any]:
    return {
        "id": unit.id,
        "code": unit.code,
        "name": unit.name,
        "unit_type": unit.unit_type,
    }


def _max_depth(units: list[OrgUnit]) -> int:
    """Deepest level below any root, roots being level 0."""
    children: dict[str | None, list[str]] = {}
    for unit in units:
        children.setdefault(unit.parent_id, []).append(unit.id)

    depth = 0
    visited: set[str] = set()
    frontier = list(children.get(None, []))
    level = 0
    while frontier:
        depth = level
        next_frontier: list[str] = []
        for unit_id in frontier:
            visited.add(unit_id)
            next_frontier.extend(child for child in children.get(unit_id, []) if child not in visited)
        frontier = next_frontier
        level += 1
    return depth


class OrgReportsService:
    def __init__(self, store: UnitStore | None = None) -> None:
        self._store = store or UnitStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _memberships_with_users(self, session: Session) -> list[tuple[UnitMembership, User]]:
        rows = session.exec(
            select(UnitMembership, User).where(UnitMembership.user_id == User.id)
        ).all()
        return [(membership, user) for membership, user in rows]

    def employees_by_unit(self, unit_id: str | None = None) -> list[dict[str, Any]]:
        with self._session() as session:
            if unit_id is not None:
                units = [self._store.get(session, unit_id)]
            else:
                units = self._store.all_units(session)
            rows = self._memberships_with_users(session)

        by_unit: dict[str, list[tuple[UnitMembership, User]]] = {}
        for membership, user in rows:
            by_unit.setdefault(membership.unit_id, []).append((membership, user))

        report: list[dict[str, Any]] = []
        for unit in units:
            members = sorted(by_unit.get(unit.id, []), key=lambda item: item[0].assigned_at)
            current = len(members)
            utilization = round(current / unit.max_staff * 100, 2) if unit.max_staff else None
            report.append(
                {
                    **_unit_brief(unit),
                    "max_staff": unit.max_staff,
                    "current_staff": current,
                    "utilization": utilization,
                    "employees": [
                        {
                            **_user_brief(user),
                            "unit_role": membership.role,
                            "is_primary": membership.is_primary,
                            "assigned_at": membership.assigned_at,
                        }
                        for membership, user in members
                    ],
                }
            )
        return report

    def units_without_head(self) -> list[dict[str, Any]]:
        with self._session() as session:
            units = session.exec(
                select(OrgUnit)
                .where(col(OrgUnit.head_user_id).is_(None))
                .where(OrgUnit.is_active == True)  # noqa: E712
            ).all()
            unit_ids = [item.id for item in units]
            members = self._store.membership_counts(session, unit_ids)
            parent_ids = sorted({item.parent_id for item in units if item.parent_id is not None})
            parents = {
                item.id: item
                for item in session.exec(select(OrgUnit).where(col(OrgUnit.id).in_(parent_ids))).all()
            }

        ordered = sorted(units, key=lambda item: (unit_type_rank(item.unit_type), item.code))
        return [
            {
                **_unit_brief(unit),
                "parent": _unit_brief(parents[unit.parent_id]) if unit.parent_id in parents else None,
                "member_count": members.get(unit.id, 0),
            }
            for unit in ordered
        ]

    def users_without_unit(self) -> list[dict[str, Any]]:
        with self._session() as session:
            assigned = set(session.exec(select(UnitMembership.user_id)).all())
            users = session.exec(
                select(User).where(User.is_active == True).order_by(col(User.full_name))  # noqa: E712
            ).all()
        return [_user_brief(user) for user in users if user.id not in assigned]

    def staff_distribution_by_type(self) -> list[dict[str, Any]]:
        with self._session() as session:
            units = self._store.all_units(session, active_only=True)
            members = self._store.membership_counts(session, [item.id for item in units])

        unit_counts: Counter[UnitType] = Counter()
        staff_counts: Counter[UnitType] = Counter()
        for unit in units:
            unit_counts[unit.unit_type] += 1
            staff_counts[unit.unit_type] += members.get(unit.id, 0)

        distribution: list[dict[str, Any]] = []
        for unit_type in sorted(unit_counts, key=unit_type_rank):
            unit_count = unit_counts[unit_type]
            employee_count = staff_counts[unit_type]
            distribution.append(
                {
                    "unit_type": unit_type,
                    "unit_count": unit_count,
                    "employee_count": employee_count,
                    "avg_employees_per_unit": round(employee_count / unit_count, 2),
                }
            )
        return distribution

    def org_chart(self, root_unit_id: str | None = None) -> list[dict[str, Any]]:
        """Nested chart of active units with their heads.

        Starts from every root, or from ``root_unit_id`` alone when given.
        """
        with self._session() as session:
            if root_unit_id is not None:
                self._store.get(session, root_unit_id)
            units = self._store.all_units(session, active_only=True)
            members = self._store.membership_counts(session, [item.id for item in units])
            heads = {
                membership.unit_id: user
                for membership, user in self._memberships_with_users(session)
                if membership.role == MembershipRole.HEAD
            }

        by_parent: dict[str | None, list[OrgUnit]] = {}
        by_id: dict[str, OrgUnit] = {}
        for unit in units:
            by_parent.setdefault(unit.parent_id, []).append(unit)
            by_id[unit.id] = unit

        visited: set[str] = set()

        def chart(unit: OrgUnit) -> dict[str, Any]:
            visited.add(unit.id)
            children = [chart(child) for child in by_parent.get(unit.id, []) if child.id not in visited]
            head = heads.get(unit.id)
            return {
                **_unit_brief(unit),
                "head": _user_brief(head) if head is not None else None,
                "employee_count": members.get(unit.id, 0),
                "children_count": len(children),
                "children": children,
            }

        if root_unit_id is not None:
            root = by_id.get(root_unit_id)
            return [chart(root)] if root is not None else []
        return [chart(unit) for unit in by_parent.get(None, [])]

    def phone_directory(self, unit_id: str | None = None) -> list[dict[str, Any]]:
        """Contact list of every membership, grouped by unit code then role seniority."""
        with self._session() as session:
            if unit_id is not None:
                self._store.get(session, unit_id)
            statement = (
                select(UnitMembership, User, OrgUnit)
                .where(UnitMembership.user_id == User.id)
                .where(UnitMembership.unit_id == OrgUnit.id)
            )
            if unit_id is not None:
                statement = statement.where(UnitMembership.unit_id == unit_id)
            rows = session.exec(statement).all()

        ordered = sorted(
            rows,
            key=lambda row: (row[2].code, role_seniority(row[0].role), row[1].full_name),
        )
        return [
            {
                "employee": _user_brief(user),
                "unit": _unit_brief(unit),
                "unit_role": membership.role,
                "is_primary": membership.is_primary,
            }
            for membership, user, unit in ordered
        ]

    def general_stats(self) -> dict[str, Any]:
        with self._session() as session:
            units = self._store.all_units(session)
            memberships = session.exec(select(UnitMembership.unit_id, UnitMembership.user_id)).all()
            active_user_ids = set(session.exec(select(User.id).where(User.is_active == True)).all())  # noqa: E712

        active = [item for item in units if item.is_active]
        assigned = {user_id for _, user_id in memberships}
        members: Counter[str] = Counter(unit_id for unit_id, _ in memberships)
        by_type: Counter[UnitType] = Counter(item.unit_type for item in active)
        ranked = sorted(active, key=lambda item: (-members[item.id], item.code))
        top = [{**_unit_brief(item), "employee_count": members[item.id]} for item in ranked[:TOP_UNITS_LIMIT]]
        return {
            "total_units": len(units),
            "active_units": len(active),
            "total_memberships": len(memberships),
            "assigned_users": len(assigned),
            "users_without_unit": len(active_user_ids - assigned),
            "units_without_head": sum(1 for item in active if item.head_user_id is None),
            "units_by_type": {
                unit_type: by_type[unit_type] for unit_type in sorted(by_type, key=unit_type_rank)
            },
            "max_hierarchy_depth": _max_depth(units),
            "largest_unit": top[0] if top else None,
            "top_units_by_employees": top,
        }
