from __future__ import annotations

from collections import Counter

from sqlmodel import Session, col, select

from orgscope.domain.hierarchy import UnitType
from orgscope.domain.models import (
    ChildUnitRead,
    HierarchyStats,
    OrgUnit,
    StaffMemberRead,
    UnitMembership,
    UnitNode,
    UnitSummary,
    UnitTreeNode,
    User,
)
from orgscope.infra.db import get_engine
from orgscope.services.unit_store import UnitStore


def _node(unit: OrgUnit, level: int) -> UnitNode:
    return UnitNode(
        id=unit.id,
        code=unit.code,
        name=unit.name,
        unit_type=unit.unit_type,
        parent_id=unit.parent_id,
        is_active=unit.is_active,
        level=level,
    )


class TraversalService:
    """Read-only queries over the unit tree.

    The tree is the child -> parent relation stored in ``parent_id``. Depth is
    unbounded; every walk keeps a visited set so corrupted cyclic rows end the
    walk instead of looping.
    """

    def __init__(self, store: UnitStore | None = None) -> None:
        self._store = store or UnitStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _ancestors(self, session: Session, unit: OrgUnit) -> list[UnitNode]:
        ancestors: list[UnitNode] = []
        visited = {unit.id}
        parent_id = unit.parent_id
        level = 1
        while parent_id is not None and parent_id not in visited:
            parent = self._store.find(session, parent_id)
            if parent is None:
                break
            ancestors.append(_node(parent, level))
            visited.add(parent.id)
            parent_id = parent.parent_id
            level += 1
        return ancestors

    def _descendants(self, session: Session, unit_id: str) -> list[UnitNode]:
        units = {item.id: item for item in self._store.all_units(session)}
        children: dict[str, list[OrgUnit]] = {}
        for item in units.values():
            if item.parent_id is not None:
                children.setdefault(item.parent_id, []).append(item)

        found: list[UnitNode] = []
        visited = {unit_id}
        frontier = [unit_id]
        level = 0
        while frontier:
            level += 1
            next_frontier: list[str] = []
            for parent_id in frontier:
                for child in children.get(parent_id, []):
                    if child.id in visited:
                        continue
                    visited.add(child.id)
                    found.append(_node(child, level))
                    next_frontier.append(child.id)
            frontier = next_frontier
        return sorted(found, key=lambda item: (item.level, item.code))

    def ancestors(self, unit_id: str) -> list[UnitNode]:
        """Parent first, root last. Level 1 is the immediate parent."""
        with self._session() as session:
            unit = self._store.get(session, unit_id)
            return self._ancestors(session, unit)

    def descendants(self, unit_id: str) -> list[UnitNode]:
        """Whole subtree ordered by (level, code). Level 1 is a direct child."""
        with self._session() as session:
            self._store.get(session, unit_id)
            return self._descendants(session, unit_id)

    def path(self, unit_id: str) -> list[UnitNode]:
        """Root first, the unit itself last with level 0."""
        with self._session() as session:
            unit = self._store.get(session, unit_id)
            ancestors = self._ancestors(session, unit)
            return [*reversed(ancestors), _node(unit, 0)]

    def hierarchy_stats(self, unit_id: str) -> HierarchyStats:
        with self._session() as session:
            unit = self._store.get(session, unit_id)
            descendants = self._descendants(session, unit_id)
            subtree_ids = [unit_id, *(item.id for item in descendants)]
            total_memberships = self._store.count_memberships(session, subtree_ids)

        counts_by_type: Counter[UnitType] = Counter(item.unit_type for item in descendants)
        return HierarchyStats(
            unit=UnitSummary.model_validate(unit),
            total_descendants=len(descendants),
            max_depth=max((item.level for item in descendants), default=0),
            total_memberships_in_subtree=total_memberships,
            counts_by_type=dict(counts_by_type),
            direct_children_count=sum(1 for item in descendants if item.level == 1),
        )

    def children(self, unit_id: str) -> list[ChildUnitRead]:
        with self._session() as session:
            self._store.get(session, unit_id)
            children = self._store.children(session, unit_id)
            child_ids = [item.id for item in children]
            grandchildren = self._store.children_counts(session, child_ids)
            members = self._store.membership_counts(session, child_ids)
            return [
                ChildUnitRead(
                    id=item.id,
                    code=item.code,
                    name=item.name,
                    unit_type=item.unit_type,
                    is_active=item.is_active,
                    children_count=grandchildren.get(item.id, 0),
                    member_count=members.get(item.id, 0),
                )
                for item in children
            ]

    def tree(self, *, active_only: bool = True) -> list[UnitTreeNode]:
        """Nested forest of units ordered by code.

        With ``active_only`` an inactive unit is left out together with its
        subtree, because its children can no longer hang under a visible node.
        """
        with self._session() as session:
            units = self._store.all_units(session, active_only=active_only)
            unit_ids = [item.id for item in units]
            members = self._store.membership_counts(session, unit_ids)

        by_parent: dict[str | None, list[OrgUnit]] = {}
        for item in units:
            by_parent.setdefault(item.parent_id, []).append(item)

        visited: set[str] = set()

        def build(parent_id: str | None) -> list[UnitTreeNode]:
            nodes: list[UnitTreeNode] = []
            for item in by_parent.get(parent_id, []):
                if item.id in visited:
                    continue
                visited.add(item.id)
                children = build(item.id)
                nodes.append(
                    UnitTreeNode(
                        id=item.id,
                        code=item.code,
                        name=item.name,
                        unit_type=item.unit_type,
                        parent_id=item.parent_id,
                        children_count=len(children),
                        member_count=members.get(item.id, 0),
                        children=children,
                    )
                )
            return nodes

        return build(None)

    def staff(self, unit_id: str) -> list[StaffMemberRead]:
        with self._session() as session:
            self._store.get(session, unit_id)
            rows = session.exec(
                select(UnitMembership, User)
                .where(UnitMembership.unit_id == unit_id)
                .where(UnitMembership.user_id == User.id)
                .order_by(col(User.full_name), col(User.username))
            ).all()
        return [
            StaffMemberRead(
                user_id=user.id,
                username=user.username,
                full_name=user.full_name,
                email=user.email,
                phone=user.phone,
                is_active=user.is_active,
                role=membership.role,
                is_primary=membership.is_primary,
                assigned_at=membership.assigned_at,
            )
            for membership, user in rows
        ]
