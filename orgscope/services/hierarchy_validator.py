from __future__ import annotations

from sqlmodel import Session

from orgscope.domain.hierarchy import HIERARCHY_DESCRIPTION, UnitType, can_be_child_of
from orgscope.domain.models import OrgUnit
from orgscope.services.errors import CycleError, InvalidHierarchyError
from orgscope.services.unit_store import UnitStore


class HierarchyValidator:
    def __init__(self, store: UnitStore | None = None) -> None:
        self._store = store or UnitStore()

    def validate_type_order(self, child_type: UnitType | str, parent_type: UnitType | str) -> None:
        if not can_be_child_of(child_type, parent_type):
            raise InvalidHierarchyError(
                f"a {UnitType(child_type).value} cannot be a child of a {UnitType(parent_type).value}; "
                f"hierarchy must be {HIERARCHY_DESCRIPTION}"
            )

    def is_descendant(
        self,
        session: Session,
        candidate_ancestor_id: str,
        node_id: str,
        *,
        lock: bool = False,
    ) -> bool:
        """Return True when ``candidate_ancestor_id`` is ``node_id`` or one of its ancestors.

        Walks the parent chain upward from ``node_id``. With ``lock`` every row on
        the chain is read ``FOR UPDATE`` so a concurrent re-parent of the same
        chain waits for this transaction.
        """
        visited: set[str] = set()
        current: str | None = node_id
        while current is not None:
            if current == candidate_ancestor_id:
                return True
            if current in visited:
                # Corrupted data already holds a cycle; nothing new can be reached.
                return False
            visited.add(current)
            exists, parent_id = self._store.parent_id_of(session, current, for_update=lock)
            if not exists:
                return False
            current = parent_id
        return False

    def validate_reparent(self, session: Session, unit: OrgUnit, new_parent: OrgUnit) -> None:
        if self.is_descendant(session, unit.id, new_parent.id, lock=True):
            raise CycleError("org unit cannot move under itself or one of its descendants")
        self.validate_type_order(unit.unit_type, new_parent.unit_type)

    def validate_type_change(
        self,
        session: Session,
        unit: OrgUnit,
        new_type: UnitType,
        parent: OrgUnit | None,
    ) -> None:
        if parent is not None:
            self.validate_type_order(new_type, parent.unit_type)
        for child in self._store.children(session, unit.id):
            self.validate_type_order(child.unit_type, new_type)
