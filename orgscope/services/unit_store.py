from __future__ import annotations

from typing import Any

from sqlalchemy import case, func, or_
from sqlmodel import Session, col, select

from orgscope.domain.hierarchy import UNIT_TYPE_RANKS
from orgscope.domain.models import (
    OrgUnit,
    OrgUnitFilter,
    PageParams,
    UnitMembership,
    now_utc,
)
from orgscope.services.errors import NotFoundError


class UnitStore:
    """Persistence access for org units.

    Every method works on a caller-owned session so that validation reads and
    writes of one mutation share a transaction. Nothing here enforces
    hierarchy rules.
    """

    def find(self, session: Session, unit_id: str, *, for_update: bool = False) -> OrgUnit | None:
        statement = select(OrgUnit).where(OrgUnit.id == unit_id)
        if for_update:
            statement = statement.with_for_update()
        return session.exec(statement).first()

    def get(self, session: Session, unit_id: str, *, for_update: bool = False) -> OrgUnit:
        unit = self.find(session, unit_id, for_update=for_update)
        if unit is None:
            raise NotFoundError("org unit not found")
        return unit

    def lock(self, session: Session, unit_id: str) -> OrgUnit:
        return self.get(session, unit_id, for_update=True)

    def find_by_code(self, session: Session, code: str) -> OrgUnit | None:
        return session.exec(select(OrgUnit).where(OrgUnit.code == code)).first()

    def get_by_code(self, session: Session, code: str) -> OrgUnit:
        unit = self.find_by_code(session, code)
        if unit is None:
            raise NotFoundError("org unit not found")
        return unit

    def parent_id_of(self, session: Session, unit_id: str, *, for_update: bool = False) -> tuple[bool, str | None]:
        statement = select(OrgUnit.id, OrgUnit.parent_id).where(OrgUnit.id == unit_id)
        if for_update:
            statement = statement.with_for_update()
        row = session.exec(statement).first()
        if row is None:
            return False, None
        return True, row[1]

    def list_units(
        self,
        session: Session,
        filters: OrgUnitFilter | None = None,
        page: PageParams | None = None,
    ) -> tuple[list[OrgUnit], int]:
        filters = filters or OrgUnitFilter()
        page = page or PageParams()

        statement = select(OrgUnit)
        count_statement = select(func.count()).select_from(OrgUnit)
        conditions: list[Any] = []
        if filters.unit_type is not None:
            conditions.append(OrgUnit.unit_type == filters.unit_type)
        if filters.roots_only:
            conditions.append(col(OrgUnit.parent_id).is_(None))
        elif filters.parent_id is not None:
            conditions.append(OrgUnit.parent_id == filters.parent_id)
        if filters.is_active is not None:
            conditions.append(OrgUnit.is_active == filters.is_active)
        if filters.search:
            term = filters.search.strip().lower()
            term = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{term}%"
            conditions.append(
                or_(
                    func.lower(OrgUnit.code).like(pattern, escape="\\"),
                    func.lower(OrgUnit.name).like(pattern, escape="\\"),
                    func.lower(func.coalesce(OrgUnit.description, "")).like(pattern, escape="\\"),
                )
            )
        for condition in conditions:
            statement = statement.where(condition)
            count_statement = count_statement.where(condition)

        total = session.exec(count_statement).one()
        rank = case(
            {item.value: position for item, position in UNIT_TYPE_RANKS.items()},
            value=col(OrgUnit.unit_type),
            else_=len(UNIT_TYPE_RANKS),
        )
        units = session.exec(
            statement.order_by(rank, col(OrgUnit.code)).offset(page.offset).limit(page.limit)
        ).all()
        return list(units), int(total)

    def all_units(self, session: Session, *, active_only: bool = False) -> list[OrgUnit]:
        statement = select(OrgUnit)
        if active_only:
            statement = statement.where(OrgUnit.is_active == True)  # noqa: E712
        return list(session.exec(statement.order_by(col(OrgUnit.code))).all())

    def children(self, session: Session, unit_id: str) -> list[OrgUnit]:
        return list(
            session.exec(
                select(OrgUnit).where(OrgUnit.parent_id == unit_id).order_by(col(OrgUnit.code))
            ).all()
        )

    def count_children(self, session: Session, unit_id: str) -> int:
        return int(
            session.exec(
                select(func.count()).select_from(OrgUnit).where(OrgUnit.parent_id == unit_id)
            ).one()
        )

    def count_memberships(self, session: Session, unit_ids: list[str]) -> int:
        if not unit_ids:
            return 0
        return int(
            session.exec(
                select(func.count())
                .select_from(UnitMembership)
                .where(col(UnitMembership.unit_id).in_(unit_ids))
            ).one()
        )

    def membership_counts(self, session: Session, unit_ids: list[str]) -> dict[str, int]:
        if not unit_ids:
            return {}
        rows = session.exec(
            select(UnitMembership.unit_id, func.count())
            .where(col(UnitMembership.unit_id).in_(unit_ids))
            .group_by(col(UnitMembership.unit_id))
        ).all()
        return {unit_id: int(count) for unit_id, count in rows}

    def children_counts(self, session: Session, unit_ids: list[str]) -> dict[str, int]:
        if not unit_ids:
            return {}
        rows = session.exec(
            select(OrgUnit.parent_id, func.count())
            .where(col(OrgUnit.parent_id).in_(unit_ids))
            .group_by(col(OrgUnit.parent_id))
        ).all()
        return {parent_id: int(count) for parent_id, count in rows if parent_id is not None}

    def insert(self, session: Session, unit: OrgUnit) -> OrgUnit:
        session.add(unit)
        session.flush()
        return unit

    def update(self, session: Session, unit: OrgUnit, changes: dict[str, Any]) -> OrgUnit:
        for field_name, value in changes.items():
            setattr(unit, field_name, value)
        unit.updated_at = now_utc()
        session.add(unit)
        session.flush()
        return unit

    def delete(self, session: Session, unit: OrgUnit) -> None:
        session.delete(unit)
        session.flush()
