from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from orgscope.domain.models import (
    OrgUnit,
    OrgUnitCreate,
    OrgUnitFilter,
    OrgUnitPage,
    OrgUnitRead,
    OrgUnitUpdate,
    PageMeta,
    PageParams,
    UnitPermissionGrant,
)
from orgscope.infra.db import get_engine
from orgscope.infra.events import event_bus
from orgscope.services.errors import ConflictError, DuplicateCodeError
from orgscope.services.hierarchy_validator import HierarchyValidator
from orgscope.services.unit_store import UnitStore

logger = logging.getLogger(__name__)


class OrgUnitService:
    def __init__(
        self,
        store: UnitStore | None = None,
        validator: HierarchyValidator | None = None,
    ) -> None:
        self._store = store or UnitStore()
        self._validator = validator or HierarchyValidator(self._store)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _ensure_code_available(self, session: Session, code: str) -> None:
        if self._store.find_by_code(session, code) is not None:
            raise DuplicateCodeError(f"org unit code already exists: {code}")

    def _commit(self, session: Session, code: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateCodeError(f"org unit code already exists: {code}") from exc

    def create(self, payload: OrgUnitCreate) -> OrgUnit:
        with self._session() as session:
            if payload.parent_id is not None:
                parent = self._store.lock(session, payload.parent_id)
                self._validator.validate_type_order(payload.unit_type, parent.unit_type)
            self._ensure_code_available(session, payload.code)

            unit = OrgUnit(
                code=payload.code,
                name=payload.name,
                description=payload.description,
                unit_type=payload.unit_type,
                parent_id=payload.parent_id,
                max_staff=payload.max_staff,
                is_active=payload.is_active,
            )
            try:
                self._store.insert(session, unit)
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateCodeError(f"org unit code already exists: {payload.code}") from exc
            created = event_bus.stage(
                "org_unit.created",
                {"unit_id": unit.id, "code": unit.code, "unit_type": unit.unit_type, "parent_id": unit.parent_id},
                session,
            )
            self._commit(session, payload.code)
            session.refresh(unit)

        logger.info("org unit created code=%s type=%s parent=%s", unit.code, unit.unit_type, unit.parent_id)
        event_bus.dispatch(created)
        return unit

    def get(self, unit_id: str) -> OrgUnit:
        with self._session() as session:
            return self._store.get(session, unit_id)

    def get_by_code(self, code: str) -> OrgUnit:
        with self._session() as session:
            return self._store.get_by_code(session, code)

    def list(self, filters: OrgUnitFilter | None = None, page: PageParams | None = None) -> OrgUnitPage:
        page = page or PageParams()
        with self._session() as session:
            units, total = self._store.list_units(session, filters, page)
        return OrgUnitPage(
            items=[OrgUnitRead.model_validate(item) for item in units],
            meta=PageMeta.build(total, page),
        )

    def _apply_parent_change(
        self,
        session: Session,
        unit: OrgUnit,
        new_parent_id: str | None,
    ) -> OrgUnit | None:
        if new_parent_id is None:
            return None
        new_parent = self._store.lock(session, new_parent_id)
        self._validator.validate_reparent(session, unit, new_parent)
        return new_parent

    def update(self, unit_id: str, payload: OrgUnitUpdate) -> OrgUnit:
        fields_set = payload.model_fields_set
        with self._session() as session:
            unit = self._store.lock(session, unit_id)
            changes: dict[str, Any] = {}

            if "code" in fields_set and payload.code is not None and payload.code != unit.code:
                self._ensure_code_available(session, payload.code)
                changes["code"] = payload.code
            if "name" in fields_set and payload.name is not None:
                changes["name"] = payload.name
            if "description" in fields_set:
                changes["description"] = payload.description
            if "max_staff" in fields_set:
                changes["max_staff"] = payload.max_staff
            if "is_active" in fields_set and payload.is_active is not None:
                changes["is_active"] = payload.is_active

            parent_changed = "parent_id" in fields_set and payload.parent_id != unit.parent_id
            previous_parent_id = unit.parent_id
            new_type = payload.unit_type if "unit_type" in fields_set else None
            if new_type is not None and new_type != unit.unit_type:
                target_parent_id = payload.parent_id if parent_changed else unit.parent_id
                parent = self._store.lock(session, target_parent_id) if target_parent_id else None
                self._validator.validate_type_change(session, unit, new_type, parent)
                # The re-parent check below must see the new type.
                unit.unit_type = new_type
                changes["unit_type"] = new_type
            if parent_changed:
                self._apply_parent_change(session, unit, payload.parent_id)
                changes["parent_id"] = payload.parent_id

            code = changes.get("code", unit.code)
            try:
                self._store.update(session, unit, changes)
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateCodeError(f"org unit code already exists: {code}") from exc
            staged = [event_bus.stage("org_unit.updated", {"unit_id": unit.id, "fields": sorted(changes)}, session)]
            if parent_changed:
                staged.append(
                    event_bus.stage(
                        "org_unit.moved",
                        {"unit_id": unit.id, "previous_parent_id": previous_parent_id, "parent_id": payload.parent_id},
                        session,
                    )
                )
            self._commit(session, code)
            session.refresh(unit)

        logger.info("org unit updated id=%s fields=%s", unit.id, sorted(changes))
        for item in staged:
            event_bus.dispatch(item)
        return unit

    def move(self, unit_id: str, new_parent_id: str | None) -> OrgUnit:
        with self._session() as session:
            unit = self._store.lock(session, unit_id)
            previous_parent_id = unit.parent_id
            self._apply_parent_change(session, unit, new_parent_id)
            self._store.update(session, unit, {"parent_id": new_parent_id})
            moved = event_bus.stage(
                "org_unit.moved",
                {"unit_id": unit.id, "previous_parent_id": previous_parent_id, "parent_id": new_parent_id},
                session,
            )
            session.commit()
            session.refresh(unit)

        logger.info("org unit moved id=%s from=%s to=%s", unit.id, previous_parent_id, new_parent_id)
        event_bus.dispatch(moved)
        return unit

    def delete(self, unit_id: str) -> None:
        with self._session() as session:
            unit = self._store.lock(session, unit_id)
            children = self._store.count_children(session, unit_id)
            memberships = self._store.count_memberships(session, [unit_id])
            if children > 0:
                raise ConflictError("org unit has child units")
            if memberships > 0:
                raise ConflictError("org unit has memberships")

            grants = session.exec(select(UnitPermissionGrant).where(UnitPermissionGrant.unit_id == unit_id)).all()
            for grant in grants:
                session.delete(grant)
            session.flush()
            code = unit.code
            self._store.delete(session, unit)
            deleted = event_bus.stage("org_unit.deleted", {"unit_id": unit_id, "code": code}, session)
            session.commit()

        logger.info("org unit deleted id=%s code=%s", unit_id, code)
        event_bus.dispatch(deleted)
