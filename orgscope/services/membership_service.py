from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from orgscope.domain.hierarchy import MembershipRole, role_seniority
from orgscope.domain.models import (
    MembershipTransfer,
    OrgUnit,
    UnitMembership,
    User,
    now_utc,
)
from orgscope.infra.db import get_engine
from orgscope.infra.events import event_bus
from orgscope.services.errors import (
    CapacityExceededError,
    DuplicateAssignmentError,
    HeadConflictError,
    InactiveUnitError,
    InactiveUserError,
    NotFoundError,
    ValidationError,
)
from orgscope.services.unit_store import UnitStore

logger = logging.getLogger(__name__)


class MembershipService:
    """User to unit assignments.

    Every public mutation runs in one transaction with the unit row and the
    user row locked, so the capacity, HEAD and primary checks see the rows
    they guard even when two units are changed for the same user at once.
    """

    def __init__(self, store: UnitStore | None = None) -> None:
        self._store = store or UnitStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_membership(
        self,
        session: Session,
        unit_id: str,
        user_id: str,
        *,
        for_update: bool = False,
    ) -> UnitMembership | None:
        statement = (
            select(UnitMembership)
            .where(UnitMembership.unit_id == unit_id)
            .where(UnitMembership.user_id == user_id)
        )
        if for_update:
            statement = statement.with_for_update()
        return session.exec(statement).first()

    def _lock_user(self, session: Session, user_id: str) -> User:
        user = session.exec(select(User).where(User.id == user_id).with_for_update()).first()
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _get_active_user(self, session: Session, user_id: str) -> User:
        # The user row lock serializes primary-flag changes across units.
        user = self._lock_user(session, user_id)
        if not user.is_active:
            raise InactiveUserError("inactive users cannot be assigned to a unit")
        return user

    def _current_head(self, session: Session, unit_id: str) -> UnitMembership | None:
        return session.exec(
            select(UnitMembership)
            .where(UnitMembership.unit_id == unit_id)
            .where(UnitMembership.role == MembershipRole.HEAD)
        ).first()

    def _clear_other_primaries(self, session: Session, user_id: str, keep_unit_id: str) -> None:
        links = session.exec(
            select(UnitMembership).where(UnitMembership.user_id == user_id).with_for_update()
        ).all()
        for item in links:
            if item.unit_id == keep_unit_id:
                continue
            if item.is_primary:
                item.is_primary = False
                session.add(item)

    def _assign(
        self,
        session: Session,
        unit_id: str,
        user_id: str,
        role: MembershipRole,
        is_primary: bool,
    ) -> UnitMembership:
        unit = self._store.lock(session, unit_id)
        if not unit.is_active:
            raise InactiveUnitError("cannot assign users to an inactive unit")
        self._get_active_user(session, user_id)

        if unit.max_staff is not None:
            current = self._store.count_memberships(session, [unit_id])
            if current >= unit.max_staff:
                raise CapacityExceededError(f"unit reached its staff limit of {unit.max_staff}")

        if self._get_membership(session, unit_id, user_id) is not None:
            raise DuplicateAssignmentError("user is already assigned to this unit")

        if role == MembershipRole.HEAD and self._current_head(session, unit_id) is not None:
            raise HeadConflictError("unit already has a head")

        if is_primary:
            self._clear_other_primaries(session, user_id, unit_id)

        link = UnitMembership(
            user_id=user_id,
            unit_id=unit_id,
            role=role,
            is_primary=is_primary,
            assigned_at=now_utc(),
        )
        session.add(link)
        if role == MembershipRole.HEAD:
            self._set_head(session, unit, user_id)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise DuplicateAssignmentError("user is already assigned to this unit") from exc
        return link

    def _remove(self, session: Session, unit_id: str, user_id: str) -> UnitMembership:
        unit = self._store.lock(session, unit_id)
        link = self._get_membership(session, unit_id, user_id, for_update=True)
        if link is None:
            raise NotFoundError("user is not assigned to this unit")
        if link.role == MembershipRole.HEAD:
            self._set_head(session, unit, None)
        session.delete(link)
        session.flush()
        return link

    def _set_head(self, session: Session, unit: OrgUnit, user_id: str | None) -> None:
        unit.head_user_id = user_id
        unit.updated_at = now_utc()
        session.add(unit)

    def assign(
        self,
        unit_id: str,
        user_id: str,
        role: MembershipRole = MembershipRole.MEMBER,
        is_primary: bool = False,
    ) -> UnitMembership:
        with self._session() as session:
            link = self._assign(session, unit_id, user_id, role, is_primary)
            assigned = event_bus.stage(
                "membership.assigned",
                {"unit_id": unit_id, "user_id": user_id, "role": role, "is_primary": is_primary},
                session,
            )
            session.commit()
            session.refresh(link)

        logger.info("membership assigned unit=%s user=%s role=%s", unit_id, user_id, role)
        event_bus.dispatch(assigned)
        return link

    def remove(self, unit_id: str, user_id: str) -> None:
        with self._session() as session:
            link = self._remove(session, unit_id, user_id)
            role = link.role
            removed = event_bus.stage(
                "membership.removed",
                {"unit_id": unit_id, "user_id": user_id, "role": role},
                session,
            )
            session.commit()

        logger.info("membership removed unit=%s user=%s role=%s", unit_id, user_id, role)
        event_bus.dispatch(removed)

    def change_role(
        self,
        unit_id: str,
        user_id: str,
        role: MembershipRole | None = None,
        is_primary: bool | None = None,
    ) -> UnitMembership:
        with self._session() as session:
            unit = self._store.lock(session, unit_id)
            self._lock_user(session, user_id)
            link = self._get_membership(session, unit_id, user_id, for_update=True)
            if link is None:
                raise NotFoundError("user is not assigned to this unit")
            previous_role = link.role

            if role == MembershipRole.HEAD and previous_role != MembershipRole.HEAD:
                head = self._current_head(session, unit_id)
                if head is not None and head.user_id != user_id:
                    raise HeadConflictError("unit already has a head")

            if is_primary and not link.is_primary:
                self._clear_other_primaries(session, user_id, unit_id)

            if role is not None:
                link.role = role
                if previous_role == MembershipRole.HEAD and role != MembershipRole.HEAD:
                    self._set_head(session, unit, None)
                elif role == MembershipRole.HEAD:
                    self._set_head(session, unit, user_id)
            if is_primary is not None:
                link.is_primary = is_primary
            session.add(link)
            changed = event_bus.stage(
                "membership.role_changed",
                {
                    "unit_id": unit_id,
                    "user_id": user_id,
                    "previous_role": previous_role,
                    "role": link.role,
                    "is_primary": link.is_primary,
                },
                session,
            )
            session.commit()
            session.refresh(link)

        logger.info(
            "membership role changed unit=%s user=%s role=%s->%s",
            unit_id,
            user_id,
            previous_role,
            link.role,
        )
        event_bus.dispatch(changed)
        return link

    def transfer(self, payload: MembershipTransfer) -> UnitMembership:
        """Move a user between units in a single transaction.

        If the assignment to the target unit fails the removal from the source
        unit is rolled back as well, so the user never ends up in neither unit.
        Role or primary changes inside one unit go through ``change_role``.
        """
        if payload.from_unit_id == payload.to_unit_id:
            raise ValidationError("source and target unit must differ")
        with self._session() as session:
            source = self._store.find(session, payload.from_unit_id)
            if source is None:
                raise NotFoundError("source unit not found")
            target = self._store.find(session, payload.to_unit_id)
            if target is None:
                raise NotFoundError("target unit not found")
            if not target.is_active:
                raise InactiveUnitError("cannot transfer users to an inactive unit")

            self._remove(session, payload.from_unit_id, payload.user_id)
            link = self._assign(session, payload.to_unit_id, payload.user_id, payload.role, payload.is_primary)
            transferred = event_bus.stage(
                "membership.transferred",
                {
                    "user_id": payload.user_id,
                    "from_unit_id": payload.from_unit_id,
                    "to_unit_id": payload.to_unit_id,
                    "role": payload.role,
                    "is_primary": payload.is_primary,
                },
                session,
            )
            session.commit()
            session.refresh(link)

        logger.info(
            "membership transferred user=%s from=%s to=%s",
            payload.user_id,
            payload.from_unit_id,
            payload.to_unit_id,
        )
        event_bus.dispatch(transferred)
        return link

    def list_unit_members(
        self,
        unit_id: str,
        *,
        role: MembershipRole | None = None,
        is_primary: bool | None = None,
    ) -> list[UnitMembership]:
        with self._session() as session:
            self._store.get(session, unit_id)
            statement = select(UnitMembership).where(UnitMembership.unit_id == unit_id)
            if role is not None:
                statement = statement.where(UnitMembership.role == role)
            if is_primary is not None:
                statement = statement.where(UnitMembership.is_primary == is_primary)
            links = list(session.exec(statement).all())
        return sorted(links, key=lambda item: (role_seniority(item.role), item.assigned_at))

    def list_user_units(self, user_id: str) -> list[UnitMembership]:
        with self._session() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError("user not found")
            links = list(
                session.exec(
                    select(UnitMembership)
                    .where(UnitMembership.user_id == user_id)
                    .order_by(col(UnitMembership.assigned_at))
                ).all()
            )
        return sorted(links, key=lambda item: (not item.is_primary, item.assigned_at))
