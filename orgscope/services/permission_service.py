from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from orgscope.domain.models import (
    EffectivePermission,
    PermissionGrantCreate,
    UnitMembership,
    UnitPermissionGrant,
    User,
)
from orgscope.domain.permissions import (
    PermissionAction,
    denormalize_resource,
    grant_matches,
    normalize_resource,
    permission_key,
)
from orgscope.infra.db import get_engine
from orgscope.infra.events import event_bus
from orgscope.services.errors import DuplicateGrantError, NotFoundError
from orgscope.services.unit_store import UnitStore

logger = logging.getLogger(__name__)


class PermissionService:
    """Grants attached to units and their resolution for users.

    Grants never flow along the tree. A user holds exactly the grants of the
    units they are a direct member of.
    """

    def __init__(self, store: UnitStore | None = None) -> None:
        self._store = store or UnitStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_grant(
        self,
        session: Session,
        unit_id: str,
        module: str,
        action: PermissionAction,
        resource: str,
    ) -> UnitPermissionGrant | None:
        return session.exec(
            select(UnitPermissionGrant)
            .where(UnitPermissionGrant.unit_id == unit_id)
            .where(UnitPermissionGrant.module == module)
            .where(UnitPermissionGrant.action == action)
            .where(UnitPermissionGrant.resource == resource)
        ).first()

    def _member_unit_ids(self, session: Session, user_id: str) -> list[str]:
        return list(
            session.exec(select(UnitMembership.unit_id).where(UnitMembership.user_id == user_id)).all()
        )

    def _grants_for_units(self, session: Session, unit_ids: list[str]) -> list[UnitPermissionGrant]:
        if not unit_ids:
            return []
        return list(
            session.exec(
                select(UnitPermissionGrant)
                .where(col(UnitPermissionGrant.unit_id).in_(unit_ids))
                .order_by(
                    col(UnitPermissionGrant.module),
                    col(UnitPermissionGrant.action),
                    col(UnitPermissionGrant.resource),
                )
            ).all()
        )

    def grant(self, unit_id: str, payload: PermissionGrantCreate) -> UnitPermissionGrant:
        resource = normalize_resource(payload.resource)
        with self._session() as session:
            self._store.lock(session, unit_id)
            if self._find_grant(session, unit_id, payload.module, payload.action, resource) is not None:
                raise DuplicateGrantError("permission already granted to this unit")
            grant = UnitPermissionGrant(
                unit_id=unit_id,
                module=payload.module,
                action=payload.action,
                resource=resource,
            )
            session.add(grant)
            granted = event_bus.stage(
                "permission.granted",
                {
                    "grant_id": grant.id,
                    "unit_id": unit_id,
                    "module": grant.module,
                    "action": grant.action,
                    "resource": denormalize_resource(grant.resource),
                },
                session,
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateGrantError("permission already granted to this unit") from exc
            session.refresh(grant)

        logger.info("permission granted unit=%s key=%s", unit_id, permission_key(grant.module, grant.action, resource))
        event_bus.dispatch(granted)
        return grant

    def revoke(self, grant_id: str) -> None:
        with self._session() as session:
            grant = session.get(UnitPermissionGrant, grant_id)
            if grant is None:
                raise NotFoundError("permission grant not found")
            unit_id = grant.unit_id
            session.delete(grant)
            revoked = event_bus.stage("permission.revoked", {"grant_id": grant_id, "unit_id": unit_id}, session)
            session.commit()

        logger.info("permission revoked grant=%s unit=%s", grant_id, unit_id)
        event_bus.dispatch(revoked)

    def list_unit_grants(
        self,
        unit_id: str,
        *,
        module: str | None = None,
        action: PermissionAction | None = None,
    ) -> list[UnitPermissionGrant]:
        with self._session() as session:
            self._store.get(session, unit_id)
            statement = select(UnitPermissionGrant).where(UnitPermissionGrant.unit_id == unit_id)
            if module is not None:
                statement = statement.where(UnitPermissionGrant.module == module)
            if action is not None:
                statement = statement.where(UnitPermissionGrant.action == PermissionAction(action))
            return list(
                session.exec(
                    statement.order_by(col(UnitPermissionGrant.module), col(UnitPermissionGrant.action))
                ).all()
            )

    def _grant_bulk(
        self,
        session: Session,
        unit_id: str,
        grants: Iterable[PermissionGrantCreate],
    ) -> list[UnitPermissionGrant]:
        result: list[UnitPermissionGrant] = []
        seen: set[tuple[str, PermissionAction, str]] = set()
        for item in grants:
            resource = normalize_resource(item.resource)
            identity = (item.module, item.action, resource)
            if identity in seen:
                continue
            seen.add(identity)
            grant = self._find_grant(session, unit_id, item.module, item.action, resource)
            if grant is None:
                grant = UnitPermissionGrant(
                    unit_id=unit_id,
                    module=item.module,
                    action=item.action,
                    resource=resource,
                )
                session.add(grant)
            result.append(grant)
        return result

    def grant_bulk(self, unit_id: str, grants: list[PermissionGrantCreate]) -> list[UnitPermissionGrant]:
        """Grant many permissions at once; tuples the unit already holds are kept as they are."""
        with self._session() as session:
            self._store.lock(session, unit_id)
            result = self._grant_bulk(session, unit_id, grants)
            granted = event_bus.stage(
                "permission.granted",
                {"unit_id": unit_id, "grant_ids": [item.id for item in result]},
                session,
            )
            session.commit()
            for grant in result:
                session.refresh(grant)

        logger.info("permissions bulk granted unit=%s count=%d", unit_id, len(result))
        event_bus.dispatch(granted)
        return result

    def copy_grants(self, source_unit_id: str, target_unit_id: str) -> list[UnitPermissionGrant]:
        with self._session() as session:
            self._store.get(session, source_unit_id)
            self._store.lock(session, target_unit_id)
            source_grants = session.exec(
                select(UnitPermissionGrant).where(UnitPermissionGrant.unit_id == source_unit_id)
            ).all()
            payloads = [
                PermissionGrantCreate(
                    module=item.module,
                    action=item.action,
                    resource=denormalize_resource(item.resource),
                )
                for item in source_grants
            ]
            result = self._grant_bulk(session, target_unit_id, payloads)
            granted = event_bus.stage(
                "permission.granted",
                {
                    "unit_id": target_unit_id,
                    "source_unit_id": source_unit_id,
                    "grant_ids": [item.id for item in result],
                },
                session,
            )
            session.commit()
            for grant in result:
                session.refresh(grant)

        logger.info("permissions copied from=%s to=%s count=%d", source_unit_id, target_unit_id, len(result))
        event_bus.dispatch(granted)
        return result

    def effective_permissions(self, user_id: str) -> list[EffectivePermission]:
        """Union of the grants over every unit the user is a direct member of."""
        with self._session() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError("user not found")
            unit_ids = self._member_unit_ids(session, user_id)
            grants = self._grants_for_units(session, unit_ids)

        merged: dict[tuple[str, PermissionAction, str], list[str]] = {}
        for grant in grants:
            identity = (grant.module, PermissionAction(grant.action), grant.resource)
            contributors = merged.setdefault(identity, [])
            if grant.unit_id not in contributors:
                contributors.append(grant.unit_id)

        return [
            EffectivePermission(
                key=permission_key(module, action, resource),
                module=module,
                action=action,
                resource=denormalize_resource(resource),
                unit_ids=sorted(contributors),
            )
            for (module, action, resource), contributors in sorted(merged.items())
        ]

    def effective_permission_keys(self, user_id: str) -> list[str]:
        return [item.key for item in self.effective_permissions(user_id)]

    def has_permission(
        self,
        user_id: str,
        unit_id: str,
        module: str,
        action: PermissionAction | str,
        resource: str | None = None,
    ) -> bool:
        with self._session() as session:
            membership = session.get(UnitMembership, (user_id, unit_id))
            if membership is None:
                return False
            grants = self._grants_for_units(session, [unit_id])
        return any(
            grant_matches(grant.module, grant.action, grant.resource, module, action, resource) for grant in grants
        )

    def has_permission_anywhere(
        self,
        user_id: str,
        module: str,
        action: PermissionAction | str,
        resource: str | None = None,
    ) -> bool:
        with self._session() as session:
            unit_ids = self._member_unit_ids(session, user_id)
            grants = self._grants_for_units(session, unit_ids)
        return any(
            grant_matches(grant.module, grant.action, grant.resource, module, action, resource) for grant in grants
        )
