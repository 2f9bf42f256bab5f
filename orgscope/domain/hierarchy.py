from __future__ import annotations

from enum import StrEnum


class UnitType(StrEnum):
    DIRECCION = "DIRECCION"
    COORDINACION = "COORDINACION"
    DEPARTAMENTO = "DEPARTAMENTO"
    UNIDAD = "UNIDAD"
    SECCION = "SECCION"
    OFICINA = "OFICINA"


class MembershipRole(StrEnum):
    HEAD = "HEAD"
    SUPERVISOR = "SUPERVISOR"
    COORDINATOR = "COORDINATOR"
    MEMBER = "MEMBER"
    ASSISTANT = "ASSISTANT"


# Coarsest first. A parent must always rank strictly lower than its children.
UNIT_TYPE_RANKS: dict[UnitType, int] = {
    UnitType.DIRECCION: 0,
    UnitType.COORDINACION: 1,
    UnitType.DEPARTAMENTO: 2,
    UnitType.UNIDAD: 3,
    UnitType.SECCION: 4,
    UnitType.OFICINA: 5,
}

ROLE_SENIORITY: dict[MembershipRole, int] = {
    MembershipRole.HEAD: 0,
    MembershipRole.SUPERVISOR: 1,
    MembershipRole.COORDINATOR: 2,
    MembershipRole.MEMBER: 3,
    MembershipRole.ASSISTANT: 4,
}

HIERARCHY_DESCRIPTION = " > ".join(item.value for item in sorted(UNIT_TYPE_RANKS, key=UNIT_TYPE_RANKS.__getitem__))


def unit_type_rank(unit_type: UnitType | str) -> int:
    return UNIT_TYPE_RANKS[UnitType(unit_type)]


def role_seniority(role: MembershipRole | str) -> int:
    return ROLE_SENIORITY[MembershipRole(role)]


def can_be_child_of(child_type: UnitType | str, parent_type: UnitType | str) -> bool:
    return unit_type_rank(child_type) > unit_type_rank(parent_type)
