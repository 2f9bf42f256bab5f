from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from orgscope.domain.hierarchy import MembershipRole, UnitType
from orgscope.domain.permissions import PermissionAction, denormalize_resource
from orgscope.infra.settings import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    full_name: str = Field(index=True)
    email: str | None = None
    phone: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class OrgUnit(SQLModel, table=True):
    __tablename__ = "org_units"
    __table_args__ = (
        ForeignKeyConstraint(["parent_id"], ["org_units.id"], ondelete="RESTRICT"),
        ForeignKeyConstraint(["head_user_id"], ["users.id"], ondelete="SET NULL"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str = Field(index=True)
    description: str | None = None
    unit_type: UnitType = Field(index=True)
    parent_id: str | None = Field(default=None, index=True)
    head_user_id: str | None = Field(default=None, index=True)
    max_staff: int | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class UnitMembership(SQLModel, table=True):
    __tablename__ = "unit_memberships"
    __table_args__ = (
        ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["unit_id"], ["org_units.id"], ondelete="RESTRICT"),
        Index("ix_unit_memberships_unit_role", "unit_id", "role"),
        Index("ix_unit_memberships_user_primary", "user_id", "is_primary"),
    )

    user_id: str = Field(primary_key=True)
    unit_id: str = Field(primary_key=True)
    role: MembershipRole = Field(default=MembershipRole.MEMBER)
    is_primary: bool = Field(default=False)
    assigned_at: datetime = Field(default_factory=now_utc, index=True)


class UnitPermissionGrant(SQLModel, table=True):
    __tablename__ = "unit_permission_grants"
    __table_args__ = (
        ForeignKeyConstraint(["unit_id"], ["org_units.id"], ondelete="CASCADE"),
        UniqueConstraint(
            "unit_id",
            "module",
            "action",
            "resource",
            name="uq_unit_permission_grants_unit_module_action_resource",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    unit_id: str = Field(index=True)
    module: str = Field(index=True)
    action: PermissionAction
    resource: str = Field(default="")
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    username: str = PydanticField(min_length=1)
    full_name: str = PydanticField(min_length=1)
    email: str | None = None
    phone: str | None = None
    is_active: bool = True


class UserUpdate(BaseModel):
    full_name: str | None = PydanticField(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    username: str
    full_name: str
    email: str | None = None
    phone: str | None = None
    is_active: bool
    created_at: datetime


class OrgUnitCreate(BaseModel):
    code: str = PydanticField(min_length=1, max_length=50)
    name: str = PydanticField(min_length=1)
    unit_type: UnitType
    parent_id: str | None = None
    description: str | None = None
    max_staff: int | None = PydanticField(default=None, ge=1)
    is_active: bool = True


class OrgUnitUpdate(BaseModel):
    code: str | None = PydanticField(default=None, min_length=1, max_length=50)
    name: str | None = PydanticField(default=None, min_length=1)
    unit_type: UnitType | None = None
    parent_id: str | None = None
    description: str | None = None
    max_staff: int | None = PydanticField(default=None, ge=1)
    is_active: bool | None = None


class OrgUnitRead(ORMReadModel):
    id: str
    code: str
    name: str
    description: str | None = None
    unit_type: UnitType
    parent_id: str | None = None
    head_user_id: str | None = None
    max_staff: int | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class OrgUnitFilter(BaseModel):
    unit_type: UnitType | None = None
    parent_id: str | None = None
    roots_only: bool = False
    is_active: bool | None = None
    search: str | None = None


class PageParams(BaseModel):
    page: int = PydanticField(default=1, ge=1)
    limit: int = PydanticField(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, total: int, params: PageParams) -> PageMeta:
        total_pages = -(-total // params.limit)
        return cls(
            total=total,
            page=params.page,
            limit=params.limit,
            total_pages=total_pages,
            has_next_page=params.page < total_pages,
            has_prev_page=params.page > 1,
        )


class OrgUnitPage(BaseModel):
    items: list[OrgUnitRead]
    meta: PageMeta


class UnitNode(ORMReadModel):
    id: str
    code: str
    name: str
    unit_type: UnitType
    parent_id: str | None = None
    is_active: bool
    level: int


class UnitSummary(ORMReadModel):
    id: str
    code: str
    name: str
    unit_type: UnitType


class ChildUnitRead(ORMReadModel):
    id: str
    code: str
    name: str
    unit_type: UnitType
    is_active: bool
    children_count: int
    member_count: int


class UnitTreeNode(BaseModel):
    id: str
    code: str
    name: str
    unit_type: UnitType
    parent_id: str | None = None
    children_count: int
    member_count: int
    children: list[UnitTreeNode] = PydanticField(default_factory=list)


class HierarchyStats(BaseModel):
    unit: UnitSummary
    total_descendants: int
    max_depth: int
    total_memberships_in_subtree: int
    counts_by_type: dict[UnitType, int]
    direct_children_count: int


class MembershipTransfer(BaseModel):
    from_unit_id: str
    to_unit_id: str
    user_id: str
    role: MembershipRole = MembershipRole.MEMBER
    is_primary: bool = False


class MembershipRead(ORMReadModel):
    user_id: str
    unit_id: str
    role: MembershipRole
    is_primary: bool
    assigned_at: datetime


class StaffMemberRead(BaseModel):
    user_id: str
    username: str
    full_name: str
    email: str | None = None
    phone: str | None = None
    is_active: bool
    role: MembershipRole
    is_primary: bool
    assigned_at: datetime


class PermissionGrantCreate(BaseModel):
    module: str = PydanticField(min_length=1)
    action: PermissionAction
    resource: str | None = None


class PermissionGrantRead(ORMReadModel):
    id: str
    unit_id: str
    module: str
    action: PermissionAction
    resource: str | None = None
    created_at: datetime

    @field_validator("resource", mode="before")
    @classmethod
    def _empty_resource_is_none(cls, value: str | None) -> str | None:
        return denormalize_resource(value)


class EffectivePermission(BaseModel):
    key: str
    module: str
    action: PermissionAction
    resource: str | None = None
    unit_ids: list[str]
