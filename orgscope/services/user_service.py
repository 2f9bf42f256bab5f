from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from orgscope.domain.models import User, UserCreate, UserUpdate
from orgscope.infra.db import get_engine
from orgscope.services.errors import DuplicateUsernameError, NotFoundError


class UserService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_user(self, payload: UserCreate) -> User:
        with self._session() as session:
            user = User(
                username=payload.username,
                full_name=payload.full_name,
                email=payload.email,
                phone=payload.phone,
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateUsernameError("username already exists") from exc
            session.refresh(user)
            return user

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def list_users(self, *, active_only: bool = False) -> list[User]:
        with self._session() as session:
            statement = select(User)
            if active_only:
                statement = statement.where(User.is_active == True)  # noqa: E712
            return list(session.exec(statement.order_by(col(User.full_name))).all())

    def update_user(self, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if payload.full_name is not None:
                user.full_name = payload.full_name
            if "email" in payload.model_fields_set:
                user.email = payload.email
            if "phone" in payload.model_fields_set:
                user.phone = payload.phone
            if payload.is_active is not None:
                user.is_active = payload.is_active
            session.add(user)
            session.commit()
            session.refresh(user)
            return user
