"""User CRUD"""
from typing import Any

from sqlmodel import Session, select

from certlab.api.errors import NotFound
from certlab.models import User, utc_now


def get(*, session: Session, user_id: str) -> User | None:
    return session.get(User, user_id)


def get_by_provider_customer_id(*, session: Session, customer_id: str) -> User | None:
    """Find the user linked to a billing provider customer (oldest first)."""
    statement = (
        select(User)
        .where(User.polar_customer_id == customer_id)
        .order_by(User.created_at)
    )
    return session.exec(statement).first()


def update(*, session: Session, user_id: str, commit: bool = True, **fields: Any) -> User:
    """Set the given columns on a user."""
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found", code=404302)
    for name, value in fields.items():
        setattr(user, name, value)
    user.updated_at = utc_now()
    session.add(user)
    if commit:
        session.commit()
        session.refresh(user)
    return user
