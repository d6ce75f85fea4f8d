"""
Database engine

Builds the SQLModel engine from settings.

Notes:
- Production tables are owned by the platform's migrations; ``init_db`` only
  creates the subscription tables when they are missing (local/dev runs).
- Import ``certlab.models`` before touching the metadata so every table is
  registered.
"""
from sqlmodel import Session, SQLModel, create_engine

from certlab import models  # noqa: F401
from certlab.core.config import settings

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    Create the users/subscriptions tables if they do not exist yet.

    Args:
        session: an open session; its bind is used for DDL
    """
    SQLModel.metadata.create_all(session.get_bind())
