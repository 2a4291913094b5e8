"""SQLModel database configuration."""
from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    from . import models  # noqa: F401  # ensure SQLModel metadata is loaded

    SQLModel.metadata.create_all(engine)


def SessionLocal(engine: Engine) -> Session:
    return Session(engine)
