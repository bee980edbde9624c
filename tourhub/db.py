from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./tourhub.db")


@lru_cache(maxsize=1)
def _default_engine() -> Engine:
    eng = create_engine(DATABASE_URL, pool_pre_ping=True)
    Base.metadata.create_all(eng)
    return eng


def get_engine() -> Engine:
    # FastAPI dependency; tests override it with an in-memory engine.
    return _default_engine()


def session(engine: Engine) -> Session:
    # Handlers read ORM attributes after committing inside a short-lived
    # session context, so attributes must not expire on commit.
    return Session(engine, expire_on_commit=False)
