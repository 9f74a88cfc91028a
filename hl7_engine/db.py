# hl7_engine/db.py

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build an engine for `url` (defaults to HL7_DATABASE_URL).

    In-memory SQLite shares one connection across the pool so every session
    sees the same database.
    """
    url = url or DATABASE_URL
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=echo, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """
    Create tables if they don't exist.
    Schema migrations are owned by the deployment; this is for local runs and tests.
    """
    from . import models  # noqa: F401  (register mappers on Base)

    Base.metadata.create_all(bind=engine)


def coerce_value(value: Any) -> Tuple[Optional[float], Optional[str]]:
    """
    Split an OBX-5 value into (numeric, raw). The raw text is always kept;
    numeric is filled only when the whole value parses as a number.
    """
    if value is None:
        return None, None
    s = str(value).strip()
    if s == "":
        return None, ""
    try:
        return float(s), s
    except ValueError:
        return None, s


def dumps(obj: Any) -> str:
    return json.dumps(obj, default=str, sort_keys=True)
