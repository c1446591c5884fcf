# database.py
import os
from typing import Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("DATA_DIR", BASE_DIR)

os.makedirs(DATA_DIR, exist_ok=True)


def data_path(name: str) -> str:
    return os.path.join(DATA_DIR, name)


DEFAULT_SQLITE_URL = f"sqlite:///{data_path('paxora.db')}"
DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI") or DEFAULT_SQLITE_URL


def build_engine(url: Optional[str] = None) -> Engine:
    url = url or DATABASE_URL
    engine_kwargs: dict[str, Any] = {"future": True}
    if str(url).startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            # one shared connection, otherwise every checkout sees an empty db
            engine_kwargs["poolclass"] = StaticPool
        pool_pre_ping = False
    else:
        pool_pre_ping = True
    return create_engine(url, pool_pre_ping=pool_pre_ping, **engine_kwargs)


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    from models import Base

    Base.metadata.create_all(bind=engine)


engine = build_engine()
SessionLocal = build_sessionmaker(engine)
