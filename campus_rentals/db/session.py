import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(db_url: str) -> dict:
    if not db_url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options: dict = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in db_url or db_url.rstrip("/").endswith(":"):
        # One shared connection, otherwise every checkout sees an empty database.
        options["poolclass"] = StaticPool
    return options


def build_engine(db_url: str) -> Engine:
    return create_engine(db_url, future=True, **_engine_options(db_url))


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


CAMPUS_RENT_DB_URL = _require_env("CAMPUS_RENT_DB_URL")

engine = build_engine(CAMPUS_RENT_DB_URL)

SessionLocal = build_session_factory(engine)
