import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(url: str) -> dict:
    options = {"pool_pre_ping": True, "future": True}
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection, otherwise every checkout sees an empty database.
        options["connect_args"] = {"check_same_thread": False}
        options["poolclass"] = StaticPool
    return options


TOOL_LENDING_DB_URL = _require_env("TOOL_LENDING_DB_URL")

engine_lending = create_engine(
    TOOL_LENDING_DB_URL,
    **_engine_options(TOOL_LENDING_DB_URL),
)

SessionLocalLending = sessionmaker(
    bind=engine_lending,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
