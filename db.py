from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


# Base class for all ORM models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Store calls run in worker threads, so SQLite must allow cross-thread use.
    An in-memory SQLite database is pinned to a single shared connection.
    """
    kwargs = {"pool_pre_ping": True}

    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool

    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_db(engine: Engine) -> None:
    # Registers the tables on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
