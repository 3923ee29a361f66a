from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for declarative ORM models.
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for the given connection string."""
    if database_url.startswith("sqlite"):
        # Requests run on FastAPI's threadpool, so connections cross threads.
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    # Orders are handed back to the HTTP layer after commit, so keep them loaded.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

