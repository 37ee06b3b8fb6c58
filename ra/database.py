# ra/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def init_db(database_url: str):
    """Bind the session factory to ``database_url`` and create missing tables."""
    global engine
    kwargs = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    SessionLocal.configure(bind=engine)

    # models must be imported so their tables are registered on Base.metadata
    from ra import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    return engine
