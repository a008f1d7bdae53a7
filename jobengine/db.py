"""
Database configuration and session management
"""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger("jobengine.db")

# Create base class for models
Base = declarative_base()


def make_engine(url: str):
    """Create an engine; SQLite connections are shared with the runner threads"""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def init_db(engine):
    """Initialize database tables"""
    # Make sure all models are imported so Base.metadata is populated
    from . import history  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database tables ready at {engine.url.render_as_string(hide_password=True)}",
                extra={"component": "db"})


@contextmanager
def session_scope(session_factory):
    s = session_factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
