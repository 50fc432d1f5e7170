from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base


def make_engine(database_uri, echo=False):
    connect_args = {}
    if database_uri.startswith("sqlite"):
        # sessions are used from Flask worker threads; wait on the write lock
        # instead of failing fast when another checkout holds it
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_uri, echo=echo, future=True, connect_args=connect_args)


def make_session_factory(engine):
    # Create tables if not present
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)
