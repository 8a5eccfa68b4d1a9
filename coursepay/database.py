from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()
engine = None
SessionLocal = None


def make_engine(database_url: str, timeout: float = 5.0):
    if database_url.startswith("sqlite"):
        # sqlite waits on its own file lock instead of a pool
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
    return create_engine(database_url, pool_timeout=timeout, pool_pre_ping=True)


def make_session_factory(database_url: str, timeout: float = 5.0):
    bind = make_engine(database_url, timeout)
    # create tables
    from coursepay import models  # noqa: F401
    Base.metadata.create_all(bind=bind)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db(database_url: str, timeout: float = 5.0):
    global engine, SessionLocal
    if engine is None:
        SessionLocal = make_session_factory(database_url, timeout)
        engine = SessionLocal.kw["bind"]
    return SessionLocal
