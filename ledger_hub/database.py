from typing import Any, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ledger_hub.config import settings

Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def build_engine(db_url: str) -> Engine:
    engine_kwargs: dict[str, Any] = {"future": True}
    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(db_url, **engine_kwargs)


def get_engine() -> Engine:
    global _engine, SessionLocal
    if _engine is None:
        _engine = build_engine(settings.db_url)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_db() -> Iterator[Session]:
    if SessionLocal is None:
        get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Create tables for local/dev deployments."""
    from ledger_hub import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
