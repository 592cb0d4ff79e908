from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from riskradar.models import Base, Supplier

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None, fixture: str | Path | None = None) -> None:
    """(Re)create the engine, ensure tables exist and seed the roster if empty."""
    global _engine, _SessionLocal
    from riskradar.config import get_settings

    settings = get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path or settings.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        factory = _SessionLocal
    _seed_suppliers(factory, Path(fixture or settings.supplier_fixture))


def _seed_suppliers(factory: sessionmaker, fixture: Path) -> None:
    """Load the packaged supplier fixture into an empty roster."""
    from riskradar.importer import import_suppliers_json

    with factory() as session:
        count = session.execute(select(func.count()).select_from(Supplier)).scalar()
        if count or not fixture.exists():
            return
        result = import_suppliers_json(fixture, session)
        session.commit()
        log.info("Seeded %d suppliers from %s", result.total_imported, fixture.name)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session that rolls back on error and always closes.

    ::

        with session_scope() as session:
            suppliers = load_suppliers(session)
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
