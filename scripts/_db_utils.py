from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.lgu.db import build_engine


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """Commit-on-success session for release and seed scripts (no Flask app needed)."""
    engine = build_engine(db_url)
    s = Session(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
