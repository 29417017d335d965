from __future__ import annotations

from contextlib import contextmanager

from app.bizops.db import build_engine, build_sessionmaker, transaction


@contextmanager
def script_session(db_url: str):
    """Session for release/seed scripts that run without the Flask app."""
    engine = build_engine(db_url)
    try:
        with transaction(build_sessionmaker(engine)) as s:
            yield s
    finally:
        engine.dispose()
