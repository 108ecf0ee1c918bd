# chatprojects/storage/database.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from chatprojects.core.settings import get_settings

settings = get_settings()


def _sqlite_connect_args(db_url: str) -> Dict[str, Any]:
    url = make_url(db_url)
    if not url.drivername.startswith("sqlite"):
        return {}
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return {"check_same_thread": False}


engine = create_engine(settings.db_url, echo=False, future=True, connect_args=_sqlite_connect_args(settings.db_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
