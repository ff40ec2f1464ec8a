"""Database helpers and CRUD operations for the key/value records table."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from database.models import Base, KVRecord


def create_db_engine(url: str) -> Engine:
    return create_engine(url, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def get_value(session_factory: sessionmaker, key: str) -> Optional[Any]:
    db: Session = session_factory()
    try:
        record = db.get(KVRecord, key)
        return None if record is None else record.value
    finally:
        db.close()


def put_value(session_factory: sessionmaker, key: str, value: Any) -> None:
    db: Session = session_factory()
    try:
        record = db.get(KVRecord, key)
        if record is None:
            db.add(KVRecord(key=key, value=value, updated_at=datetime.utcnow()))
        else:
            record.value = value
            record.updated_at = datetime.utcnow()
        db.commit()
    finally:
        db.close()


def delete_values(session_factory: sessionmaker, *keys: str) -> int:
    db: Session = session_factory()
    try:
        removed = db.query(KVRecord).filter(KVRecord.key.in_(list(keys))).delete(synchronize_session=False)
        db.commit()
        return int(removed or 0)
    finally:
        db.close()


def prepend_capped(session_factory: sessionmaker, key: str, item: Any, max_len: int) -> int:
    """Insert `item` at the head of the list stored under `key` and trim to `max_len`."""
    db: Session = session_factory()
    try:
        record = db.get(KVRecord, key)
        current = list(record.value or []) if record is not None and isinstance(record.value, list) else []
        updated = ([item] + current)[: max(1, int(max_len))]
        if record is None:
            db.add(KVRecord(key=key, value=updated, updated_at=datetime.utcnow()))
        else:
            # Reassign so the JSON column is flagged dirty.
            record.value = updated
            record.updated_at = datetime.utcnow()
        db.commit()
        return len(updated)
    finally:
        db.close()
