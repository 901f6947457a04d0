"""
SQLAlchemy models for bridged user and room records.

Each record is keyed by its Matrix id and carries a free-form JSON ``data``
column. Lookups by WeChat ids go through JSON path equality on that column,
so records written by earlier bridge versions stay queryable.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import JSON, Column, DateTime, String, and_

from .database import Base, get_session_maker


class UserRecord(Base):
    """Matrix user (bot or puppet) known to the bridge"""
    __tablename__ = 'bridge_users'

    id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> Dict:
        return _record_to_dict(self)

    def __repr__(self):
        return f"<UserRecord(id={self.id})>"


class RoomRecord(Base):
    """Matrix room created or adopted by the bridge"""
    __tablename__ = 'bridge_rooms'

    id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> Dict:
        return _record_to_dict(self)

    def __repr__(self):
        return f"<RoomRecord(id={self.id})>"


def _record_to_dict(record) -> Dict:
    """Timestamps are milliseconds since epoch"""
    return {
        "id": record.id,
        "data": dict(record.data or {}),
        "createdAt": int(record.created_at.timestamp() * 1000) if record.created_at else None,
        "updatedAt": int(record.updated_at.timestamp() * 1000) if record.updated_at else None,
    }


def _path_clause(model, path: str, value: Any):
    element = model.data[tuple(path.split('.'))]
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, float):
        return element.as_float() == value
    return element.as_string() == str(value)


class BridgeRecordDB:
    """Helper class for database operations on one record table"""

    def __init__(self, model: Type[Base], session_maker=None):
        self.model = model
        self.Session = session_maker or get_session_maker()

    def get(self, record_id: str) -> Optional[Dict]:
        session = self.Session()
        try:
            record = session.query(self.model).filter_by(id=record_id).first()
            return record.to_dict() if record else None
        finally:
            session.close()

    def put(self, record_id: str, data: Dict[str, Any]) -> Dict:
        """Insert or replace a record in a single transaction"""
        session = self.Session()
        try:
            record = session.query(self.model).filter_by(id=record_id).first()
            if record:
                record.data = dict(data)
                record.updated_at = datetime.utcnow()
            else:
                record = self.model(id=record_id, data=dict(data))
                session.add(record)
            session.commit()
            session.refresh(record)
            return record.to_dict()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete(self, record_id: str) -> bool:
        session = self.Session()
        try:
            record = session.query(self.model).filter_by(id=record_id).first()
            if not record:
                return False
            session.delete(record)
            session.commit()
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def query(self, filters: Dict[str, Any]) -> List[Dict]:
        """Records whose nested ``data`` fields equal every filter value"""
        session = self.Session()
        try:
            clauses = [_path_clause(self.model, path, value) for path, value in filters.items()]
            records = session.query(self.model).filter(and_(*clauses)).all()
            return [record.to_dict() for record in records]
        finally:
            session.close()
