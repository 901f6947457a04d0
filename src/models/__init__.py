from .database import (
    Base,
    create_bridge_engine,
    get_engine,
    get_session_maker,
    init_database,
)
from .bridge_records import (
    UserRecord,
    RoomRecord,
    BridgeRecordDB,
)

__all__ = [
    "Base",
    "create_bridge_engine",
    "get_engine",
    "get_session_maker",
    "init_database",
    "UserRecord",
    "RoomRecord",
    "BridgeRecordDB",
]
