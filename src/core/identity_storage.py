"""
Identity Store - durable mapping between Matrix users/rooms and WeChat
contacts/rooms.

Records are keyed by Matrix id and carry arbitrary JSON metadata. WeChat ids
live under a namespace inside that metadata (``{"wechaty": {"contactId": ...}}``)
and are found with dot-path equality queries.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from src.core.errors import StoreUnavailable
from src.core.types import StoreQuery
from src.models.bridge_records import BridgeRecordDB, RoomRecord, UserRecord

logger = logging.getLogger("wechaty_bridge.identity_storage")

USER_SCOPE = "user"
ROOM_SCOPE = "room"


def store_query(data_key: str, filter_data: Dict[str, Any]) -> StoreQuery:
    """Scope every filter key under the caller's namespace.

    >>> store_query("wechaty", {"contactId": "wxid_1"})
    {'wechaty.contactId': 'wxid_1'}
    """
    logger.debug(f"store_query({data_key}, {filter_data})")
    return {f"{data_key}.{key}": value for key, value in filter_data.items()}


class IdentityStore:
    """Sole writer of user and room records"""

    def __init__(self, session_maker=None):
        self._dbs = {
            USER_SCOPE: BridgeRecordDB(UserRecord, session_maker),
            ROOM_SCOPE: BridgeRecordDB(RoomRecord, session_maker),
        }
        logger.info("IdentityStore initialized")

    def _db(self, scope: str) -> BridgeRecordDB:
        try:
            return self._dbs[scope]
        except KeyError:
            raise ValueError(f"Unknown store scope: {scope}")

    def _call(self, scope: str, operation: str, *args):
        db = self._db(scope)
        try:
            return getattr(db, operation)(*args)
        except SQLAlchemyError as e:
            logger.error(f"Store {operation} failed for {scope} records: {e}")
            raise StoreUnavailable(f"{scope} store {operation} failed: {e}", cause=e) from e

    def put_user(self, matrix_id: str, metadata: Dict[str, Any]) -> None:
        self._call(USER_SCOPE, "put", matrix_id, metadata)
        logger.info(f"Stored user record {matrix_id}")

    def get_user(self, matrix_id: str) -> Optional[Dict[str, Any]]:
        record = self._call(USER_SCOPE, "get", matrix_id)
        return record["data"] if record else None

    def delete_user(self, matrix_id: str) -> bool:
        return self._call(USER_SCOPE, "delete", matrix_id)

    def put_room(self, room_id: str, metadata: Dict[str, Any]) -> None:
        self._call(ROOM_SCOPE, "put", room_id, metadata)
        logger.info(f"Stored room record {room_id}")

    def get_room(self, room_id: str) -> Optional[Dict[str, Any]]:
        record = self._call(ROOM_SCOPE, "get", room_id)
        return record["data"] if record else None

    def delete_room(self, room_id: str) -> bool:
        return self._call(ROOM_SCOPE, "delete", room_id)

    def query(self, scope: str, filters: StoreQuery) -> List[Dict[str, Any]]:
        """Records matching every field path in ``filters``.

        An empty filter matches nothing; it never turns into a full scan.
        """
        self._db(scope)
        if not filters:
            logger.warning(f"Empty filter for {scope} query, returning no records")
            return []
        return self._call(scope, "query", dict(filters))
