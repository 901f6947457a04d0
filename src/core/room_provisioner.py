#!/usr/bin/env python3
"""
Room Provisioner - finds or creates the Matrix rooms the bridge talks in.

Direct-message rooms are looked up by the unordered participant pair, so
repeated 1:1 conversations reuse one room. WeChat group rooms are looked up
by their WeChat room id and the bridged account that sees them.
"""
import logging
from typing import Any, Dict, List, Optional

from src.core.errors import StoreUnavailable
from src.core.identity_storage import ROOM_SCOPE, IdentityStore, store_query
from src.core.locks import KeyedLock
from src.core.types import RoomMapping, create_pair_key, sort_participants

logger = logging.getLogger("wechaty_bridge.room_provisioner")

BRIDGE_NAMESPACE = "wechaty"


class RoomProvisioner:
    """Creates Matrix rooms and keeps their mappings in the IdentityStore"""

    def __init__(self, matrix_client, store: IdentityStore):
        self.matrix_client = matrix_client
        self.store = store
        # Concurrent callers for the same room key serialize
        self._locks = KeyedLock()

    async def create_room(
        self,
        participant_ids: List[str],
        creator_id: Optional[str] = None,
        name: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> RoomMapping:
        """Create a private room inviting ``participant_ids``.

        The result is not persisted; callers store it when it should be reused.
        """
        is_direct = len(participant_ids) <= 2
        creator = creator_id or self.matrix_client.get_sender_id()
        logger.debug(f"create_room({participant_ids}, creator={creator}, name={name}, direct={is_direct})")

        room_id = await self.matrix_client.create_room(
            invite=list(participant_ids),
            is_direct=is_direct,
            creator_id=creator,
            name=name,
            topic=topic,
        )
        return RoomMapping(room_id=room_id, participants=list(participant_ids), is_direct=is_direct)

    def _find(self, filters: Dict[str, Any]) -> Optional[RoomMapping]:
        records = self.store.query(ROOM_SCOPE, filters)
        if not records:
            return None
        if len(records) > 1:
            # Orphans from an interrupted create; the oldest one wins
            records.sort(key=lambda r: r.get("createdAt") or 0)
            logger.warning(f"{len(records)} rooms match {filters}, using {records[0]['id']}")
        record = records[0]
        data = record["data"]
        return RoomMapping(
            room_id=record["id"],
            participants=list(data.get("participants", [])),
            is_direct=bool(data.get("isDirect", False)),
            data=data,
        )

    def _persist(self, mapping: RoomMapping, metadata: Dict[str, Any]) -> None:
        data = {
            "participants": mapping.participants,
            "isDirect": mapping.is_direct,
            **metadata,
        }
        try:
            self.store.put_room(mapping.room_id, data)
            mapping.data = data
        except StoreUnavailable as e:
            # The room exists but nothing points at it; the next lookup re-creates
            logger.error(
                f"Orphaned room {mapping.room_id}: created but mapping not stored ({e})",
                extra={"room_id": mapping.room_id},
            )

    async def find_or_create_direct_room(
        self,
        user_a: str,
        user_b: str,
        creator_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RoomMapping:
        """The single DM room for the unordered pair ``{user_a, user_b}``"""
        pair_key = create_pair_key(user_a, user_b)
        filters = store_query(BRIDGE_NAMESPACE, {"directKey": pair_key})

        async with self._locks.hold(pair_key):
            existing = self._find(filters)
            if existing:
                logger.debug(f"Reusing DM room {existing.room_id} for {pair_key}")
                return existing

            mapping = await self.create_room(list(sort_participants(user_a, user_b)), creator_id=creator_id)
            extra = dict(metadata or {})
            namespace = dict(extra.pop(BRIDGE_NAMESPACE, {}))
            namespace["directKey"] = pair_key
            self._persist(mapping, {**extra, BRIDGE_NAMESPACE: namespace})
            logger.info(f"Created DM room {mapping.room_id} for {pair_key}")
            return mapping

    async def find_or_create_group_room(
        self,
        wechat_room_id: str,
        participant_ids: List[str],
        topic: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        account: Optional[str] = None,
    ) -> RoomMapping:
        """The Matrix room mirroring a WeChat group for one bridged ``account``.

        Operators who share a WeChat group each get their own Matrix room.
        """
        lock_key = f"room:{account or ''}:{wechat_room_id}"
        filters = store_query(BRIDGE_NAMESPACE, {"roomId": wechat_room_id})
        if account:
            filters["account"] = account

        async with self._locks.hold(lock_key):
            existing = self._find(filters)
            if existing:
                return existing

            mapping = await self.create_room(participant_ids, name=topic, topic=topic)
            extra = dict(metadata or {})
            if account:
                extra["account"] = account
            namespace = dict(extra.pop(BRIDGE_NAMESPACE, {}))
            namespace["roomId"] = wechat_room_id
            self._persist(mapping, {**extra, BRIDGE_NAMESPACE: namespace})
            logger.info(f"Created group room {mapping.room_id} for WeChat room {wechat_room_id} ({account})")
            return mapping

    async def room_members(self, room_id: str) -> List[str]:
        """Live member list; never cached"""
        return await self.matrix_client.get_joined_members(room_id)
