#!/usr/bin/env python3
"""
Puppet Manager - one Matrix puppet user per WeChat contact.
"""
import logging
from typing import Optional

from src.core.errors import SendFailed
from src.core.identity_storage import USER_SCOPE, IdentityStore, store_query
from src.core.locks import KeyedLock
from src.core.room_provisioner import BRIDGE_NAMESPACE
from src.core.virtual_identity import VirtualIdentityAllocator

logger = logging.getLogger("wechaty_bridge.puppet_manager")


class PuppetManager:
    """Provisions puppets and resolves them in both directions"""

    def __init__(
        self,
        matrix_client,
        store: IdentityStore,
        localpart_prefix: str,
        domain: str,
        allocator: Optional[VirtualIdentityAllocator] = None,
    ):
        self.matrix_client = matrix_client
        self.store = store
        self.localpart_prefix = localpart_prefix
        self.domain = domain
        self.allocator = allocator or VirtualIdentityAllocator()
        self._locks = KeyedLock()

    def find_puppet(self, contact_id: str) -> Optional[str]:
        records = self.store.query(USER_SCOPE, store_query(BRIDGE_NAMESPACE, {"contactId": contact_id}))
        return records[0]["id"] if records else None

    def contact_id_for(self, matrix_id: str) -> Optional[str]:
        data = self.store.get_user(matrix_id)
        if not data:
            return None
        return data.get(BRIDGE_NAMESPACE, {}).get("contactId")

    async def ensure_puppet(self, contact) -> str:
        """Matrix id of the puppet for ``contact``, creating it on first sight"""
        contact_id = contact.contact_id
        async with self._locks.hold(contact_id):
            existing = self.find_puppet(contact_id)
            if existing:
                return existing

            matrix_id = self.allocator.allocate(self.localpart_prefix, self.domain)
            display_name = contact.name()
            if not await self.matrix_client.register_puppet(matrix_id, display_name=display_name):
                raise SendFailed(f"Homeserver refused to register puppet {matrix_id}")

            self.store.put_user(matrix_id, {
                BRIDGE_NAMESPACE: {"contactId": contact_id, "name": display_name},
            })
            logger.info(f"Created puppet {matrix_id} for WeChat contact {contact_id} ({display_name})")
            return matrix_id
