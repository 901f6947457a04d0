"""
Matrix side of the bridge.

``MatrixClient`` is the interface the core is written against;
``MatrixAppservice`` implements it on top of matrix-nio clients from a
``MatrixClientPool``.
"""
import io
import logging
import re
from typing import List, Optional, Protocol

from nio import (
    JoinedMembersResponse,
    JoinResponse,
    ProfileSetDisplayNameResponse,
    RoomCreateResponse,
    RoomInviteResponse,
    RoomPreset,
    RoomSendResponse,
    RoomVisibility,
    UploadResponse,
)

from src.core.errors import SendFailed, UploadFailed
from src.matrix.client_pool import MatrixClientPool

logger = logging.getLogger("wechaty_bridge.appservice")


class MatrixClient(Protocol):

    def get_sender_id(self) -> str: ...

    def is_remote_user(self, user_id: str) -> bool: ...

    async def create_room(
        self,
        invite: List[str],
        is_direct: bool,
        creator_id: Optional[str] = None,
        name: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> str: ...

    async def send_text(self, room_id: str, body: str, sender_id: Optional[str] = None) -> str: ...

    async def send_image(
        self,
        room_id: str,
        url: str,
        mime_type: Optional[str] = None,
        body: str = "Image",
        sender_id: Optional[str] = None,
    ) -> str: ...

    async def upload_content(
        self,
        data: bytes,
        name: Optional[str] = None,
        mime_type: Optional[str] = None,
        sender_id: Optional[str] = None,
    ) -> str: ...

    async def get_joined_members(self, room_id: str) -> List[str]: ...

    async def register_puppet(self, user_id: str, display_name: Optional[str] = None) -> bool: ...

    async def join_room(self, room_id: str, user_id: Optional[str] = None) -> bool: ...

    async def invite_user(self, room_id: str, user_id: str) -> bool: ...


class MatrixAppservice:
    """MatrixClient backed by matrix-nio"""

    def __init__(self, pool: MatrixClientPool, puppet_namespace_regex: str):
        self.pool = pool
        self._namespace = re.compile(puppet_namespace_regex)

    def get_sender_id(self) -> str:
        return self.pool.bot_user_id

    def is_remote_user(self, user_id: str) -> bool:
        """True if ``user_id`` lies in the appservice's exclusive user namespace"""
        return user_id != self.pool.bot_user_id and bool(self._namespace.fullmatch(user_id))

    async def create_room(
        self,
        invite: List[str],
        is_direct: bool,
        creator_id: Optional[str] = None,
        name: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> str:
        client = await self.pool.get_client(creator_id)
        # The creator is in the room already; inviting it again is rejected
        invitees = [user_id for user_id in invite if user_id != client.user_id]
        response = await client.room_create(
            visibility=RoomVisibility.private,
            name=name,
            topic=topic,
            is_direct=is_direct,
            preset=RoomPreset.trusted_private_chat,
            invite=invitees,
        )
        if not isinstance(response, RoomCreateResponse):
            logger.error(f"Room creation by {client.user_id} failed: {response}")
            raise SendFailed(
                f"Room creation rejected: {getattr(response, 'message', response)}",
                status_code=getattr(response, "status_code", None),
            )
        logger.info(f"Created room {response.room_id} as {client.user_id} inviting {invitees}")
        return response.room_id

    async def _send(self, room_id: str, content: dict, sender_id: Optional[str]) -> str:
        client = await self.pool.get_client(sender_id)
        response = await client.room_send(
            room_id=room_id,
            message_type="m.room.message",
            content=content,
        )
        if not isinstance(response, RoomSendResponse):
            raise SendFailed(
                f"Send to {room_id} rejected: {getattr(response, 'message', response)}",
                room_id=room_id,
                status_code=getattr(response, "status_code", None),
            )
        return response.event_id

    async def send_text(self, room_id: str, body: str, sender_id: Optional[str] = None) -> str:
        return await self._send(room_id, {"msgtype": "m.text", "body": body}, sender_id)

    async def send_image(
        self,
        room_id: str,
        url: str,
        mime_type: Optional[str] = None,
        body: str = "Image",
        sender_id: Optional[str] = None,
    ) -> str:
        info = {"mimetype": mime_type} if mime_type else {}
        content = {"msgtype": "m.image", "body": body, "info": info, "url": url}
        return await self._send(room_id, content, sender_id)

    async def upload_content(
        self,
        data: bytes,
        name: Optional[str] = None,
        mime_type: Optional[str] = None,
        sender_id: Optional[str] = None,
    ) -> str:
        client = await self.pool.get_client(sender_id)
        response, _ = await client.upload(
            io.BytesIO(data),
            content_type=mime_type or "application/octet-stream",
            filename=name,
            filesize=len(data),
        )
        if not isinstance(response, UploadResponse):
            raise UploadFailed(
                f"Upload of {name or 'content'} rejected: {getattr(response, 'message', response)}",
                status_code=getattr(response, "status_code", None),
            )
        return response.content_uri

    async def get_joined_members(self, room_id: str) -> List[str]:
        client = await self.pool.get_client()
        response = await client.joined_members(room_id)
        if not isinstance(response, JoinedMembersResponse):
            raise SendFailed(f"Cannot list members of {room_id}: {getattr(response, 'message', response)}",
                             room_id=room_id)
        return [member.user_id for member in response.members]

    async def register_puppet(self, user_id: str, display_name: Optional[str] = None) -> bool:
        if not await self.pool.register(user_id):
            return False
        if display_name:
            client = await self.pool.get_client(user_id)
            response = await client.set_displayname(display_name)
            if not isinstance(response, ProfileSetDisplayNameResponse):
                logger.warning(f"Failed to set display name for {user_id}: {response}")
        return True

    async def join_room(self, room_id: str, user_id: Optional[str] = None) -> bool:
        client = await self.pool.get_client(user_id)
        response = await client.join(room_id)
        if isinstance(response, JoinResponse):
            logger.info(f"{client.user_id} joined {room_id}")
            return True
        logger.warning(f"{client.user_id} could not join {room_id}: {response}")
        return False

    async def invite_user(self, room_id: str, user_id: str) -> bool:
        client = await self.pool.get_client()
        response = await client.room_invite(room_id, user_id)
        if isinstance(response, RoomInviteResponse):
            logger.info(f"Invited {user_id} to {room_id}")
            return True
        # Already invited or joined
        logger.warning(f"Could not invite {user_id} to {room_id}: {response}")
        return False
