"""
Message Translator - converts messages between the WeChat and Matrix models.

WeChat -> Matrix:
    text                  -> one m.text send
    image (and emoticon)  -> upload to the media repo, then one m.image send
    audio / attachment / contact / unknown -> dropped (no Matrix form yet)

Matrix -> WeChat:
    m.room.message text from a real Matrix user -> ``say()`` on the mapped
    WeChat contact or room. Bot and puppet events are echoes and are ignored.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.core.config import preview
from src.core.errors import SendFailed, UploadFailed
from src.core.identity_storage import IdentityStore
from src.core.role_classifier import RoleClassifier
from src.core.room_provisioner import BRIDGE_NAMESPACE
from src.core.types import InboundMessage, MessageKind, Role, SendOperation, SourceNetwork
from src.wechat.types import WechatyMessage, WechatyMessageType

logger = logging.getLogger("wechaty_bridge.message_translator")

TEXT_MSGTYPES = {"m.text", "m.notice", "m.emote"}

# Emoticon is what the iPad protocol calls an image
MESSAGE_KINDS: Dict[WechatyMessageType, MessageKind] = {
    WechatyMessageType.UNKNOWN: MessageKind.UNKNOWN,
    WechatyMessageType.ATTACHMENT: MessageKind.ATTACHMENT,
    WechatyMessageType.AUDIO: MessageKind.AUDIO,
    WechatyMessageType.CONTACT: MessageKind.CONTACT,
    WechatyMessageType.CHAT_HISTORY: MessageKind.UNKNOWN,
    WechatyMessageType.EMOTICON: MessageKind.IMAGE,
    WechatyMessageType.IMAGE: MessageKind.IMAGE,
    WechatyMessageType.TEXT: MessageKind.TEXT,
    WechatyMessageType.LOCATION: MessageKind.UNKNOWN,
    WechatyMessageType.MINI_PROGRAM: MessageKind.UNKNOWN,
    WechatyMessageType.GROUP_NOTE: MessageKind.UNKNOWN,
    WechatyMessageType.TRANSFER: MessageKind.UNKNOWN,
    WechatyMessageType.RED_ENVELOPE: MessageKind.UNKNOWN,
    WechatyMessageType.RECALLED: MessageKind.UNKNOWN,
    WechatyMessageType.URL: MessageKind.UNKNOWN,
    WechatyMessageType.VIDEO: MessageKind.UNKNOWN,
}

if set(MESSAGE_KINDS) != set(WechatyMessageType):
    raise RuntimeError("every Wechaty message type needs a kind")


def message_kind(message_type: int) -> MessageKind:
    try:
        return MESSAGE_KINDS[WechatyMessageType(message_type)]
    except ValueError:
        return MessageKind.UNKNOWN

Handler = Callable[[InboundMessage, str, Optional[str]], Awaitable[List[SendOperation]]]


async def inbound_from_wechaty(
    message: WechatyMessage,
    sender_id: str,
    room_id: Optional[str] = None,
) -> InboundMessage:
    """Wrap a Wechaty message in the network-agnostic envelope"""
    message_type = message.type()
    kind = message_kind(message_type)
    inbound = InboundMessage(
        source_network=SourceNetwork.WECHAT,
        sender_id=sender_id,
        room_id=room_id,
        kind=kind,
    )
    if kind is MessageKind.IMAGE:
        file_box = await message.to_file_box()
        mime_type = file_box.mime_type
        if mime_type == "emoticon" or (not mime_type and message_type == WechatyMessageType.EMOTICON):
            mime_type = "image/gif"
        inbound.payload = file_box
        inbound.name = file_box.name
        inbound.mime_type = mime_type
    else:
        inbound.payload = message.text()
    return inbound


class MessageTranslator:

    def __init__(self, matrix_client, store: IdentityStore, classifier: RoleClassifier,
                 preview_length: int = 100):
        self.matrix_client = matrix_client
        self.store = store
        self.classifier = classifier
        self.preview_length = preview_length
        self._handlers: Dict[MessageKind, Handler] = {
            MessageKind.TEXT: self._text_to_matrix,
            MessageKind.IMAGE: self._image_to_matrix,
            MessageKind.AUDIO: self._drop,
            MessageKind.ATTACHMENT: self._drop,
            MessageKind.CONTACT: self._drop,
            MessageKind.UNKNOWN: self._drop,
        }
        missing = set(MessageKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No translation for message kinds: {missing}")

    async def to_matrix(
        self,
        msg: InboundMessage,
        room_id: str,
        sender_id: Optional[str] = None,
    ) -> List[SendOperation]:
        """Send ``msg`` into ``room_id`` as ``sender_id`` (the bot when None)"""
        body_preview = preview(msg.payload, self.preview_length) if isinstance(msg.payload, str) else ""
        logger.debug(f"to_matrix({msg.kind.value}: {body_preview}, {room_id}, {sender_id or 'BOT'})")
        return await self._handlers[msg.kind](msg, room_id, sender_id)

    async def _drop(self, msg: InboundMessage, room_id: str, sender_id: Optional[str]) -> List[SendOperation]:
        logger.debug(f"No Matrix representation for {msg.kind.value} message from {msg.sender_id}, dropped")
        return []

    async def _text_to_matrix(self, msg: InboundMessage, room_id: str,
                              sender_id: Optional[str]) -> List[SendOperation]:
        try:
            event_id = await self.matrix_client.send_text(room_id, msg.payload or "", sender_id=sender_id)
        except Exception as e:
            self._log_rejection(sender_id, room_id, e)
            if isinstance(e, SendFailed):
                raise
            raise SendFailed(f"Text send to {room_id} failed: {e}", room_id=room_id) from e
        return [SendOperation(kind="text", room_id=room_id, sender_id=sender_id, event_id=event_id)]

    async def _image_to_matrix(self, msg: InboundMessage, room_id: str,
                               sender_id: Optional[str]) -> List[SendOperation]:
        # TODO: key uploads by a hash of the WeChat media url to avoid re-uploading the same sticker
        try:
            data = await msg.payload.to_bytes()
            url = await self.matrix_client.upload_content(
                data, name=msg.name, mime_type=msg.mime_type, sender_id=sender_id,
            )
        except Exception as e:
            self._log_rejection(sender_id, room_id, e)
            if isinstance(e, UploadFailed):
                raise
            raise UploadFailed(f"Upload of {msg.name or 'image'} failed: {e}") from e

        try:
            event_id = await self.matrix_client.send_image(
                room_id, url, mime_type=msg.mime_type, sender_id=sender_id,
            )
        except Exception as e:
            self._log_rejection(sender_id, room_id, e)
            if isinstance(e, SendFailed):
                raise
            raise SendFailed(f"Image send to {room_id} failed: {e}", room_id=room_id) from e
        return [SendOperation(kind="image", room_id=room_id, sender_id=sender_id,
                              event_id=event_id, content_uri=url)]

    def _log_rejection(self, sender_id: Optional[str], room_id: str, error: Exception) -> None:
        logger.error(
            f"to_matrix() rejection from {sender_id or 'BOT'} to room {room_id}: {error}",
            extra={"sender": sender_id or "BOT", "room_id": room_id},
        )

    async def to_wechat(self, event: Dict[str, Any], account) -> bool:
        """Relay a Matrix event to WeChat. Returns True if something was sent."""
        sender = event.get("sender", "")
        room_id = event.get("room_id", "")

        if event.get("type") != "m.room.message":
            return False
        role = self.classifier.classify(sender)
        if role is not Role.USER:
            logger.debug(f"Ignoring {role.value} event from {sender} in {room_id}")
            return False

        content = event.get("content") or {}
        if content.get("msgtype") not in TEXT_MSGTYPES:
            logger.debug(f"Ignoring {content.get('msgtype')} from {sender}: only text goes to WeChat")
            return False
        body = content.get("body", "")

        record = self.store.get_room(room_id) or {}
        namespace = record.get(BRIDGE_NAMESPACE, {})
        target = None
        if namespace.get("roomId"):
            target = await account.wechaty.find_room(namespace["roomId"])
        elif namespace.get("contactId"):
            target = await account.wechaty.find_contact(namespace["contactId"])
        else:
            logger.debug(f"Room {room_id} has no WeChat counterpart")
            return False

        if target is None:
            logger.warning(f"WeChat side of {room_id} not found: {namespace}")
            return False

        logger.debug(f"to_wechat({preview(body, self.preview_length)}) from {sender} in {room_id}")
        try:
            await target.say(body)
        except Exception as e:
            logger.error(f"to_wechat() rejection from {sender} in room {room_id}: {e}",
                         extra={"sender": sender, "room_id": room_id})
            raise SendFailed(f"WeChat rejected message from {sender}: {e}", room_id=room_id) from e
        return True
