"""
Interfaces of the Wechaty client objects the bridge consumes.

The Wechaty connection is owned by the caller; the bridge only needs the
methods below. Integer tags follow wechaty-puppet's ``MessageType`` and
``ScanStatus`` enums.
"""
from enum import IntEnum
from typing import List, Optional, Protocol


class WechatyMessageType(IntEnum):
    UNKNOWN = 0
    ATTACHMENT = 1
    AUDIO = 2
    CONTACT = 3
    CHAT_HISTORY = 4
    EMOTICON = 5
    IMAGE = 6
    TEXT = 7
    LOCATION = 8
    MINI_PROGRAM = 9
    GROUP_NOTE = 10
    TRANSFER = 11
    RED_ENVELOPE = 12
    RECALLED = 13
    URL = 14
    VIDEO = 15


class ScanStatus(IntEnum):
    UNKNOWN = 0
    CANCEL = 1
    WAITING = 2
    SCANNED = 3
    CONFIRMED = 4
    TIMEOUT = 5


class FileBox(Protocol):
    name: str
    mime_type: Optional[str]

    async def to_bytes(self) -> bytes: ...


class WechatyContact(Protocol):
    contact_id: str

    def name(self) -> str: ...

    async def say(self, text: str) -> None: ...


class WechatyRoom(Protocol):
    room_id: str

    async def topic(self) -> str: ...

    async def member_list(self) -> List[WechatyContact]: ...

    async def say(self, text: str) -> None: ...


class WechatyMessage(Protocol):

    def text(self) -> str: ...

    def type(self) -> int: ...

    def talker(self) -> WechatyContact: ...

    def room(self) -> Optional[WechatyRoom]: ...

    async def to_file_box(self) -> FileBox: ...


class WechatyClient(Protocol):

    async def find_contact(self, contact_id: str) -> Optional[WechatyContact]: ...

    async def find_room(self, room_id: str) -> Optional[WechatyRoom]: ...
