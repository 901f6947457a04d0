"""
WeChat (Wechaty) side interfaces.
"""

from .types import (
    FileBox,
    ScanStatus,
    WechatyClient,
    WechatyContact,
    WechatyMessage,
    WechatyMessageType,
    WechatyRoom,
)

__all__ = [
    "FileBox",
    "ScanStatus",
    "WechatyClient",
    "WechatyContact",
    "WechatyMessage",
    "WechatyMessageType",
    "WechatyRoom",
]
