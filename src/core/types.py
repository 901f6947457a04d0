#!/usr/bin/env python3
"""
Shared type definitions for the core module.

This module contains dataclasses and enums used across multiple core modules
to avoid circular import issues.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class SourceNetwork(str, Enum):
    MATRIX = "matrix"
    WECHAT = "wechat"


class MessageKind(str, Enum):
    """Closed set of message kinds the translator knows about"""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    ATTACHMENT = "attachment"
    CONTACT = "contact"
    UNKNOWN = "unknown"


class Role(str, Enum):
    BOT = "bot"
    PUPPET = "puppet"
    USER = "user"


class SessionState(str, Enum):
    LOGGED_OUT = "logged_out"
    AWAITING_SCAN = "awaiting_scan"
    LOGGED_IN = "logged_in"


@dataclass
class InboundMessage:
    """Network-agnostic message envelope.

    ``payload`` is the literal body for text messages and a binary accessor
    (anything with an async ``to_bytes()``) for image/audio/attachment.
    """
    source_network: SourceNetwork
    sender_id: str
    room_id: Optional[str]
    kind: MessageKind
    payload: Any = None
    name: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class RoomMapping:
    """Association between a Matrix room and the participants used to create it"""
    room_id: str
    participants: List[str]
    is_direct: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def pair_key(self) -> Optional[str]:
        if not self.is_direct or len(self.participants) != 2:
            return None
        return create_pair_key(self.participants[0], self.participants[1])


@dataclass
class SendOperation:
    """A single Matrix send performed by the translator"""
    kind: str  # "text" or "image"
    room_id: str
    sender_id: Optional[str]
    event_id: Optional[str] = None
    content_uri: Optional[str] = None


StoreScalar = Union[str, int, float, bool]
StoreQuery = Dict[str, StoreScalar]


def sort_participants(mxid1: str, mxid2: str) -> Tuple[str, str]:
    """Sort two MXIDs alphabetically."""
    sorted_mxids = sorted([mxid1, mxid2])
    return sorted_mxids[0], sorted_mxids[1]


def create_pair_key(mxid1: str, mxid2: str) -> str:
    """Create consistent key from two MXIDs: "mxid1<->mxid2" (sorted)"""
    first, second = sort_participants(mxid1, mxid2)
    return f"{first}<->{second}"
