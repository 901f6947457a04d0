"""
Core module for the Wechaty-Matrix bridge

Contains:
- IdentityStore: durable user/room records
- VirtualIdentityAllocator: puppet Matrix ids
- RoomProvisioner: DM and group room lookup/creation
- MessageTranslator: WeChat <-> Matrix message conversion
- RoleClassifier: bot / puppet / user sender classification
- SessionRouter: per-account event dispatch
"""

from .identity_storage import IdentityStore, store_query
from .virtual_identity import VirtualIdentityAllocator
from .room_provisioner import RoomProvisioner
from .message_translator import MessageTranslator
from .role_classifier import RoleClassifier
from .puppet_manager import PuppetManager
from .session_router import BridgeAccount, SessionRouter

__all__ = [
    "IdentityStore",
    "store_query",
    "VirtualIdentityAllocator",
    "RoomProvisioner",
    "MessageTranslator",
    "RoleClassifier",
    "PuppetManager",
    "BridgeAccount",
    "SessionRouter",
]
