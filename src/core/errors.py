"""
Exception types shared by the bridge core.

Translation errors (UploadFailed, SendFailed) are raised to the session
boundary. Setup errors (DuplicateBridgeSetup, MissingStore,
ConfigurationError) are fatal at startup.
"""
from typing import Optional


class BridgeError(Exception):
    """Base class for bridge errors"""
    pass


class ConfigurationError(BridgeError):
    """Raised when configuration is invalid"""
    pass


class StoreUnavailable(BridgeError):
    """Raised when the identity store cannot be read or written"""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class UploadFailed(BridgeError):
    """Raised when binary content could not be uploaded to the homeserver"""

    def __init__(self, message: str, status_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code


class SendFailed(BridgeError):
    """Raised when either network rejects a message"""

    def __init__(self, message: str, room_id: Optional[str] = None, status_code: Optional[str] = None):
        super().__init__(message)
        self.room_id = room_id
        self.status_code = status_code


class DuplicateBridgeSetup(BridgeError):
    """Raised when the bridge identity is initialized twice"""
    pass


class MissingStore(BridgeError):
    """Raised when the identity store handle is absent at startup"""
    pass
