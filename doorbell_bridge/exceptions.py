"""
Error types raised by the bridge.
Every failure the signaling, media and orchestration layers surface derives from BridgeError.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class TransportError(BridgeError):
    """A socket could not be bound or written to."""


class AuthRequired(BridgeError):
    """A digest challenge was received that cannot be answered."""


class RejectedOffer(BridgeError):
    """The peer's session description has no usable media."""


class CallFailure(BridgeError):
    """An INVITE ended with a final response other than 2xx."""

    def __init__(self, status: int, reason: str, call_id: Optional[str] = None):
        self.status = status
        self.reason = reason
        self.call_id = call_id
        super().__init__(f"{status} {reason}")


class RemoteLegDropped(BridgeError):
    """The doorbell call could not be started or restarted after it dropped."""
