"""
Typed lifecycle events exchanged between the call legs and the bridge.

Both legs report what happened to them by emitting one of these dataclasses;
the bridge consumes them from a single queue, one at a time.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from doorbell_bridge.sip.sdp import MediaOffer


@dataclass(frozen=True)
class BridgeEvent:
    """Base class for all events."""


@dataclass(frozen=True)
class ButtonPressed(BridgeEvent):
    """The doorbell button was pressed (physically or through the web hook)."""
    camera_name: str
    ding_id: Optional[str] = None
    source: str = "doorbell"


@dataclass(frozen=True)
class InboundCall(BridgeEvent):
    """A SIP peer sent an acceptable INVITE."""
    call_id: str


@dataclass(frozen=True)
class SipRinging(BridgeEvent):
    call_id: str


@dataclass(frozen=True)
class SipCallEstablished(BridgeEvent):
    call_id: str
    remote_media: "MediaOffer"


@dataclass(frozen=True)
class SipCallEnded(BridgeEvent):
    call_id: str


@dataclass(frozen=True)
class SipCallFailed(BridgeEvent):
    status: int
    reason: str
    call_id: Optional[str] = None


@dataclass(frozen=True)
class RemoteCallEstablished(BridgeEvent):
    """The doorbell answered the live call."""
    sdp: Optional[str] = None


@dataclass(frozen=True)
class RemoteAudioStarted(BridgeEvent):
    """The first audio packet arrived from the doorbell."""


@dataclass(frozen=True)
class RemoteCallEnded(BridgeEvent):
    reason: str = "ended"


@dataclass(frozen=True)
class ShutdownRequested(BridgeEvent):
    signal_name: Optional[str] = None


EventSink = Callable[[BridgeEvent], None]
