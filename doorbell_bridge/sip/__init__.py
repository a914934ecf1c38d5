"""
This package handles the SIP signaling and RTP media for the doorbell bridge.
"""

from .client import SipClient, RegistrationState
from .call import Dialog, DialogState, Direction
from .sdp import MediaEndpoint, MediaOffer, SdpParser, build_offer, parse_offer
from .auth import AuthChallenge, DigestAuthenticator
from .rtp import RtpPacket
from .rtp_bridge import MediaSource, RtpRelay, RtpSequencer
from .parser import SipMessage, parse_sip_message

__all__ = [
    "SipClient",
    "RegistrationState",
    "Dialog",
    "DialogState",
    "Direction",
    "MediaEndpoint",
    "MediaOffer",
    "SdpParser",
    "build_offer",
    "parse_offer",
    "AuthChallenge",
    "DigestAuthenticator",
    "RtpPacket",
    "MediaSource",
    "RtpRelay",
    "RtpSequencer",
    "SipMessage",
    "parse_sip_message"
]
