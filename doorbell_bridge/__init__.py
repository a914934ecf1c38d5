"""
Doorbell SIP Bridge
Connects a video doorbell's live call to a SIP phone.

Pressing the doorbell rings a SIP extension; once both sides answer, audio flows both
ways and the doorbell's video is sent to the phone.
"""

from doorbell_bridge._version import __version__, get_version_info

__description__ = "SIP bridge for video doorbell live calls"
__license__ = "MIT"

from doorbell_bridge.core.bridge import DoorbellBridge
from doorbell_bridge.sip.client import SipClient
from doorbell_bridge.remote.leg import RemoteLeg

__all__ = [
    'DoorbellBridge',
    'SipClient',
    'RemoteLeg',
    '__version__',
    'get_version_info'
]
