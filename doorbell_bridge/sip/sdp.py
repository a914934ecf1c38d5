"""
SDP (Session Description Protocol) negotiation for the SIP leg.
Parses the peer's offer/answer into media endpoints and builds our fixed OPUS + H264 offer.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from doorbell_bridge.exceptions import RejectedOffer

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION = "127.0.0.1"

AUDIO_PAYLOAD_TYPE = 96
VIDEO_PAYLOAD_TYPE = 99

_RTPMAP_RE = re.compile(r'a=rtpmap:(\d+)\s+([\w\-\.]+)')
_MEDIA_RE = re.compile(r'm=(audio|video)\s+(\d+)\s+RTP/\S+\s+(.+)')
_CONNECTION_RE = re.compile(r'c=IN IP4\s+(\S+)')


@dataclass
class MediaEndpoint:
    """Where to send one outbound media stream and which payload type to stamp on it."""
    destination: str
    port: int
    payload_type: int


@dataclass
class MediaOffer:
    """Audio and video endpoints negotiated from a session description."""
    audio: Optional[MediaEndpoint] = None
    video: Optional[MediaEndpoint] = None

    @property
    def is_empty(self) -> bool:
        return self.audio is None and self.video is None


class SdpParser:
    """Parser for the SDP bodies we receive from the SIP peer."""

    def __init__(self, sdp_content: str):
        self.lines = [line.strip() for line in sdp_content.split('\n')]

    def connection_address(self) -> str:
        """Global c= address, loopback when missing."""
        for line in self.lines:
            if line.startswith('c=IN IP4'):
                match = _CONNECTION_RE.match(line)
                if match:
                    return match.group(1)
        return DEFAULT_DESTINATION

    def media_line(self, kind: str) -> Optional[Tuple[int, List[int]]]:
        """Port and candidate payload types of the first m= line of this kind."""
        for line in self.lines:
            if not line.startswith(f'm={kind}'):
                continue
            match = _MEDIA_RE.match(line)
            if not match:
                return None
            payload_types = [int(pt) for pt in match.group(3).split() if pt.isdigit()]
            return int(match.group(2)), payload_types
        return None

    def rtpmap(self) -> List[Tuple[int, str]]:
        """All (payload type, upper-cased codec name) pairs in a=rtpmap lines."""
        mappings = []
        for line in self.lines:
            if not line.startswith('a=rtpmap:'):
                continue
            match = _RTPMAP_RE.match(line)
            if match:
                mappings.append((int(match.group(1)), match.group(2).upper()))
        return mappings

    def resolve(self, kind: str, codec: str, destination: str) -> Optional[MediaEndpoint]:
        media = self.media_line(kind)
        if not media:
            return None
        port, candidates = media

        payload_type = None
        for pt, name in self.rtpmap():
            if codec in name and pt in candidates:
                payload_type = pt
        if payload_type is None:
            return None

        logger.info(f"Found remote {kind}: {destination}:{port} PT={payload_type}")
        return MediaEndpoint(destination=destination, port=port, payload_type=payload_type)


def parse_offer(sdp_content: Optional[str]) -> MediaOffer:
    """
    Extract the OPUS audio and H264 video endpoints from a peer's SDP.

    Video shares the audio connection address; per-media c= lines are not supported.

    Raises:
        RejectedOffer: if neither audio nor video could be resolved.
    """
    if not sdp_content or not sdp_content.strip():
        raise RejectedOffer("empty session description")

    parser = SdpParser(sdp_content)
    destination = parser.connection_address()

    offer = MediaOffer(
        audio=parser.resolve('audio', 'OPUS', destination),
        video=parser.resolve('video', 'H264', destination),
    )
    if offer.is_empty:
        raise RejectedOffer("no OPUS audio or H264 video in session description")
    return offer


def find_payload_type(sdp_content: Optional[str], codec: str) -> Optional[int]:
    """First payload type whose rtpmap codec name contains `codec`."""
    if not sdp_content:
        return None
    for pt, name in SdpParser(sdp_content).rtpmap():
        if codec.upper() in name:
            return pt
    return None


def build_offer(session_id: int, local_address: str, audio_port: int, video_port: int) -> str:
    """
    Create our SDP: OPUS stereo audio (send/receive) and H264 video (send only).
    `session_id` must be unique per offer; it is used as both id and version.
    """
    lines = [
        'v=0',
        f'o=- {session_id} {session_id} IN IP4 {local_address}',
        's=-',
        f'c=IN IP4 {local_address}',
        't=0 0',
        f'm=audio {audio_port} RTP/AVP {AUDIO_PAYLOAD_TYPE}',
        f'a=rtpmap:{AUDIO_PAYLOAD_TYPE} OPUS/48000/2',
        f'a=fmtp:{AUDIO_PAYLOAD_TYPE} useinbandfec=1;minptime=10',
        'a=ptime:20',
        'a=maxptime:150',
        'a=sendrecv',
        f'm=video {video_port} RTP/AVP {VIDEO_PAYLOAD_TYPE}',
        f'a=rtpmap:{VIDEO_PAYLOAD_TYPE} H264/90000',
        f'a=fmtp:{VIDEO_PAYLOAD_TYPE} packetization-mode=1;profile-level-id=42e01f',
        'a=sendonly',
    ]
    return '\r\n'.join(lines) + '\r\n'
