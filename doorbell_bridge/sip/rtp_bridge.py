"""
RTP relay between the SIP peer and the doorbell call.
Owns the local audio/video RTP sockets and arbitrates which source feeds each outbound audio stream.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from doorbell_bridge.exceptions import TransportError
from .rtp import RtpPacket
from .sdp import MediaEndpoint, MediaOffer

logger = logging.getLogger(__name__)

# 20 ms of 48 kHz OPUS
DEFAULT_TIMESTAMP_STEP = 960


class MediaSource(Enum):
    LIVE = "live"
    TONE = "tone"


@dataclass
class SequencerState:
    """What the receiver has seen so far on one outbound stream."""
    owner: MediaSource = MediaSource.TONE
    last_sequence: Optional[int] = None
    last_timestamp: Optional[int] = None
    ssrc: Optional[int] = None
    source_ssrc: Optional[int] = None
    sequence_offset: int = 0
    timestamp_offset: int = 0
    timestamp_step: int = DEFAULT_TIMESTAMP_STEP
    resync: bool = False


class RtpSequencer:
    """
    Lets exactly one source (live call audio or injected tone) own an outbound stream.

    Packets from the other source are dropped. Packets from the owner are rewritten so
    the receiver sees one continuous stream: a single SSRC, sequence numbers that keep
    counting and timestamps that keep advancing across ownership changes.
    """

    def __init__(self, name: str, owner: MediaSource = MediaSource.TONE):
        self.name = name
        self.state = SequencerState(owner=owner)
        self.forwarded = 0
        self.dropped = 0

    @property
    def owner(self) -> MediaSource:
        return self.state.owner

    def hand_over(self, source: MediaSource) -> None:
        """Give the outbound stream to `source`."""
        if source == self.state.owner:
            return
        logger.info(f"🔀 {self.name} stream ownership: {self.state.owner.value} -> {source.value}")
        self.state.owner = source
        self.state.resync = True

    def process(self, packet: RtpPacket, is_tone: bool = False) -> bool:
        """Decide whether `packet` may be forwarded, renumbering it in place if so."""
        source = MediaSource.TONE if is_tone else MediaSource.LIVE
        state = self.state
        if source != state.owner:
            self.dropped += 1
            return False

        if state.ssrc is None:
            state.ssrc = packet.ssrc
            state.source_ssrc = packet.ssrc
            state.resync = False
        elif state.resync or packet.ssrc != state.source_ssrc:
            # New source (or restarted one): continue right after the last packet we sent
            state.sequence_offset = (state.last_sequence + 1 - packet.sequence_number) & 0xFFFF
            state.timestamp_offset = (state.last_timestamp + state.timestamp_step - packet.timestamp) & 0xFFFFFFFF
            state.source_ssrc = packet.ssrc
            state.resync = False
            packet.marker = True

        sequence = (packet.sequence_number + state.sequence_offset) & 0xFFFF
        timestamp = (packet.timestamp + state.timestamp_offset) & 0xFFFFFFFF

        if state.last_timestamp is not None:
            step = (timestamp - state.last_timestamp) & 0xFFFFFFFF
            if 0 < step < 0x10000:
                state.timestamp_step = step

        packet.sequence_number = sequence
        packet.timestamp = timestamp
        packet.ssrc = state.ssrc
        state.last_sequence = sequence
        state.last_timestamp = timestamp
        self.forwarded += 1
        return True


class _RtpProtocol(asyncio.DatagramProtocol):
    def __init__(self, relay: "RtpRelay", kind: str):
        self.relay = relay
        self.kind = kind

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.relay.handle_datagram(self.kind, data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"RTP {self.kind} socket error: {exc}")


class RtpRelay:
    """
    Forwards media between the SIP peer and the doorbell leg.
    Audio arrives from the SIP peer and is handed to the piped sink; audio and video from
    the doorbell are sent to the endpoints negotiated in the SIP peer's SDP.
    """

    def __init__(self, local_ip: str, audio_port: int, video_port: int):
        self.local_ip = local_ip
        self.audio_port = audio_port
        self.video_port = video_port
        self.sequencer = RtpSequencer("sip audio")
        self.remote_media: Optional[MediaOffer] = None

        self._audio_transport: Optional[asyncio.DatagramTransport] = None
        self._video_transport: Optional[asyncio.DatagramTransport] = None
        self._audio_sink: Optional[Callable[[RtpPacket], Any]] = None

        self.packets_received = 0
        self.packets_sent = 0
        self.packets_dropped = 0

    async def start(self) -> None:
        """Bind the audio and video RTP sockets."""
        if self._audio_transport:
            return
        loop = asyncio.get_running_loop()
        try:
            self._audio_transport, _ = await loop.create_datagram_endpoint(
                lambda: _RtpProtocol(self, "audio"), local_addr=(self.local_ip, self.audio_port))
            logger.info(f"🎵 Audio RTP socket bound to {self.local_ip}:{self.audio_port}")
            self._video_transport, _ = await loop.create_datagram_endpoint(
                lambda: _RtpProtocol(self, "video"), local_addr=(self.local_ip, self.video_port))
            logger.info(f"🎬 Video RTP socket bound to {self.local_ip}:{self.video_port}")
        except OSError as e:
            self.close()
            raise TransportError(f"Failed to bind RTP sockets on {self.local_ip}: {e}") from e

    def set_remote_media(self, offer: Optional[MediaOffer]) -> None:
        self.remote_media = offer

    def pipe_audio(self, sink: Callable[[RtpPacket], Any]) -> None:
        """Deliver every audio packet received from the SIP peer to `sink`."""
        self._audio_sink = sink

    def handle_datagram(self, kind: str, data: bytes, addr: Tuple[str, int]) -> None:
        if kind != "audio":
            # Our video stream is send-only
            return
        packet = RtpPacket.parse(data)
        if not packet:
            return
        self.packets_received += 1
        if self.packets_received == 1:
            logger.info(f"🎵 First RTP audio packet from SIP peer {addr[0]}:{addr[1]}")
        if self._audio_sink:
            self._audio_sink(packet)

    def send_audio_packet(self, packet: RtpPacket, is_tone: bool = False) -> bool:
        """Send doorbell (or tone) audio to the SIP peer."""
        if not self.remote_media or not self.remote_media.audio:
            return False
        if not self.sequencer.process(packet, is_tone):
            return False
        return self.forward(packet, self.remote_media.audio, self._audio_transport)

    def send_video_packet(self, packet: RtpPacket) -> bool:
        """Send doorbell video to the SIP peer; there is no synthetic video, so no arbitration."""
        if not self.remote_media or not self.remote_media.video:
            return False
        return self.forward(packet, self.remote_media.video, self._video_transport)

    def forward(self, packet: RtpPacket, endpoint: Optional[MediaEndpoint],
                transport: Optional[asyncio.DatagramTransport]) -> bool:
        """Stamp the negotiated payload type and send; RTP is best effort, failures drop the packet."""
        if endpoint is None or transport is None or transport.is_closing():
            return False
        packet.payload_type = endpoint.payload_type
        try:
            transport.sendto(packet.serialize(), (endpoint.destination, endpoint.port))
        except OSError as e:
            self.packets_dropped += 1
            logger.debug(f"Dropped RTP packet to {endpoint.destination}:{endpoint.port}: {e}")
            return False
        self.packets_sent += 1
        return True

    def close(self) -> None:
        for transport in (self._audio_transport, self._video_transport):
            if transport:
                transport.close()
        self._audio_transport = None
        self._video_transport = None
        self._audio_sink = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "packets_received": self.packets_received,
            "packets_sent": self.packets_sent,
            "packets_dropped": self.packets_dropped,
            "sequencer_owner": self.sequencer.owner.value,
            "sequencer_dropped": self.sequencer.dropped,
        }
