"""
Call progress tones injected into the bridged audio streams.

Tones travel through the same send paths as live audio with `is_tone=True`, so the
stream sequencers decide whether they reach the far end.
"""

import asyncio
import logging
import random
from dataclasses import replace
from typing import List, Optional, Sequence

from doorbell_bridge.sip.rtp import RtpPacket
from doorbell_bridge.utils.loader import load_from_factory

logger = logging.getLogger(__name__)

FRAME_INTERVAL = 0.02
FRAME_SAMPLES = 960  # 20 ms at 48 kHz


class TonePlayer:
    """
    Base tone player. Every hook is silent; subclasses decide what to play.
    """

    def __init__(self):
        self.relay = None
        self.leg = None
        self._sequence = random.randint(0, 0xFFFF)
        self._timestamp = random.randint(0, 0xFFFFFFFF)
        self._ssrc = random.randint(1, 0xFFFFFFFF)

    def attach(self, relay, leg) -> None:
        """`relay` carries tones to the SIP peer, `leg` to the doorbell speaker."""
        self.relay = relay
        self.leg = leg

    def sip_ringing(self) -> None:
        pass

    def sip_ready(self) -> None:
        pass

    def remote_ready(self) -> None:
        pass

    async def play_hangup(self) -> None:
        pass

    def cleanup(self) -> None:
        pass

    def next_packet(self, payload: bytes, marker: bool = False) -> RtpPacket:
        packet = RtpPacket(
            payload_type=0,
            sequence_number=self._sequence,
            timestamp=self._timestamp,
            ssrc=self._ssrc,
            payload=payload,
            marker=marker,
        )
        self._sequence = (self._sequence + 1) & 0xFFFF
        self._timestamp = (self._timestamp + FRAME_SAMPLES) & 0xFFFFFFFF
        return packet

    async def stream(self, frames: Sequence[bytes], to_sip: bool = True, to_doorbell: bool = True) -> int:
        """Send pre-encoded OPUS frames in real time; returns how many frames were sent."""
        sent = 0
        for index, frame in enumerate(frames):
            packet = self.next_packet(frame, marker=index == 0)
            # Each destination gets its own copy; the sequencers rewrite packets in place
            if to_sip and self.relay:
                self.relay.send_audio_packet(replace(packet), is_tone=True)
            if to_doorbell and self.leg:
                self.leg.send_audio_packet(replace(packet), is_tone=True)
            sent += 1
            await asyncio.sleep(FRAME_INTERVAL)
        return sent


class FrameTonePlayer(TonePlayer):
    """
    Plays pre-encoded OPUS frames: a looping ringback on the doorbell speaker while the
    SIP phone rings, and a one-shot hangup tone to both sides.
    """

    def __init__(self, ringback: Optional[List[bytes]] = None, hangup: Optional[List[bytes]] = None):
        super().__init__()
        self.ringback = ringback or []
        self.hangup = hangup or []
        self._ringback_task: Optional[asyncio.Task] = None

    def sip_ringing(self) -> None:
        if not self.ringback or (self._ringback_task and not self._ringback_task.done()):
            return
        logger.info("🔔 Playing ringback on the doorbell speaker")
        self._ringback_task = asyncio.get_running_loop().create_task(self._loop_ringback())

    def sip_ready(self) -> None:
        self._stop_ringback()

    def remote_ready(self) -> None:
        self._stop_ringback()

    async def play_hangup(self) -> None:
        self._stop_ringback()
        if self.hangup:
            logger.info("Playing hangup tone")
            await self.stream(self.hangup)

    def cleanup(self) -> None:
        self._stop_ringback()

    async def _loop_ringback(self) -> None:
        while True:
            await self.stream(self.ringback, to_sip=False)

    def _stop_ringback(self) -> None:
        if self._ringback_task:
            self._ringback_task.cancel()
            self._ringback_task = None


def load_tone_player(path: str) -> TonePlayer:
    """Build the player named by TONE_PLAYER (`package.module:factory`), e.g. a FrameTonePlayer with real frames."""
    return load_from_factory(path, TonePlayer)
