"""
Doorbell side of the bridged call.
Finds the configured doorbell, turns its notifications into button presses and keeps
one live call running, reconnecting when the provider drops it.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from doorbell_bridge.config.settings import Settings
from doorbell_bridge.events import (ButtonPressed, EventSink, RemoteAudioStarted, RemoteCallEnded,
                                    RemoteCallEstablished)
from doorbell_bridge.exceptions import RemoteLegDropped
from doorbell_bridge.sip.rtp import RtpPacket
from doorbell_bridge.sip.rtp_bridge import RtpRelay, RtpSequencer
from doorbell_bridge.sip.sdp import find_payload_type
from .provider import (CallHandle, DoorbellDevice, RemoteCallProvider, has_ringing_ding,
                       parse_button_press)

logger = logging.getLogger(__name__)


class LegState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"


class RemoteLeg:
    """Live call with the doorbell, driven through a RemoteCallProvider."""

    def __init__(self, provider: RemoteCallProvider, settings: Settings, emit: EventSink):
        self.provider = provider
        self.camera_name = settings.doorbell.camera_name
        self.calls = settings.calls
        self.emit = emit

        self.camera: Optional[DoorbellDevice] = None
        self.call: Optional[CallHandle] = None
        self.state = LegState.IDLE
        self.relay: Optional[RtpRelay] = None

        self.sequencer = RtpSequencer("doorbell audio")
        self.audio_payload_type: Optional[int] = None
        self.intentional_disconnect = False
        self.receiving_audio = False
        self.video_packets = 0

        self._key_frame_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_busy(self) -> bool:
        return self.state != LegState.IDLE

    async def initialize(self) -> None:
        """Find the doorbell named CAMERA_NAME and subscribe to its notifications."""
        cameras = await self.provider.get_cameras()
        if not cameras:
            raise RuntimeError("No cameras found in the location.")

        for camera in cameras:
            if camera.is_doorbot and camera.name == self.camera_name:
                self.camera = camera
                break
        if self.camera is None:
            raise RuntimeError(f"No doorbell named '{self.camera_name}' found")

        logger.info(f"🔔 Attaching button listener to {self.camera.name}")
        self.camera.on_active_notifications(self._on_active_notifications)
        self.camera.on_new_notification(self._on_new_notification)

    def listen(self) -> None:
        if not self.camera:
            return
        logger.info("Subscribing to doorbell presses...")
        self.camera.on_doorbell_pressed(self._on_doorbell_pressed)

    async def initiate_call(self) -> bool:
        """
        Start a live call with the doorbell.

        Returns:
            False if a call is already starting or running.

        Raises:
            RemoteLegDropped: if the provider could not start the call.
        """
        if self.state != LegState.IDLE:
            return False
        self.state = LegState.STARTING
        self.intentional_disconnect = False

        if not self.camera:
            self.state = LegState.IDLE
            raise RemoteLegDropped("Remote leg not initialized. Call initialize() first!")

        logger.info(f"📹 Starting live call on camera: {self.camera.name}")
        try:
            call = await self.camera.start_live_call()
        except Exception as e:
            self.state = LegState.IDLE
            raise RemoteLegDropped(f"Failed to start live call on {self.camera.name}: {e}") from e

        self.call = call
        self.state = LegState.ACTIVE
        self.receiving_audio = False
        self.video_packets = 0

        call.on_call_ended(lambda: self._on_call_ended(call))
        call.on_call_answered(self._on_call_answered)
        call.activate_camera_speaker()
        call.on_audio_rtp(self._on_audio_rtp)
        call.on_video_rtp(self._on_video_rtp)

        restart_delay = None
        if self.relay:
            logger.info("Call (re)started with SIP attached. Requesting key frame...")
            restart_delay = self.calls.restart_keyframe_delay
        self._key_frame_task = asyncio.get_running_loop().create_task(self._key_frames(call, restart_delay))
        return True

    def pipe_audio(self, relay: RtpRelay) -> None:
        """Send doorbell media to the SIP side through `relay`."""
        self.relay = relay
        if self.call:
            logger.info("SIP attached. Requesting key frame for video...")
            self.call.request_key_frame()

    def send_audio_packet(self, packet: RtpPacket, is_tone: bool = False) -> bool:
        """Send SIP (or tone) audio to the doorbell."""
        if not self.call:
            return False
        if not self.sequencer.process(packet, is_tone):
            return False
        if self.audio_payload_type is not None:
            packet.payload_type = self.audio_payload_type
        self.call.send_audio_packet(packet)
        return True

    def cleanup(self) -> None:
        """Stop the call on purpose; no reconnect follows."""
        self.intentional_disconnect = True
        for task in (self._reconnect_task, self._key_frame_task):
            if task:
                task.cancel()
        self._reconnect_task = None
        self._key_frame_task = None

        call, self.call = self.call, None
        self.state = LegState.IDLE
        if call:
            logger.info("Stopping the live call...")
            call.stop()

    # ------------------------------------------------------------------
    # Provider callbacks
    # ------------------------------------------------------------------

    def _on_doorbell_pressed(self) -> None:
        logger.info("🔔 Doorbell pressed")
        self.emit(ButtonPressed(self.camera_name))

    def _on_active_notifications(self, dings: List[Dict[str, Any]]) -> None:
        if has_ringing_ding(dings):
            logger.info("🔔 Active notification detected (ding)")
            self.emit(ButtonPressed(self.camera_name))

    def _on_new_notification(self, notification: Dict[str, Any]) -> None:
        ding = parse_button_press(notification)
        if ding is None:
            return
        ding_id = ding.get("id")
        ding_id = str(ding_id) if ding_id is not None else None
        logger.info(f"🔔 Valid button press detected. Ding ID: {ding_id}")
        self.emit(ButtonPressed(self.camera_name, ding_id))

    def _on_call_answered(self, sdp: Optional[str]) -> None:
        logger.info("📹 Doorbell call answered, SDP received")
        payload_type = find_payload_type(sdp, "OPUS")
        if payload_type is not None:
            logger.info(f"Detected doorbell audio payload type: {payload_type}")
            self.audio_payload_type = payload_type
        self.emit(RemoteCallEstablished(sdp))

    def _on_audio_rtp(self, packet: RtpPacket) -> None:
        if not self.receiving_audio:
            self.receiving_audio = True
            self.emit(RemoteAudioStarted())
        if self.relay:
            self.relay.send_audio_packet(packet, is_tone=False)

    def _on_video_rtp(self, packet: RtpPacket) -> None:
        self.video_packets += 1
        if self.video_packets % 100 == 0:
            logger.info(f"🎬 Video packets received: {self.video_packets}")
        if self.relay:
            self.relay.send_video_packet(packet)

    def _on_call_ended(self, call: CallHandle) -> None:
        if call is not self.call:
            return  # already stopped locally
        if self._key_frame_task:
            self._key_frame_task.cancel()
            self._key_frame_task = None
        self.call = None
        self.state = LegState.IDLE

        if self.intentional_disconnect:
            logger.info("Doorbell call ended intentionally.")
            self.emit(RemoteCallEnded("intentional"))
            return

        logger.warning(f"Doorbell call dropped unintentionally. Reconnecting in {self.calls.reconnect_delay:g}s...")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await asyncio.sleep(self.calls.reconnect_delay)
        if self.intentional_disconnect:
            return
        try:
            await self.initiate_call()
        except RemoteLegDropped as e:
            logger.error(f"❌ Reconnection failed: {e}")
            self.emit(RemoteCallEnded("reconnect failed"))

    async def _key_frames(self, call: CallHandle, restart_delay: Optional[float]) -> None:
        """Ask for key frames so the SIP side's video decoder can start and recover."""
        first = self.calls.first_keyframe_delay
        if restart_delay is not None and restart_delay < first:
            await asyncio.sleep(restart_delay)
            call.request_key_frame()
            first -= restart_delay
        await asyncio.sleep(first)
        call.request_key_frame()
        while True:
            await asyncio.sleep(self.calls.keyframe_interval)
            call.request_key_frame()
