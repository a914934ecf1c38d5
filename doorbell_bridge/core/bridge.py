"""
Doorbell bridge - the call orchestrator.

Correlates the SIP leg and the doorbell leg into one logical call. Both legs report
through typed events on a single queue, which `DoorbellBridge.run()` consumes one
event at a time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from doorbell_bridge.config.settings import Settings
from doorbell_bridge.events import (BridgeEvent, ButtonPressed, InboundCall, RemoteAudioStarted,
                                    RemoteCallEnded, RemoteCallEstablished, ShutdownRequested,
                                    SipCallEnded, SipCallEstablished, SipCallFailed, SipRinging)
from doorbell_bridge.exceptions import BridgeError
from doorbell_bridge.remote.leg import RemoteLeg
from doorbell_bridge.remote.provider import RemoteCallProvider
from doorbell_bridge.sip.client import SipClient
from doorbell_bridge.sip.rtp_bridge import MediaSource, RtpRelay
from doorbell_bridge.utils.notify import notify
from .tones import TonePlayer

logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    HANGING_UP = "hanging_up"
    CLOSED = "closed"


@dataclass
class CallSession:
    """State of the one logical call."""
    phase: SessionPhase = SessionPhase.IDLE
    last_trigger_time: Optional[float] = None
    last_trigger_id: Optional[str] = None
    sip_established: bool = False
    remote_established: bool = False
    media_wired: bool = False


class DoorbellBridge:
    """Wires a SIP call to the doorbell's live call."""

    def __init__(self, settings: Settings, provider: RemoteCallProvider,
                 tones: Optional[TonePlayer] = None, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.clock = clock
        self.queue: asyncio.Queue = asyncio.Queue()
        self.session = CallSession()

        self.sip = SipClient(settings, self.emit)
        self.relay = RtpRelay(settings.media.local_ip, settings.media.rtp_port, settings.media.video_port)
        self.leg = RemoteLeg(provider, settings, self.emit)
        self.tones = tones or TonePlayer()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._handlers = {
            ButtonPressed: self._on_button_pressed,
            InboundCall: self._on_inbound_call,
            SipRinging: self._on_sip_ringing,
            SipCallEstablished: self._on_sip_call_established,
            SipCallEnded: self._on_call_ended,
            SipCallFailed: self._on_call_ended,
            RemoteCallEstablished: self._on_remote_call_established,
            RemoteAudioStarted: self._on_remote_audio_started,
            RemoteCallEnded: self._on_call_ended,
            ShutdownRequested: self._on_call_ended,
        }

    @property
    def is_busy(self) -> bool:
        """True if either leg (or this session) has a call starting, up or ending."""
        return self.session.phase != SessionPhase.IDLE or self.sip.is_busy or self.leg.is_busy

    async def start(self) -> None:
        """Bind sockets, find the doorbell, register and start listening for presses."""
        self._loop = asyncio.get_running_loop()
        await self.sip.start()
        await self.relay.start()
        await self.leg.initialize()
        self.tones.attach(self.relay, self.leg)

        self.sip.register()
        self.leg.listen()
        logger.info("🚀 Doorbell bridge initialized.")

    async def run(self) -> None:
        """Consume events until full cleanup has run."""
        self._loop = asyncio.get_running_loop()
        while True:
            event = await self.queue.get()
            if event is None:
                break
            handler = self._handlers.get(type(event))
            if handler is None:
                logger.warning(f"No handler for {type(event).__name__}")
                continue
            try:
                await handler(event)
            except BridgeError as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")
                await self.full_cleanup()
        logger.info("Doorbell bridge stopped")

    def emit(self, event: BridgeEvent) -> None:
        """Queue an event; must be called on the event loop thread."""
        self.queue.put_nowait(event)

    def emit_threadsafe(self, event: BridgeEvent) -> None:
        """Queue an event from another thread (the web server)."""
        if self._loop is None:
            raise RuntimeError("Bridge is not running")
        self._loop.call_soon_threadsafe(self.queue.put_nowait, event)

    def request_shutdown(self, signal_name: Optional[str] = None) -> None:
        logger.info(f"Caught {signal_name or 'shutdown request'}. Cleaning up and exiting...")
        self.emit(ShutdownRequested(signal_name))

    async def full_cleanup(self) -> None:
        """Tear down both legs and stop the dispatch loop. Runs once."""
        if self.session.phase == SessionPhase.CLOSED:
            return
        self.session.phase = SessionPhase.CLOSED
        logger.info("🧹 Cleaning up everything...")

        try:
            await self.sip.terminate()
        except BridgeError as e:
            logger.error(f"SIP teardown failed: {e}")
        try:
            self.leg.cleanup()
        except Exception as e:
            logger.error(f"Doorbell call teardown failed: {e}")
        self.tones.cleanup()

        # Give in-flight BYE/CANCEL and unregister a moment on the wire
        await asyncio.sleep(self.settings.calls.cleanup_grace)
        self.sip.close()
        self.relay.close()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self.queue.put_nowait(None)

    def status(self) -> Dict[str, Any]:
        return {
            "phase": self.session.phase.value,
            "sip_state": self.sip.state.value,
            "registration": self.sip.registration_state.value,
            "doorbell_state": self.leg.state.value,
            "media_wired": self.session.media_wired,
            "rtp": self.relay.get_stats(),
        }

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_button_pressed(self, event: ButtonPressed) -> None:
        session = self.session
        now = self.clock()

        if event.ding_id and event.ding_id == session.last_trigger_id:
            logger.info(f"Button press ignored (duplicate ding ID: {event.ding_id})")
            return
        if (session.last_trigger_time is not None
                and now - session.last_trigger_time < self.settings.calls.debounce_window):
            logger.info("Button press ignored (debounce time)")
            return

        session.last_trigger_time = now
        if event.ding_id:
            session.last_trigger_id = event.ding_id
        logger.info(f"🔔 Button pressed for {event.camera_name} (ID: {event.ding_id}, source: {event.source})")

        if self.is_busy:
            await self._hang_up()
            return

        self._reset_session(SessionPhase.CONNECTING)
        self._spawn(notify(self.settings.doorbell.notify_url))
        self._spawn(self._connect())

    async def _on_inbound_call(self, event: InboundCall) -> None:
        logger.info(f"📞 Inbound SIP call {event.call_id}. Initiating doorbell call.")
        self._reset_session(SessionPhase.CONNECTING)
        self._spawn(self._start_doorbell_call())

    async def _on_sip_ringing(self, event: SipRinging) -> None:
        logger.info("SIP phone ringing")
        self.tones.sip_ringing()

    async def _on_sip_call_established(self, event: SipCallEstablished) -> None:
        logger.info(f"SIP call established ({event.call_id})")
        self.session.sip_established = True
        self.relay.set_remote_media(event.remote_media)
        # SIP audio is live from here on, the doorbell stops hearing tones
        self.leg.sequencer.hand_over(MediaSource.LIVE)
        self.tones.sip_ready()
        self._wire_media()

    async def _on_remote_call_established(self, event: RemoteCallEstablished) -> None:
        logger.info("Doorbell call established")
        self.session.remote_established = True
        self._wire_media()

    async def _on_remote_audio_started(self, event: RemoteAudioStarted) -> None:
        logger.info("🎵 Receiving audio from the doorbell")
        self.relay.sequencer.hand_over(MediaSource.LIVE)
        self.tones.remote_ready()

    async def _on_call_ended(self, event: BridgeEvent) -> None:
        logger.info(f"{type(event).__name__}: {event}. Cleaning up everything.")
        await self.full_cleanup()

    # ------------------------------------------------------------------
    # Call flow
    # ------------------------------------------------------------------

    async def _hang_up(self) -> None:
        self.session.phase = SessionPhase.HANGING_UP
        logger.info("📴 Call active. Playing hangup tone...")
        self.relay.sequencer.hand_over(MediaSource.TONE)
        self.leg.sequencer.hand_over(MediaSource.TONE)
        try:
            await asyncio.wait_for(self.tones.play_hangup(), timeout=self.settings.calls.hangup_tone_timeout)
        except asyncio.TimeoutError:
            logger.info("Hangup tone cut short")
        logger.info("Hangup tone done (or timeout). Cleaning up...")
        await self.full_cleanup()

    async def _connect(self) -> None:
        try:
            await asyncio.gather(self.sip.initiate_call(), self.leg.initiate_call())
            logger.info("Both calls initiated in parallel.")
        except BridgeError as e:
            logger.error(f"Error initiating calls: {e}")
            await self.full_cleanup()

    async def _start_doorbell_call(self) -> None:
        try:
            await self.leg.initiate_call()
        except BridgeError as e:
            logger.error(f"Error initiating doorbell call: {e}")
            await self.full_cleanup()

    def _wire_media(self) -> None:
        session = self.session
        if session.media_wired or not (session.sip_established and session.remote_established):
            return
        self.relay.pipe_audio(self.leg.send_audio_packet)
        self.leg.pipe_audio(self.relay)
        session.media_wired = True
        session.phase = SessionPhase.CONNECTED
        logger.info("🔗 Media wired between SIP and doorbell")

    def _reset_session(self, phase: SessionPhase) -> None:
        session = self.session
        session.phase = phase
        session.sip_established = False
        session.remote_established = False
        session.media_wired = False

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
