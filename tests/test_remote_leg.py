import asyncio

import pytest

from doorbell_bridge.events import ButtonPressed, RemoteAudioStarted, RemoteCallEnded, RemoteCallEstablished
from doorbell_bridge.exceptions import RemoteLegDropped
from doorbell_bridge.remote.leg import LegState, RemoteLeg
from doorbell_bridge.remote.provider import (CallHandle, DoorbellDevice, RemoteCallProvider, has_ringing_ding,
                                             load_provider, parse_button_press)
from doorbell_bridge.sip.rtp import RtpPacket
from doorbell_bridge.sip.rtp_bridge import MediaSource

ANSWER_SDP = "v=0\r\nm=audio 5000 RTP/SAVPF 110\r\na=rtpmap:110 opus/48000/2\r\n"


class FakeCall(CallHandle):
    def __init__(self):
        self.stopped = False
        self.sent = []
        self.key_frames = 0
        self.speaker_on = False
        self.callbacks = {}

    def stop(self):
        self.stopped = True

    def send_audio_packet(self, packet):
        self.sent.append(packet)

    def request_key_frame(self):
        self.key_frames += 1

    def activate_camera_speaker(self):
        self.speaker_on = True

    def on_call_ended(self, callback):
        self.callbacks["ended"] = callback

    def on_call_answered(self, callback):
        self.callbacks["answered"] = callback

    def on_audio_rtp(self, callback):
        self.callbacks["audio"] = callback

    def on_video_rtp(self, callback):
        self.callbacks["video"] = callback


class FakeCamera(DoorbellDevice):
    def __init__(self, name="Front Door", is_doorbot=True, fail_after=None):
        self._name = name
        self._is_doorbot = is_doorbot
        self.calls = []
        self.callbacks = {}
        self.fail_after = fail_after

    @property
    def name(self):
        return self._name

    @property
    def is_doorbot(self):
        return self._is_doorbot

    async def start_live_call(self):
        if self.fail_after is not None and len(self.calls) >= self.fail_after:
            raise ConnectionError("session limit reached")
        call = FakeCall()
        self.calls.append(call)
        return call

    def on_doorbell_pressed(self, callback):
        self.callbacks["pressed"] = callback

    def on_active_notifications(self, callback):
        self.callbacks["active"] = callback

    def on_new_notification(self, callback):
        self.callbacks["new"] = callback


class FakeProvider(RemoteCallProvider):
    def __init__(self, cameras):
        self.cameras = cameras

    async def get_cameras(self):
        return self.cameras


class FakeRelay:
    def __init__(self):
        self.audio = []
        self.video = []

    def send_audio_packet(self, packet, is_tone=False):
        self.audio.append((packet, is_tone))

    def send_video_packet(self, packet):
        self.video.append(packet)


def fake_provider_factory():
    return FakeProvider([FakeCamera()])


def not_a_provider():
    return object()


def _packet(seq=1, ssrc=0x42):
    return RtpPacket(payload_type=96, sequence_number=seq, timestamp=seq * 960, ssrc=ssrc, payload=b"x")


async def _settle(condition, attempts=200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never became true")


def _leg(settings, cameras):
    events = []
    return RemoteLeg(FakeProvider(cameras), settings, events.append), events


def test_initialize_picks_named_doorbot(settings):
    async def _run():
        chime = FakeCamera(name="Front Door", is_doorbot=False)
        doorbell = FakeCamera(name="Front Door")
        leg, _ = _leg(settings, [FakeCamera(name="Garage"), chime, doorbell])
        await leg.initialize()

        assert leg.camera is doorbell
        assert set(doorbell.callbacks) == {"active", "new"}

    asyncio.run(_run())


@pytest.mark.parametrize("cameras", [[], [FakeCamera(name="Garage")]])
def test_initialize_without_matching_camera_fails(settings, cameras):
    leg, _ = _leg(settings, cameras)
    with pytest.raises(RuntimeError):
        asyncio.run(leg.initialize())


def test_notifications_become_button_presses(settings):
    async def _run():
        camera = FakeCamera()
        leg, events = _leg(settings, [camera])
        await leg.initialize()
        leg.listen()

        camera.callbacks["pressed"]()
        camera.callbacks["active"]([{"kind": "motion", "state": "ringing"}])
        camera.callbacks["active"]([{"kind": "ding", "state": "ringing"}])
        camera.callbacks["new"]({"data": {"event": {"ding": {"id": 7731, "subtype": "motion"}}}})
        camera.callbacks["new"]({"data": {"event": {"ding": {"id": 7732, "subtype": "button_press"}}}})

        assert events == [
            ButtonPressed("Front Door"),
            ButtonPressed("Front Door"),
            ButtonPressed("Front Door", "7732"),
        ]

    asyncio.run(_run())


def test_ding_helpers():
    assert has_ringing_ding([{"kind": "ding", "state": "ringing"}])
    assert not has_ringing_ding([{"kind": "ding", "state": "answered"}])
    assert not has_ringing_ding([])
    assert parse_button_press({"data": {"event": {"ding": {"subtype": "button_press", "id": 1}}}}) == {
        "subtype": "button_press", "id": 1}
    assert parse_button_press({"data": {"event": "legacy"}}) is None
    assert parse_button_press({}) is None


def test_initiate_call_starts_live_call(settings):
    async def _run():
        camera = FakeCamera()
        leg, events = _leg(settings, [camera])
        await leg.initialize()

        assert await leg.initiate_call() is True
        assert await leg.initiate_call() is False
        assert len(camera.calls) == 1

        call = camera.calls[0]
        assert leg.state == LegState.ACTIVE
        assert call.speaker_on
        assert set(call.callbacks) == {"ended", "answered", "audio", "video"}

        call.callbacks["answered"](ANSWER_SDP)
        assert leg.audio_payload_type == 110
        assert events == [RemoteCallEstablished(ANSWER_SDP)]

        await _settle(lambda: call.key_frames >= 2)
        leg.cleanup()

    asyncio.run(_run())


def test_media_flows_to_relay_once_piped(settings):
    async def _run():
        camera = FakeCamera()
        leg, events = _leg(settings, [camera])
        await leg.initialize()
        await leg.initiate_call()
        call = camera.calls[0]

        call.callbacks["audio"](_packet(1))
        relay = FakeRelay()
        leg.pipe_audio(relay)
        assert call.key_frames == 1

        call.callbacks["audio"](_packet(2))
        for seq in range(100):
            call.callbacks["video"](_packet(seq))

        assert events == [RemoteAudioStarted()]
        assert len(relay.audio) == 1
        assert relay.audio[0][1] is False
        assert len(relay.video) == 100
        assert leg.video_packets == 100
        leg.cleanup()

    asyncio.run(_run())


def test_send_audio_is_arbitrated_and_restamped(settings):
    async def _run():
        camera = FakeCamera()
        leg, _ = _leg(settings, [camera])
        await leg.initialize()

        assert leg.send_audio_packet(_packet(1)) is False  # no call yet

        await leg.initiate_call()
        call = camera.calls[0]
        call.callbacks["answered"](ANSWER_SDP)

        assert leg.send_audio_packet(_packet(1), is_tone=False) is False  # tone owns the stream
        assert leg.send_audio_packet(_packet(1), is_tone=True) is True

        leg.sequencer.hand_over(MediaSource.LIVE)
        assert leg.send_audio_packet(_packet(50, ssrc=0x99)) is True
        assert [p.payload_type for p in call.sent] == [110, 110]
        assert call.sent[1].sequence_number == call.sent[0].sequence_number + 1
        leg.cleanup()

    asyncio.run(_run())


def test_intentional_cleanup_never_reconnects(settings):
    async def _run():
        camera = FakeCamera()
        leg, events = _leg(settings, [camera])
        await leg.initialize()
        await leg.initiate_call()
        call = camera.calls[0]

        leg.cleanup()
        call.callbacks["ended"]()
        await asyncio.sleep(settings.calls.reconnect_delay * 5)

        assert call.stopped
        assert len(camera.calls) == 1
        assert leg.state == LegState.IDLE
        assert events == []

    asyncio.run(_run())


def test_unintentional_drop_reconnects(settings):
    async def _run():
        camera = FakeCamera()
        leg, events = _leg(settings, [camera])
        await leg.initialize()
        await leg.initiate_call()

        camera.calls[0].callbacks["ended"]()
        assert leg.state == LegState.IDLE

        await _settle(lambda: len(camera.calls) == 2)
        assert leg.state == LegState.ACTIVE
        assert leg.call is camera.calls[1]
        assert not any(isinstance(e, RemoteCallEnded) for e in events)
        leg.cleanup()

    asyncio.run(_run())


def test_failed_reconnect_ends_the_call(settings):
    async def _run():
        camera = FakeCamera(fail_after=1)
        leg, events = _leg(settings, [camera])
        await leg.initialize()
        await leg.initiate_call()

        camera.calls[0].callbacks["ended"]()

        await _settle(lambda: any(isinstance(e, RemoteCallEnded) for e in events))
        assert leg.state == LegState.IDLE
        assert events[-1] == RemoteCallEnded("reconnect failed")

    asyncio.run(_run())


def test_initial_start_failure_is_surfaced(settings):
    async def _run():
        leg, _ = _leg(settings, [FakeCamera(fail_after=0)])
        await leg.initialize()
        with pytest.raises(RemoteLegDropped):
            await leg.initiate_call()
        assert leg.state == LegState.IDLE

    asyncio.run(_run())


def test_load_provider():
    provider = load_provider(f"{__name__}:fake_provider_factory")
    assert isinstance(provider, FakeProvider)

    with pytest.raises(ValueError):
        load_provider("no_factory_here")
    with pytest.raises(TypeError):
        load_provider(f"{__name__}:not_a_provider")
