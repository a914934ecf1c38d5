import asyncio

import pytest
import requests

from doorbell_bridge.core.tones import FRAME_SAMPLES, FrameTonePlayer, TonePlayer, load_tone_player
from doorbell_bridge.sip.rtp_bridge import RtpSequencer
from doorbell_bridge.utils import notify as notify_module
from doorbell_bridge.utils.notify import notify, send_notification


class Recorder:
    def __init__(self):
        self.packets = []

    def send_audio_packet(self, packet, is_tone=False):
        self.packets.append((packet, is_tone))
        return True


def chime_player():
    return FrameTonePlayer(ringback=[b"ring"], hangup=[b"bye"])


def not_a_player():
    return Recorder()


def test_stream_sends_tone_packets_to_both_sides():
    async def _run():
        relay, leg = Recorder(), Recorder()
        player = TonePlayer()
        player.attach(relay, leg)

        assert await player.stream([b"a", b"b", b"c"]) == 3

        assert [p.payload for p, _ in relay.packets] == [b"a", b"b", b"c"]
        assert all(is_tone for _, is_tone in relay.packets + leg.packets)
        assert relay.packets[0][0].marker and not relay.packets[1][0].marker

        # Every destination sees its own gapless stream
        for recorder in (relay, leg):
            packets = [p for p, _ in recorder.packets]
            assert [(b.sequence_number - a.sequence_number) & 0xFFFF for a, b in zip(packets, packets[1:])] == [1, 1]
            assert [(b.timestamp - a.timestamp) & 0xFFFFFFFF for a, b in zip(packets, packets[1:])] == [
                FRAME_SAMPLES, FRAME_SAMPLES]
        assert relay.packets[0][0] is not leg.packets[0][0]

    asyncio.run(_run())


def test_ringback_loops_on_doorbell_until_sip_answers():
    async def _run():
        relay, leg = Recorder(), Recorder()
        player = FrameTonePlayer(ringback=[b"r1", b"r2"], hangup=[b"h"])
        player.attach(relay, leg)

        player.sip_ringing()
        await asyncio.sleep(0.15)
        player.sip_ready()
        count = len(leg.packets)
        await asyncio.sleep(0.05)

        assert count > 2  # looped at least once
        assert len(leg.packets) == count
        assert relay.packets == []

        await player.play_hangup()
        assert [p.payload for p, _ in relay.packets] == [b"h"]
        assert leg.packets[-1][0].payload == b"h"

    asyncio.run(_run())


def test_silent_player_without_frames():
    async def _run():
        relay, leg = Recorder(), Recorder()
        player = FrameTonePlayer()
        player.attach(relay, leg)
        player.sip_ringing()
        await player.play_hangup()
        player.cleanup()
        assert relay.packets == [] and leg.packets == []

    asyncio.run(_run())


class FakeResponse:
    def __init__(self, text, status=200):
        self.text = text
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} Server Error")


def test_send_notification(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return FakeResponse("ok")

    monkeypatch.setattr(notify_module.requests, "get", fake_get)

    assert send_notification("http://hub.local/ring", timeout=1.5) == "ok"
    assert calls == [("http://hub.local/ring", 1.5)]


def test_send_notification_skips_invalid_url(monkeypatch):
    monkeypatch.setattr(notify_module.requests, "get", lambda *a, **k: FakeResponse("unexpected"))
    assert send_notification(None) is None
    assert send_notification("ftp://hub.local/ring") is None


def test_notification_errors_are_logged_not_raised(monkeypatch):
    monkeypatch.setattr(notify_module.requests, "get", lambda url, timeout: FakeResponse("boom", status=500))
    assert send_notification("http://hub.local/ring") is None

    def refuse(url, timeout):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(notify_module.requests, "get", refuse)
    assert asyncio.run(notify("http://hub.local/ring")) is None


def test_streamed_tone_stays_continuous_through_a_sequencer():
    async def _run():
        sequencer = RtpSequencer("sip audio")
        forwarded = []

        class SequencedRecorder:
            def send_audio_packet(self, packet, is_tone=False):
                if sequencer.process(packet, is_tone):
                    forwarded.append(packet)
                return True

        player = TonePlayer()
        player.attach(SequencedRecorder(), Recorder())
        await player.stream([b"a", b"b", b"c"])

        assert [(b.sequence_number - a.sequence_number) & 0xFFFF for a, b in zip(forwarded, forwarded[1:])] == [1, 1]
        assert [(b.timestamp - a.timestamp) & 0xFFFFFFFF for a, b in zip(forwarded, forwarded[1:])] == [
            FRAME_SAMPLES, FRAME_SAMPLES]

    asyncio.run(_run())


def test_load_tone_player():
    player = load_tone_player(f"{__name__}:chime_player")
    assert isinstance(player, FrameTonePlayer)
    assert player.ringback == [b"ring"]

    with pytest.raises(ValueError):
        load_tone_player("chime_player")
    with pytest.raises(TypeError):
        load_tone_player(f"{__name__}:not_a_player")
