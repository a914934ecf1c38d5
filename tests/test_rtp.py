import struct

from doorbell_bridge.sip.rtp import RtpPacket
from doorbell_bridge.sip.rtp_bridge import MediaSource, RtpRelay, RtpSequencer
from doorbell_bridge.sip.sdp import MediaEndpoint, MediaOffer

from conftest import FakeTransport


def _packet(seq, ts, ssrc=0x1111, payload=b"\x01\x02"):
    return RtpPacket(payload_type=111, sequence_number=seq, timestamp=ts, ssrc=ssrc, payload=payload)


def test_parse_fixed_header():
    data = struct.pack("!BBHII", 0x80, 0x80 | 111, 513, 96000, 0xDEADBEEF) + b"opus"
    packet = RtpPacket.parse(data)

    assert packet.version == 2
    assert packet.marker is True
    assert packet.payload_type == 111
    assert packet.sequence_number == 513
    assert packet.timestamp == 96000
    assert packet.ssrc == 0xDEADBEEF
    assert packet.payload == b"opus"
    assert packet.serialize() == data


def test_csrc_and_extension_are_carried_through():
    csrc = struct.pack("!I", 7)
    extension = struct.pack("!HH", 0xBEDE, 1) + b"\x10\xff\x00\x00"
    data = struct.pack("!BBHII", 0x80 | 0x10 | 1, 96, 1, 2, 3) + csrc + extension + b"payload"
    packet = RtpPacket.parse(data)

    assert packet.csrc_count == 1
    assert packet.extension is True
    assert packet.header_extra == csrc + extension
    assert packet.payload == b"payload"
    assert packet.serialize() == data


def test_short_or_foreign_datagrams_are_ignored():
    assert RtpPacket.parse(b"\x80\x60") is None
    assert RtpPacket.parse(struct.pack("!BBHII", 0x40, 0, 0, 0, 0)) is None


def test_non_owner_packets_are_dropped():
    sequencer = RtpSequencer("test")
    assert sequencer.owner == MediaSource.TONE

    assert sequencer.process(_packet(1, 960), is_tone=False) is False
    assert sequencer.process(_packet(1, 960), is_tone=True) is True
    assert sequencer.dropped == 1
    assert sequencer.forwarded == 1


def test_first_owner_passes_through_untouched():
    sequencer = RtpSequencer("test", owner=MediaSource.LIVE)
    packet = _packet(100, 48000, ssrc=0xABC)

    assert sequencer.process(packet)
    assert (packet.sequence_number, packet.timestamp, packet.ssrc) == (100, 48000, 0xABC)
    assert packet.marker is False


def test_handover_before_first_packet_leaves_no_stray_marker():
    sequencer = RtpSequencer("test")
    sequencer.hand_over(MediaSource.LIVE)

    first, second = _packet(100, 48000), _packet(101, 48960)
    assert sequencer.process(first)
    assert sequencer.process(second)

    assert second.marker is False
    assert (second.sequence_number, second.timestamp) == (101, 48960)


def test_handover_continues_sequence_timestamp_and_ssrc():
    sequencer = RtpSequencer("test")
    for i in range(3):
        assert sequencer.process(_packet(10 + i, 1000 + 960 * i, ssrc=0xAAAA), is_tone=True)

    sequencer.hand_over(MediaSource.LIVE)
    live = _packet(40000, 7_000_000, ssrc=0xBBBB)
    assert sequencer.process(live)

    assert live.sequence_number == 13
    assert live.timestamp == 1000 + 960 * 3
    assert live.ssrc == 0xAAAA
    assert live.marker is True

    following = _packet(40001, 7_000_960, ssrc=0xBBBB)
    assert sequencer.process(following)
    assert following.sequence_number == 14
    assert following.timestamp == 1000 + 960 * 4
    assert following.marker is False


def test_tone_packets_dropped_after_handover_to_live():
    sequencer = RtpSequencer("test")
    sequencer.process(_packet(1, 960), is_tone=True)
    sequencer.hand_over(MediaSource.LIVE)

    assert sequencer.process(_packet(2, 1920), is_tone=True) is False


def test_sequence_wraps_around():
    sequencer = RtpSequencer("test", owner=MediaSource.LIVE)
    sequencer.process(_packet(0xFFFF, 0xFFFFFC40, ssrc=1))
    sequencer.hand_over(MediaSource.TONE)
    tone = _packet(5, 5, ssrc=2)
    sequencer.process(tone, is_tone=True)

    assert tone.sequence_number == 0
    assert tone.timestamp == (0xFFFFFC40 + 960) & 0xFFFFFFFF


def test_restarted_source_with_new_ssrc_is_renumbered():
    sequencer = RtpSequencer("test", owner=MediaSource.LIVE)
    sequencer.process(_packet(500, 10_000, ssrc=1))
    restarted = _packet(1, 20, ssrc=2)
    sequencer.process(restarted)

    assert restarted.sequence_number == 501
    assert restarted.timestamp == 10_960
    assert restarted.ssrc == 1


def test_relay_sends_to_negotiated_endpoints():
    relay = RtpRelay("127.0.0.1", 10000, 10002)
    audio, video = FakeTransport(), FakeTransport()
    relay._audio_transport, relay._video_transport = audio, video

    # Nothing negotiated yet
    assert relay.send_audio_packet(_packet(1, 960), is_tone=True) is False

    relay.set_remote_media(MediaOffer(audio=MediaEndpoint("10.0.0.2", 4000, 96),
                                      video=MediaEndpoint("10.0.0.2", 4002, 99)))
    assert relay.send_audio_packet(_packet(1, 960), is_tone=False) is False  # tone owns the stream
    assert relay.send_audio_packet(_packet(1, 960), is_tone=True) is True
    assert relay.send_video_packet(_packet(7, 90000)) is True

    data, addr = audio.sent[0]
    assert addr == ("10.0.0.2", 4000)
    assert RtpPacket.parse(data).payload_type == 96
    data, addr = video.sent[0]
    assert addr == ("10.0.0.2", 4002)
    assert RtpPacket.parse(data).payload_type == 99
    assert relay.get_stats()["packets_sent"] == 2

    audio.closed = True
    assert relay.send_audio_packet(_packet(2, 1920), is_tone=True) is False

    relay.close()
    assert relay._audio_transport is None
