import pytest

from doorbell_bridge.exceptions import RejectedOffer
from doorbell_bridge.sip.sdp import (AUDIO_PAYLOAD_TYPE, VIDEO_PAYLOAD_TYPE, SdpParser, build_offer,
                                     find_payload_type, parse_offer)

PHONE_OFFER = "\r\n".join([
    "v=0",
    "o=- 1234 1234 IN IP4 192.168.1.50",
    "s=-",
    "c=IN IP4 192.168.1.50",
    "t=0 0",
    "m=audio 4000 RTP/AVP 0 8 111 101",
    "a=rtpmap:0 PCMU/8000",
    "a=rtpmap:8 PCMA/8000",
    "a=rtpmap:111 opus/48000/2",
    "a=rtpmap:101 telephone-event/8000",
    "m=video 4002 RTP/AVP 102",
    "a=rtpmap:102 H264/90000",
    "",
])


def test_parse_offer_picks_opus_and_h264():
    offer = parse_offer(PHONE_OFFER)

    assert offer.audio.destination == "192.168.1.50"
    assert offer.audio.port == 4000
    assert offer.audio.payload_type == 111
    assert offer.video.port == 4002
    assert offer.video.payload_type == 102


def test_parse_offer_audio_only():
    sdp = PHONE_OFFER.split("m=video")[0]
    offer = parse_offer(sdp)

    assert offer.audio.payload_type == 111
    assert offer.video is None


def test_parse_offer_without_usable_codecs_is_rejected():
    sdp = "\r\n".join([
        "v=0",
        "c=IN IP4 10.0.0.2",
        "m=audio 4000 RTP/AVP 0",
        "a=rtpmap:0 PCMU/8000",
    ])
    with pytest.raises(RejectedOffer):
        parse_offer(sdp)


@pytest.mark.parametrize("body", ["", "   ", None, "garbage that is not sdp"])
def test_parse_offer_rejects_empty_or_garbage(body):
    with pytest.raises(RejectedOffer):
        parse_offer(body)


def test_rtpmap_must_be_listed_on_media_line():
    sdp = "\r\n".join([
        "c=IN IP4 10.0.0.2",
        "m=audio 4000 RTP/AVP 0",
        "a=rtpmap:111 opus/48000/2",
    ])
    assert SdpParser(sdp).resolve("audio", "OPUS", "10.0.0.2") is None


def test_missing_connection_line_defaults_to_loopback():
    sdp = "m=audio 4000 RTP/AVP 111\na=rtpmap:111 OPUS/48000/2\n"
    assert parse_offer(sdp).audio.destination == "127.0.0.1"


def test_build_offer_layout():
    sdp = build_offer(42, "10.0.0.9", 10000, 10002)

    assert sdp.endswith("\r\n")
    lines = sdp.split("\r\n")
    assert lines[0] == "v=0"
    assert "o=- 42 42 IN IP4 10.0.0.9" in lines
    assert "c=IN IP4 10.0.0.9" in lines
    assert f"m=audio 10000 RTP/AVP {AUDIO_PAYLOAD_TYPE}" in lines
    assert f"m=video 10002 RTP/AVP {VIDEO_PAYLOAD_TYPE}" in lines
    assert lines.index("a=sendrecv") < lines.index(f"m=video 10002 RTP/AVP {VIDEO_PAYLOAD_TYPE}")
    assert "a=sendonly" in lines


def test_our_offer_is_acceptable_to_ourselves():
    offer = parse_offer(build_offer(1, "10.0.0.9", 10000, 10002))

    assert offer.audio.payload_type == AUDIO_PAYLOAD_TYPE
    assert offer.video.payload_type == VIDEO_PAYLOAD_TYPE


def test_find_payload_type():
    assert find_payload_type(PHONE_OFFER, "OPUS") == 111
    assert find_payload_type(PHONE_OFFER, "opus") == 111
    assert find_payload_type(PHONE_OFFER, "VP8") is None
    assert find_payload_type(None, "OPUS") is None
