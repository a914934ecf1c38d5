import pytest

from doorbell_bridge.config.settings import (CallSettings, DoorbellSettings, MediaSettings,
                                             ServerSettings, Settings, SipSettings)


class FakeTransport:
    """Records datagrams instead of sending them."""

    def __init__(self):
        self.sent = []
        self.closed = False

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


def build_settings() -> Settings:
    return Settings(
        sip=SipSettings(domain="pbx.example.com", username="doorbell", password="secret", destination="100"),
        media=MediaSettings(local_ip="127.0.0.1", sip_port=5062, rtp_port=10000),
        doorbell=DoorbellSettings(camera_name="Front Door"),
        server=ServerSettings(),
        calls=CallSettings(
            hangup_tone_timeout=0.1,
            reconnect_delay=0.01,
            cleanup_grace=0.0,
            first_keyframe_delay=0.01,
            restart_keyframe_delay=0.005,
            keyframe_interval=0.05,
            invite_timeout=1.0,
            request_timeout=0.2,
        ),
    )


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
