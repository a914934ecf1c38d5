"""
Remote call provider contract.

The vendor's live-call service (authentication, device discovery, the doorbell's own
media transport) lives outside this package. A concrete provider implements these
interfaces and is loaded from `REMOTE_PROVIDER` as `package.module:factory`.

Callbacks registered here must be invoked on the event loop thread.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from doorbell_bridge.sip.rtp import RtpPacket
from doorbell_bridge.utils.loader import load_from_factory

PacketCallback = Callable[[RtpPacket], None]


class CallHandle(ABC):
    """One live call with a doorbell."""

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def send_audio_packet(self, packet: RtpPacket) -> None:
        ...

    @abstractmethod
    def request_key_frame(self) -> None:
        ...

    @abstractmethod
    def activate_camera_speaker(self) -> None:
        ...

    @abstractmethod
    def on_call_ended(self, callback: Callable[[], None]) -> None:
        ...

    @abstractmethod
    def on_call_answered(self, callback: Callable[[Optional[str]], None]) -> None:
        """`callback` receives the doorbell's answer SDP."""

    @abstractmethod
    def on_audio_rtp(self, callback: PacketCallback) -> None:
        ...

    @abstractmethod
    def on_video_rtp(self, callback: PacketCallback) -> None:
        ...


class DoorbellDevice(ABC):
    """A camera known to the provider."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def is_doorbot(self) -> bool:
        """True for devices with a doorbell button."""

    @abstractmethod
    async def start_live_call(self) -> CallHandle:
        ...

    @abstractmethod
    def on_doorbell_pressed(self, callback: Callable[[], None]) -> None:
        ...

    @abstractmethod
    def on_active_notifications(self, callback: Callable[[List[Dict[str, Any]]], None]) -> None:
        ...

    @abstractmethod
    def on_new_notification(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        ...


class RemoteCallProvider(ABC):
    """Entry point into the vendor's call service."""

    @abstractmethod
    async def get_cameras(self) -> List[DoorbellDevice]:
        ...

    def on_refresh_token_updated(self, callback: Callable[[str], None]) -> None:
        """Providers with rotating credentials report every new refresh token here."""


def has_ringing_ding(dings: List[Dict[str, Any]]) -> bool:
    """True if an active-notification list contains a ding that is still ringing."""
    return any(d.get("kind") == "ding" and d.get("state") == "ringing" for d in dings or [])


def parse_button_press(notification: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the ding from a push notification if it is a button press.

    Only the `data.event.ding` layout with subtype `button_press` counts; motion and
    other subtypes return None.
    """
    ding = ((notification or {}).get("data") or {}).get("event") or {}
    ding = ding.get("ding") if isinstance(ding, dict) else None
    if isinstance(ding, dict) and ding.get("subtype") == "button_press":
        return ding
    return None


def load_provider(path: str) -> RemoteCallProvider:
    """
    Import `package.module:factory` and call the factory.

    Raises:
        ValueError: if `path` is not in module:factory form.
        TypeError: if the factory does not return a RemoteCallProvider.
    """
    return load_from_factory(path, RemoteCallProvider)
