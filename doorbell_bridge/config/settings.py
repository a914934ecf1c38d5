"""
Settings and configuration management for the doorbell bridge.
Handles environment variables, validation, and default values.
"""

import os
from typing import Optional
from dataclasses import dataclass
from dotenv import load_dotenv, set_key

# Load environment variables
load_dotenv()

@dataclass
class SipSettings:
    """SIP account and registrar configuration."""
    domain: str
    username: str
    password: str
    destination: str
    port: int = 5060
    register_expires: int = 600
    user_agent: str = "DoorbellBridge/1.0"

    @property
    def destination_uri(self) -> str:
        return f"sip:{self.destination}@{self.domain}"

@dataclass
class MediaSettings:
    """Local addresses the SIP and RTP sockets bind to."""
    local_ip: str
    sip_port: int = 5060
    rtp_port: int = 10000

    @property
    def video_port(self) -> int:
        """Video always sits two ports above audio (RTP/RTCP pairs)."""
        return self.rtp_port + 2

@dataclass
class DoorbellSettings:
    """Remote call provider and doorbell selection."""
    camera_name: str
    provider: Optional[str] = None
    notify_url: Optional[str] = None
    tone_player: Optional[str] = None

@dataclass
class ServerSettings:
    """Flask web server configuration (virtual doorbell button)."""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080

@dataclass
class CallSettings:
    """Call handling timings, in seconds."""
    debounce_window: float = 0.5
    hangup_tone_timeout: float = 2.0
    reconnect_delay: float = 2.0
    cleanup_grace: float = 0.2
    first_keyframe_delay: float = 1.0
    restart_keyframe_delay: float = 0.5
    keyframe_interval: float = 4.0
    invite_timeout: float = 32.0
    request_timeout: float = 5.0

@dataclass
class Settings:
    """Main settings container."""
    sip: SipSettings
    media: MediaSettings
    doorbell: DoorbellSettings
    server: ServerSettings
    calls: CallSettings

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""

        # SIP account (required)
        sip = SipSettings(
            domain=_get_required_env("SIP_DOMAIN"),
            username=_get_required_env("SIP_USER"),
            password=_get_required_env("SIP_PASS"),
            destination=_get_required_env("SIP_DEST"),
            port=int(os.getenv("SIP_PORT", "5060")),
            register_expires=int(os.getenv("SIP_REGISTER_EXPIRES", "600")),
            user_agent=os.getenv("SIP_USER_AGENT", "DoorbellBridge/1.0")
        )

        media = MediaSettings(
            local_ip=_get_required_env("LOCAL_IP"),
            sip_port=int(os.getenv("LOCAL_SIP_PORT", "5060")),
            rtp_port=int(os.getenv("LOCAL_RTP_PORT", "10000"))
        )

        doorbell = DoorbellSettings(
            camera_name=_get_required_env("CAMERA_NAME"),
            provider=os.getenv("REMOTE_PROVIDER"),
            notify_url=os.getenv("NOTIFY_URL"),
            tone_player=os.getenv("TONE_PLAYER")
        )

        server = ServerSettings(
            enabled=os.getenv("WEB_ENABLED", "false").lower() == "true",
            host=os.getenv("WEB_HOST", "0.0.0.0"),
            port=int(os.getenv("WEB_PORT", "8080"))
        )

        return cls(
            sip=sip,
            media=media,
            doorbell=doorbell,
            server=server,
            calls=CallSettings()
        )

    def validate(self) -> None:
        """Validate all settings."""
        errors = []

        for name, port in (("SIP_PORT", self.sip.port),
                           ("LOCAL_SIP_PORT", self.media.sip_port),
                           ("LOCAL_RTP_PORT", self.media.rtp_port),
                           ("WEB_PORT", self.server.port)):
            if port < 1 or port > 65535:
                errors.append(f"{name} must be between 1 and 65535")

        if self.media.video_port > 65535:
            errors.append("LOCAL_RTP_PORT leaves no room for the video port (+2)")
        if self.media.rtp_port == self.media.sip_port:
            errors.append("LOCAL_RTP_PORT must differ from LOCAL_SIP_PORT")
        if self.sip.register_expires < 1:
            errors.append("SIP_REGISTER_EXPIRES must be positive")
        if self.doorbell.provider and ":" not in self.doorbell.provider:
            errors.append("REMOTE_PROVIDER must look like 'package.module:factory'")
        if self.doorbell.tone_player and ":" not in self.doorbell.tone_player:
            errors.append("TONE_PLAYER must look like 'package.module:factory'")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

def _get_required_env(key: str, default: Optional[str] = None) -> str:
    """Get required environment variable or raise error."""
    value = os.getenv(key, default)
    if not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value

# Global settings instance
_settings: Optional[Settings] = None

def get_settings() -> Settings:
    """Get global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        _settings.validate()
    return _settings

def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    load_dotenv(override=True)  # Reload .env file
    _settings = Settings.from_env()
    _settings.validate()
    return _settings

def save_env_value(key: str, value: str, env_file: str = ".env") -> None:
    """Persist a value into the .env file and the current environment (rotating provider tokens)."""
    set_key(env_file, key, value)
    os.environ[key] = value
