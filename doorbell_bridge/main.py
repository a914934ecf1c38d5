"""
Doorbell SIP Bridge - process entry point.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from doorbell_bridge._version import __version__
from doorbell_bridge.config import Settings, get_settings, save_env_value
from doorbell_bridge.core.bridge import DoorbellBridge
from doorbell_bridge.core.logging import setup_logging
from doorbell_bridge.core.tones import TonePlayer, load_tone_player
from doorbell_bridge.core.web import create_app, run_in_thread
from doorbell_bridge.exceptions import BridgeError
from doorbell_bridge.remote.provider import RemoteCallProvider, load_provider

logger = logging.getLogger(__name__)

REFRESH_TOKEN_KEY = "REMOTE_REFRESH_TOKEN"


async def run_bridge(settings: Settings, provider: RemoteCallProvider,
                     tones: Optional[TonePlayer] = None) -> None:
    """Run the bridge until shutdown; without `tones` the calls carry no progress tones."""
    bridge = DoorbellBridge(settings, provider, tones)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, bridge.request_shutdown, sig.name)

    await bridge.start()
    if settings.server.enabled:
        run_in_thread(create_app(bridge), settings.server.host, settings.server.port)
    await bridge.run()


def _persist_refresh_token(token: str) -> None:
    logger.info("Remote provider refresh token updated")
    save_env_value(REFRESH_TOKEN_KEY, token)


def main() -> None:
    setup_logging()
    logger.info(f"🔔 Doorbell SIP Bridge v{__version__}")

    try:
        settings = get_settings()
    except ValueError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)

    if not settings.doorbell.provider:
        logger.error("❌ REMOTE_PROVIDER is not set (expected 'package.module:factory')")
        sys.exit(1)

    try:
        provider = load_provider(settings.doorbell.provider)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        logger.error(f"❌ Cannot load remote provider {settings.doorbell.provider}: {e}")
        sys.exit(1)
    provider.on_refresh_token_updated(_persist_refresh_token)

    tones = None
    if settings.doorbell.tone_player:
        try:
            tones = load_tone_player(settings.doorbell.tone_player)
        except (ImportError, AttributeError, TypeError, ValueError) as e:
            logger.error(f"❌ Cannot load tone player {settings.doorbell.tone_player}: {e}")
            sys.exit(1)

    try:
        asyncio.run(run_bridge(settings, provider, tones))
    except (BridgeError, RuntimeError) as e:
        logger.error(f"❌ Fatal error: {e}")
        sys.exit(1)

    logger.info("👋 Shutting down gracefully...")
    sys.exit(0)


if __name__ == "__main__":
    main()
