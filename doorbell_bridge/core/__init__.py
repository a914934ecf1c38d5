"""Core functionality for the doorbell bridge."""

from doorbell_bridge.core.bridge import CallSession, DoorbellBridge, SessionPhase
from doorbell_bridge.core.logging import setup_logging

__all__ = ["DoorbellBridge", "CallSession", "SessionPhase", "setup_logging"]
