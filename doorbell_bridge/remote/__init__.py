"""
Doorbell call leg and the provider contract it is driven through.
"""

from .leg import LegState, RemoteLeg
from .provider import CallHandle, DoorbellDevice, RemoteCallProvider, load_provider

__all__ = [
    "RemoteLeg",
    "LegState",
    "RemoteCallProvider",
    "DoorbellDevice",
    "CallHandle",
    "load_provider"
]
