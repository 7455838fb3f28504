"""Transport layer for the realtime speech engine link.

Provides the peer connection/control channel wrapper, the offer/answer
negotiator and the local media devices.
"""

from src.tutor.transport.base import AudioInput, AudioOutput, ConnectionState
from src.tutor.transport.connection import RealtimeConnection
from src.tutor.transport.negotiator import TransportNegotiator

__all__ = [
    "AudioInput",
    "AudioOutput",
    "ConnectionState",
    "RealtimeConnection",
    "TransportNegotiator",
]
