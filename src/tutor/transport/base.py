"""Base transport abstractions for the realtime audio link.

Defines the connection state vocabulary and the interfaces for the local
microphone and the remote audio output, so the session controller can be
driven by the aiortc-backed implementations or by test doubles.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class ConnectionState(Enum):
    """Peer connection state as owned by the session controller.

    State Transitions:
    - NEW → CONNECTING (offer created)
    - CONNECTING → CONNECTED (answer applied and control channel open)
    - CONNECTING → FAILED (negotiation error)
    - CONNECTED → FAILED (transport failure)
    - * → CLOSED (cleanup)
    """

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class AudioInput(ABC):
    """Exclusively-owned local microphone.

    The device is acquired for the lifetime of one session and must be
    released on every exit path.
    """

    @abstractmethod
    async def acquire(self) -> Any:
        """Open the device and return its audio track.

        Raises:
            MicrophonePermissionError: If access is denied or no device exists
        """
        pass

    @abstractmethod
    def release(self) -> None:
        """Stop all tracks and close the device. Safe to call multiple times."""
        pass

    @property
    @abstractmethod
    def active_track_count(self) -> int:
        """Number of live (not yet stopped) tracks."""
        pass


class AudioOutput(ABC):
    """Sink for the tutor's voice coming back over the peer connection."""

    @abstractmethod
    async def attach(self, track: Any) -> None:
        """Start consuming a remote audio track."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop consuming and release the output. Safe to call multiple times."""
        pass
