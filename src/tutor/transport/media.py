"""aiortc-backed local microphone and remote audio output."""

import asyncio
import logging
from typing import Any

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from src.tutor.config import MediaConfig
from src.tutor.errors import MicrophonePermissionError
from src.tutor.transport.base import AudioInput, AudioOutput

logger = logging.getLogger(__name__)


class Microphone(AudioInput):
    """Capture device opened through FFmpeg (pulse, alsa, avfoundation, dshow)."""

    def __init__(self, device: str = "default", fmt: str | None = "pulse") -> None:
        """Initialize microphone.

        Args:
            device: Device name understood by the capture format
            fmt: FFmpeg input format, or None to let FFmpeg guess
        """
        self.device = device
        self.fmt = fmt
        self._player: MediaPlayer | None = None
        self._track: Any = None

    @classmethod
    def from_config(cls, config: MediaConfig) -> "Microphone":
        return cls(device=config.microphone_device, fmt=config.microphone_format)

    async def acquire(self) -> Any:
        if self._track is not None:
            return self._track

        try:
            self._player = await asyncio.to_thread(MediaPlayer, self.device, format=self.fmt)
        except Exception as e:
            raise MicrophonePermissionError(
                f"Microphone not available: {e}",
                details={"device": self.device, "format": self.fmt},
            ) from e

        if self._player.audio is None:
            self.release()
            raise MicrophonePermissionError(
                "Capture device has no audio stream",
                details={"device": self.device, "format": self.fmt},
            )

        self._track = self._player.audio
        logger.info("Microphone acquired", extra={"device": self.device, "format": self.fmt})
        return self._track

    def release(self) -> None:
        if self._track is not None:
            try:
                self._track.stop()
            except Exception as e:
                logger.warning("Error stopping microphone track", extra={"error": str(e)})
            self._track = None
            logger.info("Microphone released", extra={"device": self.device})
        self._player = None

    @property
    def active_track_count(self) -> int:
        if self._track is None:
            return 0
        return 0 if getattr(self._track, "readyState", "live") == "ended" else 1


class RemoteAudioOutput(AudioOutput):
    """Plays (records) the remote track to a device/file, or discards it."""

    def __init__(self, target: str | None = None, fmt: str | None = None) -> None:
        """Initialize output.

        Args:
            target: File path or device name; None discards audio
            fmt: FFmpeg output format for ``target``
        """
        self.target = target
        self.fmt = fmt
        self._sink: MediaRecorder | MediaBlackhole | None = None

    @classmethod
    def from_config(cls, config: MediaConfig) -> "RemoteAudioOutput":
        return cls(target=config.audio_output, fmt=config.audio_output_format)

    async def attach(self, track: Any) -> None:
        if self._sink is not None:
            return

        if self.target:
            self._sink = MediaRecorder(self.target, format=self.fmt)
        else:
            self._sink = MediaBlackhole()

        self._sink.addTrack(track)
        await self._sink.start()
        logger.info("Remote audio attached", extra={"target": self.target or "blackhole"})

    async def stop(self) -> None:
        if self._sink is None:
            return

        sink, self._sink = self._sink, None
        await sink.stop()
