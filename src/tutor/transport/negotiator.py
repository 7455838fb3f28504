"""Offer/answer negotiation with the remote speech engine.

One canonical protocol: the local SDP offer is POSTed as a raw
``application/sdp`` body to the credential-authenticated calls endpoint and
the response body is the SDP answer.

Example usage:
    >>> negotiator = TransportNegotiator(config.openai)
    >>> connection = await negotiator.negotiate(credential, microphone_track)
    >>> await connection.wait_open(timeout=15.0)
    >>> connection.send(protocol.response_create())
"""

import logging
from collections.abc import Callable
from typing import Any

import aiohttp
from aiortc import RTCPeerConnection, RTCSessionDescription

from src.tutor.config import OpenAIConfig
from src.tutor.errors import InvalidDescriptionError, NegotiationError
from src.tutor.transport.base import AudioOutput, ConnectionState
from src.tutor.transport.connection import CONTROL_CHANNEL_LABEL, RealtimeConnection

logger = logging.getLogger(__name__)

SDP_VERSION_MARKER = "v=0"
SDP_CONTENT_TYPE = "application/sdp"


def clean_description(raw: str) -> str:
    """Strip whitespace and accidental JSON/string quoting around an SDP blob."""
    sdp = raw.strip()
    while len(sdp) >= 2 and sdp[0] == sdp[-1] and sdp[0] in ("'", '"'):
        sdp = sdp[1:-1].strip()
    if "\\r\\n" in sdp and "\r\n" not in sdp:
        sdp = sdp.replace("\\r\\n", "\r\n").strip()
    return sdp


def validate_description(sdp: str | None, side: str) -> str:
    """Return the description if it starts with the SDP version marker.

    Raises:
        InvalidDescriptionError: If the description is empty or malformed
    """
    if not sdp or not sdp.startswith(SDP_VERSION_MARKER):
        preview = (sdp or "")[:200]
        raise InvalidDescriptionError(
            f"Malformed {side} session description",
            details={"side": side, "preview": preview},
        )
    return sdp


class TransportNegotiator:
    """Establishes audio media flow plus an ordered control channel.

    Attributes:
        config: Engine configuration (base URL, realtime model)
        timeout_s: Round-trip timeout for the negotiation request
    """

    def __init__(
        self,
        config: OpenAIConfig,
        timeout_s: float = 20.0,
        peer_factory: Callable[[], Any] = RTCPeerConnection,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize negotiator.

        Args:
            config: Engine configuration
            timeout_s: Negotiation request timeout in seconds
            peer_factory: Creates the peer connection (injectable for tests)
            http_session: Optional shared client session
        """
        self.config = config
        self.timeout_s = timeout_s
        self.peer_factory = peer_factory
        self._http_session = http_session

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url}/realtime/calls"

    async def negotiate(
        self,
        credential: str,
        microphone_track: Any = None,
        audio_output: AudioOutput | None = None,
    ) -> RealtimeConnection:
        """Create the peer connection and complete the offer/answer exchange.

        Args:
            credential: Ephemeral credential from the token broker
            microphone_track: Local audio track; when None the audio
                transceiver is still declared sendrecv
            audio_output: Sink for the remote audio track

        Returns:
            Connection whose control channel opens asynchronously

        Raises:
            NegotiationError: On non-success response (status and body attached)
            InvalidDescriptionError: On malformed local or remote description
        """
        pc = self.peer_factory()

        if microphone_track is not None:
            pc.addTrack(microphone_track)
        else:
            pc.addTransceiver("audio", direction="sendrecv")

        channel = pc.createDataChannel(CONTROL_CHANNEL_LABEL, ordered=True)
        connection = RealtimeConnection(pc, channel)
        connection.state = ConnectionState.CONNECTING

        if audio_output is not None:

            def on_track(track: Any) -> None:
                if getattr(track, "kind", None) == "audio":
                    connection.spawn(audio_output.attach(track), name="remote-audio")

            pc.on("track", on_track)

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            local_sdp = validate_description(
                getattr(pc.localDescription, "sdp", None), side="local"
            )

            answer_sdp = await self._exchange(credential, local_sdp)

            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
        except BaseException:
            connection.state = ConnectionState.FAILED
            await connection.close()
            raise

        logger.info("Remote description applied", extra={"model": self.config.realtime_model})
        return connection

    async def _exchange(self, credential: str, local_sdp: str) -> str:
        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": SDP_CONTENT_TYPE,
        }
        params = {"model": self.config.realtime_model}

        session = self._http_session or aiohttp.ClientSession()
        try:
            async with session.post(
                self.endpoint,
                data=local_sdp,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                body = await resp.text()
                status = resp.status
        except TimeoutError as e:
            raise NegotiationError("Negotiation request timed out") from e
        except aiohttp.ClientError as e:
            raise NegotiationError(f"Negotiation request failed: {e}") from e
        finally:
            if self._http_session is None:
                await session.close()

        if status >= 400:
            logger.warning(
                "Negotiation rejected",
                extra={"status": status, "body": body[:500]},
            )
            raise NegotiationError(
                f"Negotiation failed ({status})",
                status=status,
                body=body,
            )

        return validate_description(clean_description(body), side="remote")
