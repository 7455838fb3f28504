"""Realtime connection: peer connection plus ordered control channel.

Wraps an aiortc ``RTCPeerConnection`` and its ``oai-events`` data channel.
Messages sent before the channel opens are queued and flushed the instant it
opens, so configuration can be prepared while negotiation is in flight.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from src.tutor import protocol
from src.tutor.errors import NegotiationError
from src.tutor.transport.base import ConnectionState

logger = logging.getLogger(__name__)

CONTROL_CHANNEL_LABEL = "oai-events"


class RealtimeConnection:
    """Peer connection and control channel for one session.

    Attributes:
        state: Current connection state
        on_message: Callback for raw inbound control-channel frames
        on_lost: Callback invoked once if the link drops while not closing.
            A loss reported before the callback is set is delivered on
            assignment.
    """

    def __init__(self, pc: Any, channel: Any) -> None:
        """Initialize connection.

        Args:
            pc: Peer connection (aiortc ``RTCPeerConnection`` or compatible)
            channel: Data channel created on ``pc``
        """
        self.pc = pc
        self.channel = channel
        self.state = ConnectionState.NEW

        self.on_message: Callable[[str], None] | None = None
        self._on_lost: Callable[[str], None] | None = None

        self._outbox: list[str] = []
        self._open_event = asyncio.Event()
        self._lost_event = asyncio.Event()
        self._closing = False
        self._lost_reason: str | None = None
        self._lost_delivered = False
        self._tasks: set[asyncio.Task[Any]] = set()

        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        channel.on("close", self._handle_channel_close)
        pc.on("connectionstatechange", self._handle_state_change)

    @property
    def on_lost(self) -> Callable[[str], None] | None:
        return self._on_lost

    @on_lost.setter
    def on_lost(self, callback: Callable[[str], None] | None) -> None:
        self._on_lost = callback
        self._deliver_lost()

    @property
    def is_open(self) -> bool:
        return self._open_event.is_set() and not self._closing

    @property
    def lost_reason(self) -> str | None:
        """Why the link dropped, or None while it is up."""
        return self._lost_reason

    @property
    def pending_messages(self) -> int:
        """Messages queued while the channel is not yet open."""
        return len(self._outbox)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def send(self, message: dict[str, Any]) -> None:
        """Send a control message, queueing it until the channel opens.

        Raises:
            ConnectionError: If the connection is closing or closed
        """
        if self._closing:
            raise ConnectionError("Control channel is closed")

        data = protocol.encode(message)
        if self._open_event.is_set():
            self.channel.send(data)
        else:
            self._outbox.append(data)

        logger.debug(
            "Control message sent",
            extra={"type": message.get("type"), "queued": not self._open_event.is_set()},
        )

    async def wait_open(self, timeout: float) -> None:
        """Wait until the control channel is open.

        Raises:
            NegotiationError: If the link drops before the channel opens
            TimeoutError: If the channel does not open in time
        """
        opened = asyncio.ensure_future(self._open_event.wait())
        lost = asyncio.ensure_future(self._lost_event.wait())
        try:
            await asyncio.wait(
                {opened, lost}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            opened.cancel()
            lost.cancel()

        if self._open_event.is_set():
            return
        if self._lost_reason is not None:
            raise NegotiationError(
                f"Connection lost before control channel opened: {self._lost_reason}",
                details={"reason": self._lost_reason},
            )
        raise TimeoutError("Control channel did not open in time")

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Run a coroutine for the lifetime of this connection.

        Failures are logged. Tasks still pending are cancelled by ``close()``.
        """
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def on_done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.warning(
                    "Connection task failed", extra={"task": name, "error": str(error)}
                )

        task.add_done_callback(on_done)
        return task

    async def close(self) -> None:
        """Close channel and peer connection. Idempotent, best-effort per step."""
        if self._closing and self.state == ConnectionState.CLOSED:
            return
        self._closing = True
        self._outbox.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            self.channel.close()
        except Exception as e:
            logger.warning("Error closing control channel", extra={"error": str(e)})

        try:
            await self.pc.close()
        except Exception as e:
            logger.warning("Error closing peer connection", extra={"error": str(e)})

        self.state = ConnectionState.CLOSED
        logger.info("Realtime connection closed")

    def _handle_open(self) -> None:
        if self._closing:
            return

        self._open_event.set()
        self.state = ConnectionState.CONNECTED
        outbox, self._outbox = self._outbox, []
        for data in outbox:
            self.channel.send(data)
        logger.info("Control channel open", extra={"flushed": len(outbox)})

    def _handle_message(self, data: Any) -> None:
        if self.on_message is None:
            return
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self.on_message(data)

    def _handle_channel_close(self) -> None:
        self._report_lost("control channel closed")

    def _handle_state_change(self) -> None:
        pc_state = getattr(self.pc, "connectionState", None)
        logger.debug("Peer connection state", extra={"state": pc_state})
        if pc_state == "connecting" and self.state == ConnectionState.NEW:
            self.state = ConnectionState.CONNECTING
        elif pc_state in ("failed", "closed"):
            if not self._closing:
                self.state = ConnectionState.FAILED
            self._report_lost(f"peer connection {pc_state}")

    def _report_lost(self, reason: str) -> None:
        if self._closing or self._lost_reason is not None:
            return
        self._lost_reason = reason
        self._lost_event.set()
        logger.warning("Realtime connection lost", extra={"reason": reason})
        self._deliver_lost()

    def _deliver_lost(self) -> None:
        if self._lost_reason is None or self._lost_delivered or self._on_lost is None:
            return
        self._lost_delivered = True
        self._on_lost(self._lost_reason)
