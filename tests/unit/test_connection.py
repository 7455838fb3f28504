"""Unit tests for the realtime connection wrapper."""

import asyncio

import pytest

from src.tutor import protocol
from src.tutor.errors import NegotiationError
from src.tutor.transport.base import ConnectionState
from src.tutor.transport.connection import RealtimeConnection
from tests.helpers.fakes import FakeDataChannel, FakePeerConnection, Recorder


@pytest.fixture
def pc() -> FakePeerConnection:
    return FakePeerConnection()


@pytest.fixture
def channel(pc: FakePeerConnection) -> FakeDataChannel:
    return pc.createDataChannel("oai-events", ordered=True)


@pytest.fixture
def connection(pc: FakePeerConnection, channel: FakeDataChannel) -> RealtimeConnection:
    return RealtimeConnection(pc, channel)


class TestOutbox:
    """Test messages queued before the channel opens."""

    def test_queued_until_open_then_flushed_in_order(
        self, connection: RealtimeConnection, channel: FakeDataChannel
    ) -> None:
        connection.send(protocol.session_update("x", transcription_model="m"))
        connection.send(protocol.response_create("hi"))

        assert channel.sent == []
        assert connection.pending_messages == 2

        channel.emit("open")

        assert channel.message_types == ["session.update", "response.create"]
        assert connection.pending_messages == 0
        assert connection.is_open is True
        assert connection.state == ConnectionState.CONNECTED

    def test_sent_directly_once_open(
        self, connection: RealtimeConnection, channel: FakeDataChannel
    ) -> None:
        channel.emit("open")
        connection.send(protocol.response_create())

        assert channel.message_types == ["response.create"]

    async def test_send_after_close_raises(self, connection: RealtimeConnection) -> None:
        await connection.close()

        with pytest.raises(ConnectionError):
            connection.send(protocol.response_create())


class TestLifecycle:
    """Test open/close and loss reporting."""

    async def test_wait_open(self, connection: RealtimeConnection, channel: FakeDataChannel) -> None:
        asyncio.get_running_loop().call_soon(channel.emit, "open")
        await connection.wait_open(timeout=1.0)
        assert connection.is_open

    async def test_wait_open_times_out(self, connection: RealtimeConnection) -> None:
        with pytest.raises(TimeoutError):
            await connection.wait_open(timeout=0.01)

    async def test_close_is_idempotent(
        self, connection: RealtimeConnection, pc: FakePeerConnection, channel: FakeDataChannel
    ) -> None:
        await connection.close()
        await connection.close()

        assert pc.closed is True
        assert channel.closed is True
        assert connection.state == ConnectionState.CLOSED

    async def test_close_survives_channel_error(
        self, connection: RealtimeConnection, pc: FakePeerConnection, channel: FakeDataChannel
    ) -> None:
        def broken_close() -> None:
            raise RuntimeError("already closed")

        channel.close = broken_close  # type: ignore[method-assign]

        await connection.close()

        assert pc.closed is True
        assert connection.state == ConnectionState.CLOSED

    def test_inbound_frames_forwarded(
        self, connection: RealtimeConnection, channel: FakeDataChannel
    ) -> None:
        received = Recorder()
        connection.on_message = received

        channel.receive({"type": "response.done"})
        channel.emit("message", b'{"type": "response.done"}')

        assert received.items == ['{"type": "response.done"}', '{"type": "response.done"}']

    def test_peer_failure_reported_once(
        self, connection: RealtimeConnection, pc: FakePeerConnection, channel: FakeDataChannel
    ) -> None:
        lost = Recorder()
        connection.on_lost = lost

        pc.set_state("failed")
        channel.emit("close")

        assert lost.items == ["peer connection failed"]
        assert connection.state == ConnectionState.FAILED

    async def test_own_close_not_reported_as_loss(
        self, connection: RealtimeConnection, pc: FakePeerConnection, channel: FakeDataChannel
    ) -> None:
        lost = Recorder()
        connection.on_lost = lost

        await connection.close()
        channel.emit("close")
        pc.set_state("closed")

        assert lost.items == []

    async def test_loss_before_open_fails_wait_open(
        self, connection: RealtimeConnection, pc: FakePeerConnection
    ) -> None:
        asyncio.get_running_loop().call_soon(pc.set_state, "failed")

        with pytest.raises(NegotiationError, match="peer connection failed"):
            await asyncio.wait_for(connection.wait_open(timeout=30.0), timeout=1.0)

        assert connection.lost_reason == "peer connection failed"
        assert connection.is_open is False

    def test_loss_before_callback_delivered_on_assignment(
        self, connection: RealtimeConnection, channel: FakeDataChannel
    ) -> None:
        channel.emit("close")

        lost = Recorder()
        connection.on_lost = lost
        connection.on_lost = lost

        assert lost.items == ["control channel closed"]


class TestBackgroundTasks:
    """Test tasks tied to the connection's lifetime."""

    async def test_failure_is_logged_not_raised(
        self, connection: RealtimeConnection, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def broken() -> None:
            raise RuntimeError("sink unavailable")

        task = connection.spawn(broken(), name="remote-audio")
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

        assert connection.pending_tasks == 0
        failures = [r for r in caplog.records if r.getMessage() == "Connection task failed"]
        assert len(failures) == 1
        assert failures[0].task == "remote-audio"
        assert failures[0].error == "sink unavailable"

    async def test_close_cancels_pending(self, connection: RealtimeConnection) -> None:
        started = asyncio.Event()

        async def forever() -> None:
            started.set()
            await asyncio.Event().wait()

        task = connection.spawn(forever(), name="remote-audio")
        await started.wait()
        assert connection.pending_tasks == 1

        await connection.close()

        assert task.cancelled()
        assert connection.pending_tasks == 0
