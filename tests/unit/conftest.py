"""Shared fixtures for tutor unit tests."""

from collections.abc import Callable
from typing import Any

import pytest

from src.tutor.config import OpenAIConfig, SessionConfig, TutorConfig
from src.tutor.progress import MemoryProgressStore
from src.tutor.session import SessionController
from tests.helpers.fakes import (
    FakeAudioOutput,
    FakeCalendar,
    FakeClock,
    FakeMicrophone,
    FakeNegotiator,
    FakeTokenBroker,
    Recorder,
)


@pytest.fixture
def config() -> TutorConfig:
    """Default config with short step timeouts."""
    return TutorConfig(
        openai=OpenAIConfig(api_key="sk-test"),
        session=SessionConfig(
            microphone_timeout_s=1.0,
            credential_timeout_s=1.0,
            negotiation_timeout_s=2.0,
            channel_open_timeout_s=1.0,
        ),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def store() -> MemoryProgressStore:
    return MemoryProgressStore()


@pytest.fixture
def microphone() -> FakeMicrophone:
    return FakeMicrophone()


@pytest.fixture
def audio_output() -> FakeAudioOutput:
    return FakeAudioOutput()


@pytest.fixture
def broker() -> FakeTokenBroker:
    return FakeTokenBroker()


@pytest.fixture
def negotiator() -> FakeNegotiator:
    return FakeNegotiator()


@pytest.fixture
def statuses() -> Recorder:
    return Recorder()


@pytest.fixture
def notices() -> Recorder:
    return Recorder()


@pytest.fixture
def make_controller(
    config: TutorConfig,
    broker: FakeTokenBroker,
    negotiator: FakeNegotiator,
    microphone: FakeMicrophone,
    audio_output: FakeAudioOutput,
    store: MemoryProgressStore,
    clock: FakeClock,
    calendar: FakeCalendar,
    statuses: Recorder,
    notices: Recorder,
) -> Callable[..., SessionController]:
    """Factory for controllers wired to fakes; keyword overrides replace fakes."""

    def factory(**overrides: Any) -> SessionController:
        kwargs: dict[str, Any] = {
            "config": config,
            "token_broker": broker,
            "negotiator": negotiator,
            "microphone": microphone,
            "audio_output": audio_output,
            "progress_store": store,
            "clock": clock,
            "today": calendar,
            "on_status": statuses,
            "on_notice": notices,
            "start_ticker": False,
        }
        kwargs.update(overrides)
        return SessionController(**kwargs)

    return factory


@pytest.fixture
def controller(make_controller: Callable[..., SessionController]) -> SessionController:
    return make_controller()
