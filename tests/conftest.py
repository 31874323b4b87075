"""
Pytest configuration for Petwatch tests.

Wires the fakes from ``fakes.py`` into a controller and ensures that tests
don't modify the .env file.
"""

from unittest.mock import Mock, patch

import pytest

from fakes import FakeInference, FakeSampler
from petwatch.controller import ControllerSettings, LiveSessionController
from petwatch.speech import SpeechAnnouncer
from petwatch.store import MemoryKeyValueStore, SubjectStore


@pytest.fixture(autouse=True)
def mock_config_save():
    """Prevent tests from modifying .env file."""
    with patch('petwatch.config.config.save'):
        yield


@pytest.fixture
def sampler():
    return FakeSampler()


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def store():
    """Real SubjectStore over memory, wrapped so calls can be asserted."""
    return Mock(wraps=SubjectStore(MemoryKeyValueStore()))


@pytest.fixture
def announcer():
    return Mock(spec=SpeechAnnouncer)


@pytest.fixture
def settings():
    # Long period: tests drive ticks directly unless they shorten it
    return ControllerSettings(
        cycle_interval_ms=60000,
        log_capacity=100,
        narrate_provisional=True,
        save_thumbnail=True,
        locale="en-US",
        speech_rate=1.0,
    )


@pytest.fixture
def controller(sampler, inference, store, announcer, settings):
    return LiveSessionController(
        sampler=sampler,
        inference=inference,
        store=store,
        announcer=announcer,
        settings=settings,
    )
