import pytest

from core.resolver import DatarefResolver
from engine import BravoEngine
from fakes import FakeXPlane, LedSpy


@pytest.fixture
def xplane():
    return FakeXPlane()


@pytest.fixture
def resolver(xplane):
    return DatarefResolver(xplane)


@pytest.fixture
def engine(resolver):
    return BravoEngine(resolver)


@pytest.fixture
def leds():
    return LedSpy()
