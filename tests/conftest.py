from __future__ import annotations

from datetime import datetime

import pytest

from pubdate.data import load_site_data
from pubdate.services.engine import ExtractionEngine
from pubdate.services.normalizer import DateNormalizer

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0)


class FakeClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def site_data():
    return load_site_data()


@pytest.fixture()
def normalizer(site_data):
    return DateNormalizer(clock=lambda: FIXED_NOW, site_data=site_data)


@pytest.fixture()
def engine(normalizer, site_data):
    return ExtractionEngine(normalizer, site_data)


@pytest.fixture()
def fake_clock():
    return FakeClock()
