"""Shared fixtures for the CourtRoom test suite."""

import os
import random
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# The service reads its configuration at import time.
os.environ.setdefault("COURTROOM_DB_PATH", str(Path(tempfile.mkdtemp()) / "courtroom.db"))
os.environ.setdefault("COURTROOM_AUTOSTART", "false")

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class FixedRandom(random.Random):
    """Deterministic draws: lowest delay, first candidate, a fixed ambient roll."""

    def __init__(self, draw: float = 1.0):
        super().__init__(0)
        self.draw = draw

    def random(self):
        return self.draw

    def randint(self, a, b):
        return a

    def choice(self, seq):
        return seq[0]


@pytest.fixture
def rng():
    return FixedRandom()


@pytest.fixture
def simulator(rng):
    from courtroom_engine import SimulationConfig, Simulator

    return Simulator(config=SimulationConfig(), clock=lambda: T0, rng=rng)
