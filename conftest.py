from datetime import datetime, timedelta, timezone

import pytest

START = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock passed wherever services take `clock=`."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
