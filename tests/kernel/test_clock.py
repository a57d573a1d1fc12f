"""DeterministicClock behaviour relied on by lease and retry tests."""

from datetime import datetime, timedelta, timezone

import pytest

from einvoice_kernel.domain.clock import DeterministicClock, SystemClock

START = datetime(2025, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


class TestDeterministicClock:
    def test_stands_still_until_moved(self):
        clock = DeterministicClock(START)

        assert clock.now() == clock.now() == START
        assert clock.advance(90) == START + timedelta(seconds=90)
        assert clock.tick() == START + timedelta(seconds=91)

    def test_set_time(self):
        clock = DeterministicClock(START)
        clock.advance(30)

        later = START + timedelta(days=2)
        clock.set_time(later)

        assert clock.now_utc() == later

    def test_now_utc_normalises_offsets(self):
        karachi = timezone(timedelta(hours=5))
        clock = DeterministicClock(datetime(2025, 1, 15, 14, 0, tzinfo=karachi))

        assert clock.now_utc() == START
        assert clock.now_utc().tzinfo == timezone.utc

    def test_rejects_naive_times(self):
        with pytest.raises(ValueError):
            DeterministicClock(datetime(2025, 1, 15, 9, 0))

    def test_cannot_move_backwards(self):
        with pytest.raises(ValueError):
            DeterministicClock(START).advance(-1)


def test_system_clock_is_timezone_aware():
    assert SystemClock().now_utc().tzinfo == timezone.utc
